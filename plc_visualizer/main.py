# plc_visualizer/main.py
from __future__ import annotations

import logging

from fastapi import FastAPI
from starlette.middleware.sessions import SessionMiddleware

from plc_visualizer.core.config import settings

# auth / accounts (JSON user store)
from plc_visualizer.api.routes.account import (
    router as account_router,
    _ensure_default_user as ensure_default_user,   # admin/admin when the store is empty
)

from plc_visualizer.api.routes.parameters import router as parameters_router
from plc_visualizer.api.routes.history import router as history_router
from plc_visualizer.api.routes.status import router as status_router
from plc_visualizer.api.routes.alerts import router as alerts_router
from plc_visualizer.api.routes.settings import router as settings_router

from plc_visualizer.db.session import SessionLocal, init_db
from plc_visualizer.services.demo_data import seed_demo
from plc_visualizer.services.runtime import ensure_started, stop_if_running

log = logging.getLogger("web")

# ─────────────────────────────────────────────────────────────────────────────
# App
# ─────────────────────────────────────────────────────────────────────────────
app = FastAPI(title="PLC Visualizer")

# cookie sessions (auth)
app.add_middleware(SessionMiddleware, secret_key=settings.session_secret, same_site="lax")

app.include_router(account_router, tags=["auth"])
app.include_router(parameters_router)
app.include_router(history_router)
app.include_router(status_router)
app.include_router(alerts_router)
app.include_router(settings_router)


# ─────────────────────────────────────────────────────────────────────────────
# Startup / shutdown
# ─────────────────────────────────────────────────────────────────────────────
@app.on_event("startup")
def _startup():
    # 1) YAML
    settings.load_yaml_config()

    # 2) tables
    init_db()

    # 3) admin/admin if there are no users
    ensure_default_user()

    # 4) demo plant on an empty database
    with SessionLocal() as db:
        seed_demo(db)

    # 5) parameters + PLC connection
    try:
        ensure_started()
    except Exception as e:
        log.error("plc connection start failed (non-fatal): %s", e)

    log.info("api ready")


@app.on_event("shutdown")
def _shutdown():
    stop_if_running()
