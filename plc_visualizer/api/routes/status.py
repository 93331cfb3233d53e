# plc_visualizer/api/routes/status.py
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from plc_visualizer.api.routes.account import require_admin, require_session
from plc_visualizer.core.types import UserProfile
from plc_visualizer.services.alerts import alerts_manager
from plc_visualizer.services.plc_connection import PLCConnection
from plc_visualizer.services.runtime import connection_instance

router = APIRouter(tags=["status"])


def _conn() -> PLCConnection:
    conn = connection_instance()
    if conn is None:
        raise HTTPException(503, "PLC connection is not running")
    return conn


@router.get("/api/status")
def api_status(_: UserProfile = Depends(require_session)):
    st = _conn().state()
    st["unacknowledged_alerts"] = alerts_manager.unacknowledged_count()
    return st


@router.post("/api/connection/connect")
def api_connect(_: UserProfile = Depends(require_admin)):
    conn = _conn()
    conn.connect(force=True)
    return conn.state()


@router.post("/api/connection/disconnect")
def api_disconnect(_: UserProfile = Depends(require_admin)):
    conn = _conn()
    conn.disconnect()
    return conn.state()
