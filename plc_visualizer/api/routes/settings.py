# plc_visualizer/api/routes/settings.py
from __future__ import annotations

from typing import Optional, Union

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from plc_visualizer.api.routes.account import require_admin
from plc_visualizer.core.config import settings
from plc_visualizer.core.types import ConnectionMode, Protocol, Role, UserProfile
from plc_visualizer.core.validate_cfg import POLLING_RATE_MAX_S, POLLING_RATE_MIN_S
from plc_visualizer.services.runtime import connection_instance

router = APIRouter(prefix="/api/settings", tags=["settings"])


# ─────────────────────────────────────────────────────────────────────────────
# schemas
# ─────────────────────────────────────────────────────────────────────────────

class ConnectionDTO(BaseModel):
    ip: Optional[str] = None
    port: Optional[Union[int, str]] = None
    protocol: Optional[Protocol] = None
    auto_reconnect: Optional[bool] = None
    mode: Optional[ConnectionMode] = None
    connect_timeout_s: Optional[float] = None
    reconnect_delay_s: Optional[float] = None


class DataCollectionDTO(BaseModel):
    polling_rate_s: Optional[int] = None
    historical_logging: Optional[bool] = None
    alarm_notifications: Optional[bool] = None


def _save(section: str, values: dict) -> str:
    """Write one YAML section; 400 with the validator's message when it is rejected."""
    try:
        return settings.update_section(section, values)
    except ValueError as e:
        raise HTTPException(400, f"invalid {section} settings: {e}")


# ─────────────────────────────────────────────────────────────────────────────
# connection
# ─────────────────────────────────────────────────────────────────────────────

@router.get("/connection")
def get_connection(_: UserProfile = Depends(require_admin)):
    return settings.connection.to_dict()


@router.put("/connection")
def put_connection(dto: ConnectionDTO, _: UserProfile = Depends(require_admin)):
    values = dto.model_dump(exclude_none=True, mode="json")
    if "port" in values:
        values["port"] = str(values["port"])
    backup = _save("connection", values)

    # new target / mode take effect right away
    conn = connection_instance()
    if conn is not None:
        conn.connect(force=True)
    return {"ok": True, "backup": backup, "connection": settings.connection.to_dict()}


# ─────────────────────────────────────────────────────────────────────────────
# data collection
# ─────────────────────────────────────────────────────────────────────────────

@router.get("/data_collection")
def get_data_collection(_: UserProfile = Depends(require_admin)):
    return settings.data_collection.to_dict()


@router.put("/data_collection")
def put_data_collection(dto: DataCollectionDTO, _: UserProfile = Depends(require_admin)):
    backup = _save("data_collection", dto.model_dump(exclude_none=True))
    return {"ok": True, "backup": backup, "data_collection": settings.data_collection.to_dict()}


@router.get("/enums")
def get_enums():
    """Choices for the settings forms."""
    return {
        "protocols": [p.value for p in Protocol],
        "modes": [m.value for m in ConnectionMode],
        "roles": [r.value for r in Role],
        "polling_rate_s": {"min": POLLING_RATE_MIN_S, "max": POLLING_RATE_MAX_S},
    }
