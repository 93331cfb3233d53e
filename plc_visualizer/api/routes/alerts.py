# plc_visualizer/api/routes/alerts.py
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from plc_visualizer.api.routes.account import require_admin, require_session
from plc_visualizer.core.config import settings
from plc_visualizer.core.types import UserProfile
from plc_visualizer.services.alerts import alerts_manager

router = APIRouter(prefix="/api/alerts", tags=["alerts"])


class NotificationsDTO(BaseModel):
    email_notification: Optional[bool] = None
    sms_notification: Optional[bool] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    email_endpoint: Optional[str] = None
    sms_endpoint: Optional[str] = None
    http_timeout_s: Optional[int] = None


# ─────────────────────────────────────────────────────────────────────────────
# alerts
# ─────────────────────────────────────────────────────────────────────────────

@router.get("")
def list_alerts(
    limit: int = Query(200, ge=1, le=2000),
    acknowledged: Optional[bool] = None,
    _: UserProfile = Depends(require_session),
):
    return alerts_manager.list_alerts(limit=limit, acknowledged=acknowledged)


@router.post("/{alert_id}/acknowledge")
def acknowledge_alert(alert_id: str, _: UserProfile = Depends(require_session)):
    alert = alerts_manager.acknowledge(alert_id)
    if alert is None:
        raise HTTPException(404, "alert not found")
    return alert


@router.delete("")
def clear_alerts(_: UserProfile = Depends(require_session)):
    return {"ok": True, "deleted": alerts_manager.clear_alerts()}


# ─────────────────────────────────────────────────────────────────────────────
# notification settings
# ─────────────────────────────────────────────────────────────────────────────

@router.get("/notifications")
def get_notifications(_: UserProfile = Depends(require_session)):
    return settings.notifications.to_dict()


@router.put("/notifications")
def put_notifications(dto: NotificationsDTO, _: UserProfile = Depends(require_admin)):
    try:
        backup = settings.update_section("notifications", dto.model_dump(exclude_none=True))
    except ValueError as e:
        raise HTTPException(400, f"invalid notification settings: {e}")
    return {"ok": True, "backup": backup, "notifications": settings.notifications.to_dict()}


@router.post("/test")
def test_notification(_: UserProfile = Depends(require_session)):
    ns = settings.notifications
    if not (ns.email_notification or ns.sms_notification):
        raise HTTPException(400, "no notification channel is enabled")
    return {"ok": alerts_manager.send_test_notification()}
