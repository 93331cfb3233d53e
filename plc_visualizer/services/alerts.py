# plc_visualizer/services/alerts.py
from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import requests

try:
    import certifi
    _CERT_BUNDLE = certifi.where()
except Exception:
    _CERT_BUNDLE = None

from plc_visualizer.core.config import settings
from plc_visualizer.core.status import crossed_threshold
from plc_visualizer.core.types import Alert, NotificationSettings, Parameter, ParameterStatus
from plc_visualizer.db.models import AlertRow
from plc_visualizer.db.session import SessionLocal


# ─────────────────────────────────────────────────────────────────────────────
# Notification senders
# ─────────────────────────────────────────────────────────────────────────────

class WebhookSender:
    """
    POSTs JSON to the email / SMS gateway endpoints from `notifications`.
    Without a fixed `timeout` each send uses notifications.http_timeout_s as it is then.
    """

    def __init__(self, timeout: Optional[int] = None):
        self.timeout = timeout
        self.log = logging.getLogger("alerts.notify")

    def _post(self, url: str, payload: Dict[str, Any], timeout: int) -> bool:
        if not url:
            self.log.warning("notify: endpoint is not configured")
            return False
        try:
            r = requests.post(url, json=payload, timeout=timeout,
                              verify=_CERT_BUNDLE or True)
            if r.status_code >= 300:
                self.log.error("notify HTTP %s: %s", r.status_code, r.text[:500])
                return False
            return True
        except requests.exceptions.RequestException as e:
            self.log.error("notify send failed: %s", e)
            return False

    def send_email(self, ns: NotificationSettings, subject: str, message: str) -> bool:
        return self._post(ns.email_endpoint, {"to": ns.email, "subject": subject, "message": message},
                          self.timeout or ns.http_timeout_s)

    def send_sms(self, ns: NotificationSettings, message: str) -> bool:
        return self._post(ns.sms_endpoint, {"to": ns.phone, "message": message},
                          self.timeout or ns.http_timeout_s)


def _alert_texts(a: Dict[str, Any]) -> Tuple[str, str, str]:
    status = str(a["status"]).upper()
    subject = f"PLC Alert: {status} for {a['parameter_name']}"
    body = (f"Parameter {a['parameter_name']} has a value of {a['value']} "
            f"which triggered a {a['status']} alert.")
    sms = f"PLC Alert: {status} - {a['parameter_name']} value: {a['value']}"
    return subject, body, sms


def _row_to_dict(r: AlertRow) -> Dict[str, Any]:
    ts = r.ts
    if isinstance(ts, datetime) and ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return Alert(
        id=r.id,
        parameter_id=r.parameter_id,
        parameter_name=r.parameter_name,
        value=r.value,
        threshold=r.threshold,
        status=ParameterStatus(r.status),
        timestamp=ts.isoformat() if isinstance(ts, datetime) else str(ts),
        acknowledged=bool(r.acknowledged),
        notified=bool(r.notified),
    ).to_dict()


# ─────────────────────────────────────────────────────────────────────────────
# Alerts manager (singleton)
# ─────────────────────────────────────────────────────────────────────────────

class AlertsManager:
    """
    Raises an alert when a parameter moves INTO warning or alarm.
    Alerts are changed only by acknowledge() and removed only by clear_alerts().
    """

    def __init__(self, sender: Optional[WebhookSender] = None):
        self._lock = threading.RLock()
        self.sender = sender
        self.log = logging.getLogger("alerts")

    def _sender(self) -> WebhookSender:
        if self.sender is None:
            self.sender = WebhookSender()
        return self.sender

    # ── transitions ─────────────────────────────────────────────────────────
    def observe(self, previous: Optional[ParameterStatus], p: Parameter) -> Optional[Dict[str, Any]]:
        if previous is None or previous == p.status:
            return None
        if p.status == ParameterStatus.NORMAL:
            return None
        alert = self._create(p)
        self.log.warning("%s: %s -> %s (value=%s)", p.name, previous.value, p.status.value, p.value)
        if settings.data_collection.alarm_notifications:
            self.notify(alert)
        return alert

    def _create(self, p: Parameter) -> Dict[str, Any]:
        with SessionLocal() as db:
            row = AlertRow(
                parameter_id=p.id,
                parameter_name=p.name,
                value=p.value,
                threshold=crossed_threshold(p.value, p.thresholds, p.status),
                status=p.status.value,
                ts=datetime.now(timezone.utc),
                acknowledged=False,
                notified=False,
            )
            db.add(row)
            db.commit()
            db.refresh(row)
            return _row_to_dict(row)

    # ── notifications ───────────────────────────────────────────────────────
    def notify(self, alert: Dict[str, Any]) -> bool:
        ns = settings.notifications
        if not (ns.email_notification or ns.sms_notification):
            return False
        sender = self._sender()
        subject, body, sms = _alert_texts(alert)
        sent = False
        if ns.email_notification and ns.email:
            sent = sender.send_email(ns, subject, body) or sent
        if ns.sms_notification and ns.phone:
            sent = sender.send_sms(ns, sms) or sent
        if sent and alert.get("id"):
            with SessionLocal() as db:
                row = db.get(AlertRow, alert["id"])
                if row is not None:
                    row.notified = True
                    db.commit()
            alert["notified"] = True
        return sent

    def send_test_notification(self) -> bool:
        test = {
            "id": None,
            "parameter_name": "Test Parameter",
            "value": 100,
            "status": "warning",
        }
        return self.notify(test)

    # ── queries ─────────────────────────────────────────────────────────────
    def list_alerts(self, limit: int = 200, acknowledged: Optional[bool] = None) -> List[Dict[str, Any]]:
        with SessionLocal() as db:
            q = db.query(AlertRow)
            if acknowledged is not None:
                q = q.filter(AlertRow.acknowledged == acknowledged)
            rows = q.order_by(AlertRow.ts.desc()).limit(limit).all()
            return [_row_to_dict(r) for r in rows]

    def acknowledge(self, alert_id: str) -> Optional[Dict[str, Any]]:
        with self._lock, SessionLocal() as db:
            row = db.get(AlertRow, alert_id)
            if row is None:
                return None
            row.acknowledged = True
            db.commit()
            db.refresh(row)
            return _row_to_dict(row)

    def clear_alerts(self) -> int:
        with self._lock, SessionLocal() as db:
            n = db.query(AlertRow).delete(synchronize_session=False)
            db.commit()
        self.log.info("alerts cleared: %s", n)
        return int(n or 0)

    def unacknowledged_count(self) -> int:
        with SessionLocal() as db:
            return db.query(AlertRow).filter(AlertRow.acknowledged.is_(False)).count()


alerts_manager = AlertsManager()
