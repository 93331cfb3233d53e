import pytest
import requests

from plc_visualizer.core.status import derive_thresholds
from plc_visualizer.core.types import NotificationSettings, Parameter, ParameterStatus
from plc_visualizer.services import alerts as alerts_module
from plc_visualizer.services.alerts import AlertsManager, WebhookSender


class FakeSender:
    def __init__(self, ok=True):
        self.ok = ok
        self.emails = []
        self.sms = []

    def send_email(self, ns, subject, message):
        self.emails.append((ns.email, subject, message))
        return self.ok

    def send_sms(self, ns, message):
        self.sms.append((ns.phone, message))
        return self.ok


def _reactor(value, status):
    return Parameter(
        id="temp-001", name="Temperature Sensor 1", description="", unit="°C",
        value=value, status=status, thresholds=derive_thresholds(70, 85, 60, 90),
        timestamp="",
    )


@pytest.fixture
def sender():
    return FakeSender()


@pytest.fixture
def manager(sender):
    return AlertsManager(sender=sender)


def test_no_alert_without_transition(manager):
    assert manager.observe(None, _reactor(86, ParameterStatus.WARNING)) is None
    assert manager.observe(ParameterStatus.WARNING, _reactor(86, ParameterStatus.WARNING)) is None
    assert manager.observe(ParameterStatus.WARNING, _reactor(80, ParameterStatus.NORMAL)) is None
    assert manager.list_alerts() == []


def test_transition_into_warning_creates_alert(manager, sender):
    alert = manager.observe(ParameterStatus.NORMAL, _reactor(86.2, ParameterStatus.WARNING))
    assert alert["status"] == "warning"
    assert alert["threshold"] == 85
    assert alert["value"] == 86.2
    assert alert["acknowledged"] is False
    assert alert["notified"] is False        # no channel enabled
    assert sender.emails == [] and sender.sms == []
    assert manager.unacknowledged_count() == 1


def test_escalation_to_alarm_is_a_new_alert(manager):
    manager.observe(ParameterStatus.NORMAL, _reactor(86, ParameterStatus.WARNING))
    alert = manager.observe(ParameterStatus.WARNING, _reactor(95, ParameterStatus.ALARM))
    assert alert["threshold"] == 90
    assert [a["status"] for a in manager.list_alerts()] == ["alarm", "warning"]


def test_notifications_are_sent_and_marked(manager, sender, configure):
    configure("notifications", email_notification=True, email="ops@example.com",
              sms_notification=True, phone="+100000000")
    alert = manager.observe(ParameterStatus.NORMAL, _reactor(95, ParameterStatus.ALARM))
    assert alert["notified"] is True
    assert manager.list_alerts()[0]["notified"] is True

    to, subject, message = sender.emails[0]
    assert to == "ops@example.com"
    assert subject == "PLC Alert: ALARM for Temperature Sensor 1"
    assert "value of 95.0" in message
    assert sender.sms == [("+100000000", "PLC Alert: ALARM - Temperature Sensor 1 value: 95.0")]


def test_failed_send_leaves_alert_unnotified(configure):
    configure("notifications", email_notification=True, email="ops@example.com")
    manager = AlertsManager(sender=FakeSender(ok=False))
    alert = manager.observe(ParameterStatus.NORMAL, _reactor(95, ParameterStatus.ALARM))
    assert alert["notified"] is False


def test_alarm_notifications_switch(manager, sender, configure):
    configure("notifications", email_notification=True, email="ops@example.com")
    configure("data_collection", alarm_notifications=False)
    manager.observe(ParameterStatus.NORMAL, _reactor(95, ParameterStatus.ALARM))
    assert sender.emails == []


def test_acknowledge_and_clear(manager):
    a = manager.observe(ParameterStatus.NORMAL, _reactor(86, ParameterStatus.WARNING))
    manager.observe(ParameterStatus.NORMAL, _reactor(50, ParameterStatus.ALARM))

    acked = manager.acknowledge(a["id"])
    assert acked["acknowledged"] is True
    assert manager.acknowledge("missing") is None
    assert manager.unacknowledged_count() == 1
    assert len(manager.list_alerts(acknowledged=True)) == 1
    assert len(manager.list_alerts(acknowledged=False)) == 1

    assert manager.clear_alerts() == 2
    assert manager.list_alerts() == []


def test_test_notification(manager, sender, configure):
    configure("notifications", email_notification=True, email="ops@example.com")
    assert manager.send_test_notification() is True
    assert sender.emails[0][1] == "PLC Alert: WARNING for Test Parameter"


# ─────────────────────────────────────────────────────────────────────────────
# webhook sender
# ─────────────────────────────────────────────────────────────────────────────

class _Resp:
    def __init__(self, status_code):
        self.status_code = status_code
        self.text = ""


def test_webhook_posts_json(monkeypatch):
    posted = []

    def fake_post(url, json=None, timeout=None, verify=None):
        posted.append((url, json, timeout))
        return _Resp(200)

    monkeypatch.setattr(alerts_module.requests, "post", fake_post)
    ns = NotificationSettings(email="ops@example.com", phone="+1",
                              email_endpoint="http://notify.test/email",
                              sms_endpoint="http://notify.test/sms")
    s = WebhookSender(timeout=3)
    assert s.send_email(ns, "subj", "body") is True
    assert s.send_sms(ns, "text") is True
    assert posted == [
        ("http://notify.test/email", {"to": "ops@example.com", "subject": "subj", "message": "body"}, 3),
        ("http://notify.test/sms", {"to": "+1", "message": "text"}, 3),
    ]


def test_webhook_failures(monkeypatch):
    def refused(url, **kw):
        raise requests.exceptions.ConnectionError("refused")

    ns = NotificationSettings(email="ops@example.com", email_endpoint="http://notify.test/email")
    s = WebhookSender()
    monkeypatch.setattr(alerts_module.requests, "post", refused)
    assert s.send_email(ns, "s", "m") is False

    monkeypatch.setattr(alerts_module.requests, "post", lambda url, **kw: _Resp(500))
    assert s.send_email(ns, "s", "m") is False

    assert s.send_email(NotificationSettings(email="x"), "s", "m") is False   # no endpoint


def test_webhook_timeout_follows_settings(monkeypatch, configure):
    timeouts = []

    def fake_post(url, json=None, timeout=None, verify=None):
        timeouts.append(timeout)
        return _Resp(200)

    monkeypatch.setattr(alerts_module.requests, "post", fake_post)
    manager = AlertsManager()
    configure("notifications", email_notification=True, email="ops@example.com", http_timeout_s=4)
    assert manager.send_test_notification() is True
    configure("notifications", http_timeout_s=9)
    assert manager.send_test_notification() is True
    assert timeouts == [4, 9]
