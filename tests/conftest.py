import copy
import os
import tempfile
import time

import pytest
import yaml

# settings and the engine are created at import time, so the environment has
# to point at a scratch directory before anything from plc_visualizer loads
_TMP = tempfile.mkdtemp(prefix="plc-visualizer-tests-")
os.environ["CONFIG_FILE"] = os.path.join(_TMP, "config.yaml")
os.environ["ACCOUNTS_FILE"] = os.path.join(_TMP, "accounts.json")
os.environ["DATABASE_URL"] = "sqlite:///" + os.path.join(_TMP, "test.db")
os.environ["SESSION_SECRET"] = "test-secret"

OFFLINE_CACHE = os.path.join(_TMP, "offline_cache.json")

BASE_CFG = {
    "connection": {
        "ip": "127.0.0.1",
        "port": "502",
        "protocol": "modbus",
        "mode": "simulation",
        "auto_reconnect": True,
        "connect_timeout_s": 1,
        "reconnect_delay_s": 30,
    },
    "data_collection": {
        "polling_rate_s": 60,
        "historical_logging": True,
        "alarm_notifications": True,
    },
    "notifications": {
        "email_notification": False,
        "sms_notification": False,
        "email": "",
        "phone": "",
        "email_endpoint": "http://notify.test/email",
        "sms_endpoint": "http://notify.test/sms",
    },
    "history": {"save_every_s": 60, "max_rows": 0, "ttl_days": 0, "cleanup_every": 500},
    "realtime": {"debounce_s": 0.05},
    "offline": {"cache_file": OFFLINE_CACHE},
    "demo": {"seed": False},
    "backups": {"dir": os.path.join(_TMP, "backups"), "keep": 3},
}


def _write_base_cfg():
    with open(os.environ["CONFIG_FILE"], "w", encoding="utf-8") as f:
        yaml.safe_dump(BASE_CFG, f, sort_keys=False)


_write_base_cfg()

from plc_visualizer.core.config import settings  # noqa: E402
from plc_visualizer.db.models import AlertRow, ParameterHistoryRow, ParameterRow  # noqa: E402
from plc_visualizer.db.session import SessionLocal, init_db  # noqa: E402
from plc_visualizer.services.runtime import stop_if_running  # noqa: E402


@pytest.fixture(autouse=True)
def _reset_state():
    _write_base_cfg()
    settings.load_yaml_config()
    for path in (os.environ["ACCOUNTS_FILE"], OFFLINE_CACHE):
        if os.path.exists(path):
            os.remove(path)
    init_db()
    with SessionLocal() as db:
        for model in (AlertRow, ParameterHistoryRow, ParameterRow):
            db.query(model).delete()
        db.commit()
    yield
    stop_if_running()


@pytest.fixture
def db():
    with SessionLocal() as session:
        yield session


@pytest.fixture
def tmp_dir():
    return _TMP


@pytest.fixture
def configure():
    """Overlay values onto one section of the in-memory config."""
    def _configure(section, **values):
        cfg = copy.deepcopy(settings.get_cfg())
        cfg.setdefault(section, {}).update(values)
        settings.set_cfg(cfg)
    return _configure


@pytest.fixture
def wait_for():
    def _wait(predicate, timeout=3.0, interval=0.02):
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            time.sleep(interval)
        return predicate()
    return _wait
