# plc_visualizer/core/validate_cfg.py
from __future__ import annotations

from typing import Any, Dict, Optional

ALLOWED_PROTOCOLS = {"opcua", "modbus", "ethernet-ip", "snap7", "s7comm"}
ALLOWED_MODES = {"simulation", "websocket"}

POLLING_RATE_MIN_S = 1
POLLING_RATE_MAX_S = 60


def _as_int(v, name, min_: Optional[int] = None, max_: Optional[int] = None) -> int:
    try:
        iv = int(v)
    except Exception:
        raise ValueError(f"{name}: integer expected, got {v!r}")
    if min_ is not None and iv < min_:
        raise ValueError(f"{name}: must be >= {min_} (got {iv})")
    if max_ is not None and iv > max_:
        raise ValueError(f"{name}: must be <= {max_} (got {iv})")
    return iv


def _as_float(v, name, min_: Optional[float] = None) -> float:
    try:
        fv = float(v)
    except Exception:
        raise ValueError(f"{name}: number expected, got {v!r}")
    if min_ is not None and fv < min_:
        raise ValueError(f"{name}: must be >= {min_} (got {fv})")
    return fv


def _as_bool(v, name) -> bool:
    if isinstance(v, bool):
        return v
    # yaml may give 'true'/'false'/1/0
    if isinstance(v, (int, float)) and v in (0, 1):
        return bool(v)
    if isinstance(v, str) and v.lower() in ("true", "false"):
        return v.lower() == "true"
    raise ValueError(f"{name}: must be true/false")


def _section(cfg: Dict[str, Any], name: str) -> Dict[str, Any]:
    sec = cfg.get(name, {})
    if sec is None:
        return {}
    if not isinstance(sec, dict):
        raise ValueError(f"{name}: must be a mapping")
    return sec


def validate_connection(conn: Dict[str, Any]) -> None:
    if "ip" in conn and not str(conn["ip"] or "").strip():
        raise ValueError("connection.ip: must not be empty")
    if "port" in conn:
        _as_int(conn["port"], "connection.port", 1, 65535)
    if "protocol" in conn and conn["protocol"] not in ALLOWED_PROTOCOLS:
        raise ValueError(f"connection.protocol: one of {sorted(ALLOWED_PROTOCOLS)}")
    if "mode" in conn and conn["mode"] not in ALLOWED_MODES:
        raise ValueError(f"connection.mode: one of {sorted(ALLOWED_MODES)}")
    if "auto_reconnect" in conn:
        _as_bool(conn["auto_reconnect"], "connection.auto_reconnect")
    if "connect_timeout_s" in conn:
        _as_float(conn["connect_timeout_s"], "connection.connect_timeout_s", 0.1)
    if "reconnect_delay_s" in conn:
        _as_float(conn["reconnect_delay_s"], "connection.reconnect_delay_s", 0.0)


def validate_data_collection(dc: Dict[str, Any]) -> None:
    if "polling_rate_s" in dc:
        _as_int(dc["polling_rate_s"], "data_collection.polling_rate_s",
                POLLING_RATE_MIN_S, POLLING_RATE_MAX_S)
    for k in ("historical_logging", "alarm_notifications"):
        if k in dc:
            _as_bool(dc[k], f"data_collection.{k}")


def validate_notifications(nt: Dict[str, Any]) -> None:
    for k in ("email_notification", "sms_notification"):
        if k in nt:
            _as_bool(nt[k], f"notifications.{k}")
    if nt.get("email_notification") is True and not str(nt.get("email") or "").strip():
        raise ValueError("notifications.email: required when email_notification is on")
    if nt.get("sms_notification") is True and not str(nt.get("phone") or "").strip():
        raise ValueError("notifications.phone: required when sms_notification is on")
    if "http_timeout_s" in nt:
        _as_int(nt["http_timeout_s"], "notifications.http_timeout_s", 1)


def validate_cfg(cfg: Dict[str, Any]) -> None:
    """Raises ValueError with a readable message if the config is invalid."""
    if not isinstance(cfg, dict):
        raise ValueError("YAML root must be a mapping")

    validate_connection(_section(cfg, "connection"))
    validate_data_collection(_section(cfg, "data_collection"))
    validate_notifications(_section(cfg, "notifications"))

    # ─── history ───
    hist = _section(cfg, "history")
    if "save_every_s" in hist:
        _as_int(hist["save_every_s"], "history.save_every_s", 1)
    if "max_rows" in hist:
        _as_int(hist["max_rows"], "history.max_rows", 0)
    if "ttl_days" in hist:
        _as_int(hist["ttl_days"], "history.ttl_days", 0)
    if "cleanup_every" in hist:
        _as_int(hist["cleanup_every"], "history.cleanup_every", 1)

    # ─── realtime ───
    rt = _section(cfg, "realtime")
    if "debounce_s" in rt:
        _as_float(rt["debounce_s"], "realtime.debounce_s", 0.0)

    # ─── offline ───
    off = _section(cfg, "offline")
    if "cache_file" in off and not isinstance(off["cache_file"], str):
        raise ValueError("offline.cache_file: must be a string")
    if "max_pending" in off:
        _as_int(off["max_pending"], "offline.max_pending", 0)
    if "retry_s" in off:
        _as_float(off["retry_s"], "offline.retry_s", 0.1)

    # ─── demo ───
    demo = _section(cfg, "demo")
    for k in ("seed", "history"):
        if k in demo:
            _as_bool(demo[k], f"demo.{k}")

    # ─── db ───
    db = _section(cfg, "db")
    if "url" in db and not str(db["url"] or "").strip():
        raise ValueError("db.url: must not be empty (e.g. sqlite:///./data/data.db)")

    # ─── backups ───
    bkp = _section(cfg, "backups")
    if "dir" in bkp and not isinstance(bkp["dir"], str):
        raise ValueError("backups.dir: must be a string")
    if "keep" in bkp:
        _as_int(bkp["keep"], "backups.keep", 0)
