# plc_visualizer/services/parameters.py
"""
Data access for parameters and their history.

Functions take an open SQLAlchemy session; callers own the session
(routes via Depends(get_db), background loops via `with SessionLocal() as db`).
SQLAlchemy errors are not caught here: the connection runtime decides whether
to fall back to the offline snapshot.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import text
from sqlalchemy.orm import Session

from plc_visualizer.core.status import derive_thresholds, evaluate_status
from plc_visualizer.core.types import HistoryEntry, Parameter, ParameterStatus
from plc_visualizer.db.models import ParameterHistoryRow, ParameterRow
from plc_visualizer.services.change_feed import change_feed

log = logging.getLogger("plc.params")

EDITABLE_FIELDS = (
    "name", "description", "category", "unit", "value",
    "min_value", "max_value", "alarm_min", "alarm_max",
)


# ─────────────────────────────────────────────────────────────────────────────
# helpers
# ─────────────────────────────────────────────────────────────────────────────

def _utc(ts: Optional[datetime]) -> Optional[datetime]:
    # sqlite hands back naive datetimes; they were written as UTC
    if ts is None:
        return None
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def _iso(ts: Optional[datetime]) -> str:
    ts = _utc(ts) or datetime.now(timezone.utc)
    return ts.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_ts(s: Any) -> datetime:
    """ISO-8601 (with Z or offset) or unix seconds → aware UTC datetime."""
    if isinstance(s, datetime):
        return _utc(s)
    s = str(s).strip()
    if s.isdigit():
        return datetime.fromtimestamp(int(s), tz=timezone.utc)
    return _utc(datetime.fromisoformat(s.replace("Z", "+00:00")))


def _opt_float(v: Any, name: str) -> Optional[float]:
    if v is None or v == "":
        return None
    try:
        return float(v)
    except (TypeError, ValueError):
        raise ValueError(f"{name}: number expected, got {v!r}")


def _check_row(row: ParameterRow) -> None:
    if not (row.name or "").strip():
        raise ValueError("name: must not be empty")
    if row.min_value is not None and row.max_value is not None and row.min_value > row.max_value:
        raise ValueError("min_value must not exceed max_value")
    if row.alarm_min is not None and row.alarm_max is not None and row.alarm_min > row.alarm_max:
        raise ValueError("alarm_min must not exceed alarm_max")


def thresholds_of(row: ParameterRow):
    return derive_thresholds(row.min_value, row.max_value, row.alarm_min, row.alarm_max)


def _refresh_status(row: ParameterRow) -> None:
    row.status = evaluate_status(float(row.value or 0.0), thresholds_of(row)).value


# ─────────────────────────────────────────────────────────────────────────────
# parameters
# ─────────────────────────────────────────────────────────────────────────────

def convert_to_parameter(row: ParameterRow) -> Parameter:
    return Parameter(
        id=row.id,
        name=row.name,
        description=row.description or f"{row.name} parameter",
        unit=row.unit or "",
        value=float(row.value or 0.0),
        status=ParameterStatus(row.status or "normal"),
        thresholds=thresholds_of(row),
        timestamp=_iso(row.updated_at),
        category=row.category or "Custom",
    )


def fetch_parameters(db: Session) -> List[ParameterRow]:
    return db.query(ParameterRow).order_by(ParameterRow.name, ParameterRow.id).all()


def get_parameter(db: Session, parameter_id: str) -> Optional[ParameterRow]:
    return db.get(ParameterRow, parameter_id)


def create_parameter(db: Session, data: Dict[str, Any], user_id: Optional[str] = None) -> ParameterRow:
    row = ParameterRow(
        name=str(data.get("name") or "").strip(),
        description=data.get("description") or None,
        category=data.get("category") or None,
        unit=str(data.get("unit") or ""),
        value=_opt_float(data.get("value", 0.0), "value") or 0.0,
        min_value=_opt_float(data.get("min_value"), "min_value"),
        max_value=_opt_float(data.get("max_value"), "max_value"),
        alarm_min=_opt_float(data.get("alarm_min"), "alarm_min"),
        alarm_max=_opt_float(data.get("alarm_max"), "alarm_max"),
        user_id=user_id or data.get("user_id"),
    )
    _check_row(row)
    _refresh_status(row)
    db.add(row)
    db.commit()
    db.refresh(row)
    log.info(f"parameter created: {row.name} ({row.id})")
    change_feed.publish("INSERT", row.id)
    return row


def update_parameter(db: Session, parameter_id: str, partial: Dict[str, Any]) -> Optional[ParameterRow]:
    row = get_parameter(db, parameter_id)
    if row is None:
        return None
    try:
        for k in EDITABLE_FIELDS:
            if k not in partial:
                continue
            v = partial[k]
            if k in ("value", "min_value", "max_value", "alarm_min", "alarm_max"):
                v = _opt_float(v, k)
                if k == "value" and v is None:
                    raise ValueError("value: must not be empty")
            elif k == "name":
                v = str(v or "").strip()
            setattr(row, k, v)
        _check_row(row)
    except ValueError:
        db.rollback()
        raise
    _refresh_status(row)
    row.updated_at = datetime.now(timezone.utc)
    db.commit()
    db.refresh(row)
    change_feed.publish("UPDATE", row.id)
    return row


def delete_parameter(db: Session, parameter_id: str) -> bool:
    row = get_parameter(db, parameter_id)
    if row is None:
        return False
    db.delete(row)
    db.commit()
    log.info(f"parameter deleted: {parameter_id}")
    change_feed.publish("DELETE", parameter_id)
    return True


# ─────────────────────────────────────────────────────────────────────────────
# history
# ─────────────────────────────────────────────────────────────────────────────

def history_record(p: Parameter, ts: Optional[datetime] = None) -> Dict[str, Any]:
    return {
        "parameter_id": p.id,
        "value": p.value,
        "status": p.status.value,
        "timestamp": _iso(ts or datetime.now(timezone.utc)),
    }


def add_history_entry(db: Session, record: Dict[str, Any]) -> ParameterHistoryRow:
    row = ParameterHistoryRow(
        parameter_id=str(record["parameter_id"]),
        value=float(record["value"]),
        status=str(record.get("status") or "normal"),
        ts=parse_ts(record.get("timestamp") or datetime.now(timezone.utc)),
    )
    db.add(row)
    db.commit()
    return row


def fetch_history(
    db: Session,
    parameter_ids: Iterable[str],
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> List[HistoryEntry]:
    ids = [str(x) for x in parameter_ids if x]
    if not ids:
        return []
    q = db.query(ParameterHistoryRow).filter(ParameterHistoryRow.parameter_id.in_(ids))
    if start is not None:
        q = q.filter(ParameterHistoryRow.ts >= _utc(start))
    if end is not None:
        q = q.filter(ParameterHistoryRow.ts <= _utc(end))
    rows = q.order_by(ParameterHistoryRow.ts, ParameterHistoryRow.id).all()
    return [
        HistoryEntry(
            parameter_id=r.parameter_id,
            value=float(r.value),
            status=ParameterStatus(r.status or "normal"),
            timestamp=_iso(r.ts),
        )
        for r in rows
    ]


def cleanup_history(db: Session, ttl_days: int = 0, max_rows: int = 0) -> None:
    if ttl_days > 0:
        cutoff = datetime.now(timezone.utc) - timedelta(days=ttl_days)
        db.query(ParameterHistoryRow).filter(ParameterHistoryRow.ts < cutoff).delete(
            synchronize_session=False
        )
    if max_rows > 0:
        db.execute(text("""
            DELETE FROM parameter_history
            WHERE id IN (
              SELECT id FROM parameter_history
              ORDER BY id DESC
              LIMIT -1 OFFSET :keep
            )
        """), {"keep": max_rows})
    db.commit()


def chart_rows(entries: Iterable[HistoryEntry], parameters: Iterable[Parameter]) -> List[Dict[str, Any]]:
    """
    One row per timestamp:
      {"timestamp": "...", "<name>": value, "<name>-status": "warning", ...}
    """
    names = {p.id: p.name for p in parameters}
    by_ts: Dict[str, Dict[str, Any]] = {}
    for e in entries:
        name = names.get(e.parameter_id)
        if name is None:
            continue
        row = by_ts.setdefault(e.timestamp, {"timestamp": e.timestamp})
        row[name] = e.value
        row[f"{name}-status"] = e.status.value
    return sorted(by_ts.values(), key=lambda r: parse_ts(r["timestamp"]))
