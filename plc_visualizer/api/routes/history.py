# plc_visualizer/api/routes/history.py
from __future__ import annotations

import io
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import StreamingResponse
from openpyxl import Workbook
from sqlalchemy.orm import Session

from plc_visualizer.api.routes.account import require_session
from plc_visualizer.core.types import HistoryEntry, Parameter, UserProfile
from plc_visualizer.db.session import get_db
from plc_visualizer.services.parameters import (
    chart_rows,
    convert_to_parameter,
    fetch_history,
    fetch_parameters,
    parse_ts,
)

router = APIRouter(prefix="/api/history", tags=["history"])

DEFAULT_WINDOW = timedelta(hours=24)


def _window(start: Optional[str], end: Optional[str]) -> Tuple[datetime, datetime]:
    try:
        t_end = parse_ts(end) if end else datetime.now(timezone.utc)
        t_start = parse_ts(start) if start else t_end - DEFAULT_WINDOW
    except ValueError as e:
        raise HTTPException(400, f"bad timestamp: {e}")
    if t_start > t_end:
        raise HTTPException(400, "start must not be after end")
    return t_start, t_end


def _query(db: Session, ids: List[str], start: Optional[str], end: Optional[str]
           ) -> Tuple[List[HistoryEntry], List[Parameter]]:
    params = [convert_to_parameter(r) for r in fetch_parameters(db)]
    if not ids:
        ids = [p.id for p in params]
    t_start, t_end = _window(start, end)
    return fetch_history(db, ids, t_start, t_end), params


@router.get("")
def history(
    parameter_id: List[str] = Query(default=[]),
    start: Optional[str] = None,
    end: Optional[str] = None,
    db: Session = Depends(get_db),
    _: UserProfile = Depends(require_session),
):
    entries, _params = _query(db, parameter_id, start, end)
    return [e.to_dict() for e in entries]


@router.get("/chart")
def history_chart(
    parameter_id: List[str] = Query(default=[]),
    start: Optional[str] = None,
    end: Optional[str] = None,
    db: Session = Depends(get_db),
    _: UserProfile = Depends(require_session),
):
    entries, params = _query(db, parameter_id, start, end)
    return chart_rows(entries, params)


@router.get("/export")
def history_export(
    parameter_id: List[str] = Query(default=[]),
    start: Optional[str] = None,
    end: Optional[str] = None,
    db: Session = Depends(get_db),
    _: UserProfile = Depends(require_session),
):
    entries, params = _query(db, parameter_id, start, end)
    by_id = {p.id: p for p in params}

    wb = Workbook()
    ws = wb.active
    ws.title = "history"
    ws.append(["Timestamp", "Parameter", "Value", "Unit", "Status"])
    for e in entries:
        p = by_id.get(e.parameter_id)
        ws.append([
            e.timestamp,
            p.name if p else e.parameter_id,
            e.value,
            p.unit if p else "",
            e.status.value,
        ])

    buf = io.BytesIO()
    wb.save(buf)
    buf.seek(0)
    return StreamingResponse(
        buf,
        media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        headers={"Content-Disposition": 'attachment; filename="history.xlsx"'},
    )
