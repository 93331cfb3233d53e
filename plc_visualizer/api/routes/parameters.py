# plc_visualizer/api/routes/parameters.py
from __future__ import annotations

import io
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse
from openpyxl import Workbook
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from plc_visualizer.api.routes.account import require_session
from plc_visualizer.core.types import Parameter, UserProfile
from plc_visualizer.db.session import get_db
from plc_visualizer.services.parameters import (
    convert_to_parameter,
    create_parameter,
    delete_parameter,
    fetch_parameters,
    update_parameter,
)
from plc_visualizer.services.runtime import connection_instance

router = APIRouter(prefix="/api/parameters", tags=["parameters"])


class ParameterDTO(BaseModel):
    name: str = Field(..., min_length=1, max_length=128)
    description: Optional[str] = None
    category: Optional[str] = None
    unit: str = ""
    value: float = 0.0
    min_value: Optional[float] = None
    max_value: Optional[float] = None
    alarm_min: Optional[float] = None
    alarm_max: Optional[float] = None


class ParameterUpdateDTO(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=128)
    description: Optional[str] = None
    category: Optional[str] = None
    unit: Optional[str] = None
    value: Optional[float] = None
    min_value: Optional[float] = None
    max_value: Optional[float] = None
    alarm_min: Optional[float] = None
    alarm_max: Optional[float] = None


def _live(db: Session) -> List[Parameter]:
    # before the runtime is up the stored values are all we have
    conn = connection_instance()
    if conn is not None:
        return conn.parameters()
    return [convert_to_parameter(r) for r in fetch_parameters(db)]


@router.get("")
def list_parameters(
    category: Optional[str] = None,
    status: Optional[str] = None,
    db: Session = Depends(get_db),
    _: UserProfile = Depends(require_session),
) -> List[Dict[str, Any]]:
    out = _live(db)
    if category:
        out = [p for p in out if p.category == category]
    if status:
        out = [p for p in out if p.status.value == status]
    return [p.to_dict() for p in out]


@router.post("")
def add_parameter(dto: ParameterDTO, db: Session = Depends(get_db),
                  user: UserProfile = Depends(require_session)):
    try:
        row = create_parameter(db, dto.model_dump(), user_id=user.id)
    except ValueError as e:
        raise HTTPException(400, str(e))
    return convert_to_parameter(row).to_dict()


@router.put("/{parameter_id}")
def edit_parameter(parameter_id: str, dto: ParameterUpdateDTO, db: Session = Depends(get_db),
                   _: UserProfile = Depends(require_session)):
    try:
        row = update_parameter(db, parameter_id, dto.model_dump(exclude_unset=True))
    except ValueError as e:
        raise HTTPException(400, str(e))
    if row is None:
        raise HTTPException(404, "parameter not found")
    return convert_to_parameter(row).to_dict()


@router.delete("/{parameter_id}")
def remove_parameter(parameter_id: str, db: Session = Depends(get_db),
                     _: UserProfile = Depends(require_session)):
    if not delete_parameter(db, parameter_id):
        raise HTTPException(404, "parameter not found")
    return {"ok": True}


@router.get("/export")
def export_parameters(db: Session = Depends(get_db), _: UserProfile = Depends(require_session)):
    wb = Workbook()
    ws = wb.active
    ws.title = "parameters"
    ws.append([
        "Name", "Category", "Value", "Unit", "Status",
        "Warning min", "Warning max", "Alarm min", "Alarm max", "Updated",
    ])
    for p in _live(db):
        th = p.thresholds
        ws.append([
            p.name, p.category, p.value, p.unit, p.status.value,
            th.warning.min, th.warning.max, th.alarm.min, th.alarm.max,
            p.timestamp,
        ])

    buf = io.BytesIO()
    wb.save(buf)
    buf.seek(0)
    return StreamingResponse(
        buf,
        media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        headers={"Content-Disposition": 'attachment; filename="parameters.xlsx"'},
    )
