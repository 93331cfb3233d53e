# plc_visualizer/db/models.py
import uuid
from datetime import datetime, timezone

from sqlalchemy.orm import declarative_base
from sqlalchemy import Boolean, Column, DateTime, Float, Integer, String, Text

Base = declarative_base()


def _uuid() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ParameterRow(Base):
    __tablename__ = "parameters"
    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(128), index=True, nullable=False)
    description = Column(Text, nullable=True)
    category = Column(String(64), nullable=True)
    unit = Column(String(32), default="")
    value = Column(Float, default=0.0)
    min_value = Column(Float, nullable=True)       # warning bounds
    max_value = Column(Float, nullable=True)
    alarm_min = Column(Float, nullable=True)       # NULL = min_value * 0.9
    alarm_max = Column(Float, nullable=True)       # NULL = max_value * 1.1
    status = Column(String(16), default="normal")
    user_id = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, index=True)


class ParameterHistoryRow(Base):
    __tablename__ = "parameter_history"
    id = Column(Integer, primary_key=True)
    parameter_id = Column(String(36), index=True)
    value = Column(Float)
    status = Column(String(16))
    ts = Column(DateTime(timezone=True), index=True)


class AlertRow(Base):
    __tablename__ = "alerts"
    id = Column(String(36), primary_key=True, default=_uuid)
    parameter_id = Column(String(36), index=True)
    parameter_name = Column(String(128))
    value = Column(Float)
    threshold = Column(Float, nullable=True)
    status = Column(String(16))                    # warning | alarm
    ts = Column(DateTime(timezone=True), index=True, default=_utcnow)
    acknowledged = Column(Boolean, default=False, index=True)
    notified = Column(Boolean, default=False)
