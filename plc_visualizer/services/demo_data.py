# plc_visualizer/services/demo_data.py
"""
Demo plant: twelve parameters with a day of history, inserted on startup when
`demo.seed` is on and the parameters table is empty.
"""
from __future__ import annotations

import logging
import random
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from plc_visualizer.core.config import settings
from plc_visualizer.core.status import derive_thresholds, evaluate_status
from plc_visualizer.db.models import ParameterHistoryRow, ParameterRow

log = logging.getLogger("plc.demo")

HISTORY_POINTS = 96          # 24 h
HISTORY_STEP = timedelta(minutes=15)
HISTORY_VARIANCE = 0.15      # ±15 % of the base value

# min_value/max_value are the warning bounds; alarm_min/alarm_max are stored as given
DEMO_PARAMETERS: List[Dict[str, Any]] = [
    {"id": "temp-001", "name": "Temperature Sensor 1", "description": "Main reactor temperature sensor",
     "unit": "°C", "value": 75.2, "category": "Temperature",
     "min_value": 70, "max_value": 85, "alarm_min": 60, "alarm_max": 90},
    {"id": "press-001", "name": "Pressure Sensor 1", "description": "Main line pressure",
     "unit": "bar", "value": 5.7, "category": "Pressure",
     "min_value": 4.5, "max_value": 6.0, "alarm_min": 4.0, "alarm_max": 6.5},
    {"id": "flow-001", "name": "Flow Rate Sensor 1", "description": "Main line flow rate",
     "unit": "L/min", "value": 22.3, "category": "Flow",
     "min_value": 15, "max_value": 25, "alarm_min": 10, "alarm_max": 30},
    {"id": "volt-001", "name": "Voltage Monitor 1", "description": "Main power supply voltage",
     "unit": "V", "value": 232.8, "category": "Electrical",
     "min_value": 220, "max_value": 240, "alarm_min": 210, "alarm_max": 250},
    {"id": "amp-001", "name": "Current Monitor 1", "description": "Main power supply current",
     "unit": "A", "value": 15.7, "category": "Electrical",
     "min_value": 10, "max_value": 15, "alarm_min": 5, "alarm_max": 15.5},
    {"id": "ph-001", "name": "pH Level Sensor", "description": "Process fluid pH level",
     "unit": "pH", "value": 7.2, "category": "Chemical",
     "min_value": 6.5, "max_value": 7.5, "alarm_min": 6.0, "alarm_max": 8.0},
    {"id": "level-001", "name": "Tank Level Sensor", "description": "Main tank fluid level",
     "unit": "%", "value": 68.3, "category": "Level",
     "min_value": 20, "max_value": 90, "alarm_min": 10, "alarm_max": 95},
    {"id": "motor-001", "name": "Motor Speed", "description": "Main drive motor speed",
     "unit": "RPM", "value": 1750, "category": "Motor",
     "min_value": 1600, "max_value": 1800, "alarm_min": 1500, "alarm_max": 1850},
    {"id": "torque-001", "name": "Drive Torque", "description": "Main drive torque output",
     "unit": "Nm", "value": 85.4, "category": "Motor",
     "min_value": 70, "max_value": 90, "alarm_min": 60, "alarm_max": 95},
    {"id": "vibration-001", "name": "Vibration Sensor", "description": "Machine vibration level",
     "unit": "mm/s", "value": 3.2, "category": "Mechanical",
     "min_value": 2.5, "max_value": 4.0, "alarm_min": 0, "alarm_max": 5.0},
    {"id": "humidity-001", "name": "Ambient Humidity", "description": "Control cabinet humidity",
     "unit": "%RH", "value": 45.7, "category": "Environmental",
     "min_value": 30, "max_value": 70, "alarm_min": 20, "alarm_max": 80},
    {"id": "temp-002", "name": "Ambient Temperature", "description": "Control cabinet temperature",
     "unit": "°C", "value": 24.3, "category": "Environmental",
     "min_value": 15, "max_value": 35, "alarm_min": 10, "alarm_max": 40},
]


def generate_mock_history(
    item: Dict[str, Any],
    now: Optional[datetime] = None,
    rng: Optional[random.Random] = None,
) -> List[ParameterHistoryRow]:
    """HISTORY_POINTS readings ending at `now`, oldest first."""
    rng = rng or random.Random()
    now = now or datetime.now(timezone.utc)
    base = float(item["value"])
    variance = base * HISTORY_VARIANCE
    th = derive_thresholds(item.get("min_value"), item.get("max_value"),
                           item.get("alarm_min"), item.get("alarm_max"))
    rows: List[ParameterHistoryRow] = []
    for i in range(HISTORY_POINTS - 1, -1, -1):
        value = round(base + rng.uniform(-variance, variance), 2)
        rows.append(ParameterHistoryRow(
            parameter_id=item["id"],
            value=value,
            status=evaluate_status(value, th).value,
            ts=now - i * HISTORY_STEP,
        ))
    return rows


def seed_demo(db: Session, force: bool = False) -> int:
    """Returns the number of parameters inserted (0 when skipped)."""
    if not force and not settings.demo.get("seed", False):
        return 0
    if db.query(ParameterRow).count() > 0:
        return 0

    now = datetime.now(timezone.utc)
    for item in DEMO_PARAMETERS:
        row = ParameterRow(**item)
        th = derive_thresholds(row.min_value, row.max_value, row.alarm_min, row.alarm_max)
        row.status = evaluate_status(float(row.value), th).value
        row.created_at = now
        row.updated_at = now
        db.add(row)
        if settings.demo.get("history", True):
            db.add_all(generate_mock_history(item, now=now))
    db.commit()
    log.info(f"demo plant seeded: {len(DEMO_PARAMETERS)} parameters")
    return len(DEMO_PARAMETERS)
