# plc_visualizer/core/status.py
from __future__ import annotations

from typing import Dict, Iterable, Optional

from plc_visualizer.core.types import (
    Bounds,
    Parameter,
    ParameterStatus,
    StatusType,
    Thresholds,
)

# alarm bounds derived from the warning bounds when none are stored
ALARM_MIN_FACTOR = 0.9
ALARM_MAX_FACTOR = 1.1


def _outside(value: float, b: Bounds) -> bool:
    if b.min is not None and value < b.min:
        return True
    if b.max is not None and value > b.max:
        return True
    return False


def evaluate_status(value: float, thresholds: Thresholds) -> ParameterStatus:
    """
    alarm:   value outside the alarm bounds,
    warning: value outside the warning bounds,
    normal:  otherwise. A value equal to a bound is inside.
    """
    if _outside(value, thresholds.alarm):
        return ParameterStatus.ALARM
    if _outside(value, thresholds.warning):
        return ParameterStatus.WARNING
    return ParameterStatus.NORMAL


def derive_thresholds(
    min_value: Optional[float],
    max_value: Optional[float],
    alarm_min: Optional[float] = None,
    alarm_max: Optional[float] = None,
) -> Thresholds:
    a_min = alarm_min
    if a_min is None and min_value is not None:
        a_min = float(min_value) * ALARM_MIN_FACTOR
    a_max = alarm_max
    if a_max is None and max_value is not None:
        a_max = float(max_value) * ALARM_MAX_FACTOR
    return Thresholds(
        warning=Bounds(min=min_value, max=max_value),
        alarm=Bounds(min=a_min, max=a_max),
    )


def crossed_threshold(value: float, thresholds: Thresholds,
                      status: ParameterStatus) -> Optional[float]:
    """Bound that put the value into `status` (max side first)."""
    if status == ParameterStatus.NORMAL:
        return None
    b = thresholds.alarm if status == ParameterStatus.ALARM else thresholds.warning
    if b.max is not None and value > b.max:
        return b.max
    if b.min is not None and value < b.min:
        return b.min
    return None


def system_status(parameters: Iterable[Parameter], connection_status: StatusType) -> StatusType:
    if connection_status in (StatusType.DISCONNECTED, StatusType.CONNECTING):
        return connection_status
    statuses = {p.status for p in parameters}
    if ParameterStatus.ALARM in statuses:
        return StatusType.ALARM
    if ParameterStatus.WARNING in statuses:
        return StatusType.WARNING
    return StatusType.NORMAL


def status_counts(parameters: Iterable[Parameter]) -> Dict[str, int]:
    out = {s.value: 0 for s in ParameterStatus}
    for p in parameters:
        out[p.status.value] += 1
    return out
