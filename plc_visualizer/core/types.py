# plc_visualizer/core/types.py
from __future__ import annotations

from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, Optional


# === 1. ENUMS ================================================================

class ParameterStatus(str, Enum):
    """Health of a single parameter."""
    NORMAL = "normal"
    WARNING = "warning"
    ALARM = "alarm"


class StatusType(str, Enum):
    """Connection status / overall system status."""
    NORMAL = "normal"
    WARNING = "warning"
    ALARM = "alarm"
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"


class Protocol(str, Enum):
    OPCUA = "opcua"
    MODBUS = "modbus"
    ETHERNET_IP = "ethernet-ip"
    SNAP7 = "snap7"
    S7COMM = "s7comm"


class ConnectionMode(str, Enum):
    SIMULATION = "simulation"   # random walk of the stored values
    WEBSOCKET = "websocket"     # values pushed by a feed at ws://ip:port


class Role(str, Enum):
    ADMIN = "admin"
    OPERATOR = "operator"


# === 2. PARAMETERS ============================================================

@dataclass
class Bounds:
    min: Optional[float] = None
    max: Optional[float] = None


@dataclass
class Thresholds:
    warning: Bounds = field(default_factory=Bounds)
    alarm: Bounds = field(default_factory=Bounds)


@dataclass
class Parameter:
    """Live view of one process parameter."""
    id: str
    name: str
    description: str
    unit: str
    value: float
    status: ParameterStatus
    thresholds: Thresholds
    timestamp: str
    category: str = "Custom"

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["status"] = self.status.value
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Parameter":
        th = d.get("thresholds") or {}
        w = th.get("warning") or {}
        a = th.get("alarm") or {}
        return cls(
            id=str(d["id"]),
            name=str(d.get("name", "")),
            description=str(d.get("description", "")),
            unit=str(d.get("unit", "")),
            value=float(d.get("value", 0.0)),
            status=ParameterStatus(d.get("status", "normal")),
            thresholds=Thresholds(
                warning=Bounds(min=w.get("min"), max=w.get("max")),
                alarm=Bounds(min=a.get("min"), max=a.get("max")),
            ),
            timestamp=str(d.get("timestamp", "")),
            category=str(d.get("category", "Custom")),
        )


@dataclass
class HistoryEntry:
    parameter_id: str
    value: float
    status: ParameterStatus
    timestamp: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "parameter_id": self.parameter_id,
            "value": self.value,
            "status": self.status.value,
            "timestamp": self.timestamp,
        }


@dataclass
class Alert:
    id: str
    parameter_id: str
    parameter_name: str
    value: float
    threshold: Optional[float]
    status: ParameterStatus          # warning | alarm
    timestamp: str
    acknowledged: bool = False
    notified: bool = False

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["status"] = self.status.value
        return d


# === 3. SETTINGS ==============================================================

@dataclass
class PLCConnectionSettings:
    ip: str = "192.168.1.1"
    port: str = "502"
    protocol: Protocol = Protocol.MODBUS
    auto_reconnect: bool = True
    mode: ConnectionMode = ConnectionMode.SIMULATION
    connect_timeout_s: float = 5.0
    reconnect_delay_s: float = 10.0

    @classmethod
    def from_cfg(cls, sec: Dict[str, Any]) -> "PLCConnectionSettings":
        sec = sec or {}
        return cls(
            ip=str(sec.get("ip", cls.ip)),
            port=str(sec.get("port", cls.port)),
            protocol=Protocol(sec.get("protocol", cls.protocol.value)),
            auto_reconnect=bool(sec.get("auto_reconnect", True)),
            mode=ConnectionMode(sec.get("mode", cls.mode.value)),
            connect_timeout_s=float(sec.get("connect_timeout_s", cls.connect_timeout_s)),
            reconnect_delay_s=float(sec.get("reconnect_delay_s", cls.reconnect_delay_s)),
        )

    @property
    def url(self) -> str:
        return f"ws://{self.ip}:{self.port}"

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["protocol"] = self.protocol.value
        d["mode"] = self.mode.value
        return d


@dataclass
class DataCollectionSettings:
    polling_rate_s: int = 30
    historical_logging: bool = True
    alarm_notifications: bool = True

    @classmethod
    def from_cfg(cls, sec: Dict[str, Any]) -> "DataCollectionSettings":
        sec = sec or {}
        return cls(
            polling_rate_s=int(sec.get("polling_rate_s", cls.polling_rate_s)),
            historical_logging=bool(sec.get("historical_logging", True)),
            alarm_notifications=bool(sec.get("alarm_notifications", True)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class NotificationSettings:
    email_notification: bool = False
    sms_notification: bool = False
    email: str = ""
    phone: str = ""
    email_endpoint: str = ""
    sms_endpoint: str = ""
    http_timeout_s: int = 10

    @classmethod
    def from_cfg(cls, sec: Dict[str, Any]) -> "NotificationSettings":
        sec = sec or {}
        return cls(
            email_notification=bool(sec.get("email_notification", False)),
            sms_notification=bool(sec.get("sms_notification", False)),
            email=str(sec.get("email", "") or ""),
            phone=str(sec.get("phone", "") or ""),
            email_endpoint=str(sec.get("email_endpoint", "") or ""),
            sms_endpoint=str(sec.get("sms_endpoint", "") or ""),
            http_timeout_s=int(sec.get("http_timeout_s", 10) or 10),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# === 4. USERS ================================================================

@dataclass
class UserProfile:
    id: str
    username: str
    role: Role

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "username": self.username, "role": self.role.value}
