# plc_visualizer/services/runtime.py
from __future__ import annotations
from typing import Optional
import threading

from plc_visualizer.services.plc_connection import PLCConnection

_LOCK = threading.Lock()
_CONN: Optional[PLCConnection] = None


def ensure_started() -> PLCConnection:
    """Creates and starts the connection once per process and returns it."""
    global _CONN
    with _LOCK:
        if _CONN is None:
            conn = PLCConnection()
            conn.start()   # loads parameters, then connects per settings.connection
            _CONN = conn
    return _CONN


def connection_instance() -> Optional[PLCConnection]:
    """The running connection, or None if it was never started."""
    return _CONN


def stop_if_running() -> None:
    global _CONN
    with _LOCK:
        if _CONN is not None:
            try:
                _CONN.stop()
            finally:
                _CONN = None
