# plc_visualizer/services/change_feed.py
"""
In-process change notifications for the `parameters` table.

The repository publishes INSERT/UPDATE/DELETE after each commit; the connection
runtime subscribes and reloads its list through a Debouncer, so a burst of
writes costs one reload.

  from plc_visualizer.services.change_feed import change_feed, Debouncer

  reload = Debouncer(1.0, conn.load_parameters)
  unsubscribe = change_feed.subscribe(lambda event, pid: reload.trigger())
"""
from __future__ import annotations

import logging
import threading
from typing import Callable, Dict, Optional

log = logging.getLogger("feed")

Listener = Callable[[str, str], None]  # (event, parameter_id)


class ChangeFeed:
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._listeners: Dict[int, Listener] = {}
        self._seq = 0

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._seq += 1
            token = self._seq
            self._listeners[token] = listener

        def _unsubscribe() -> None:
            with self._lock:
                self._listeners.pop(token, None)

        return _unsubscribe

    def publish(self, event: str, parameter_id: str) -> None:
        with self._lock:
            listeners = list(self._listeners.values())
        for fn in listeners:
            try:
                fn(event, parameter_id)
            except Exception as e:
                log.error(f"[feed] listener failed on {event} {parameter_id}: {e}")

    def listener_count(self) -> int:
        with self._lock:
            return len(self._listeners)


class Debouncer:
    """Calls `fn` once, `delay_s` after the last trigger()."""

    def __init__(self, delay_s: float, fn: Callable[[], None]) -> None:
        self.delay_s = max(0.0, float(delay_s))
        self.fn = fn
        self._lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None

    def trigger(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(self.delay_s, self._fire)
            self._timer.daemon = True
            self._timer.start()

    def _fire(self) -> None:
        with self._lock:
            self._timer = None
        try:
            self.fn()
        except Exception as e:
            log.error(f"[feed] debounced call failed: {e}")

    def cancel(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    @property
    def pending(self) -> bool:
        with self._lock:
            return self._timer is not None


change_feed = ChangeFeed()
