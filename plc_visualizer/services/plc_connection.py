# plc_visualizer/services/plc_connection.py
"""
Live parameter list and PLC connection state.

Two sources of values:
  • simulation: every data_collection.polling_rate_s each value takes a small
    random step (±0.5 %) and its status is re-evaluated;
  • websocket : a feed at ws://<ip>:<port> pushes
      {"type": "parameters", "parameters": [{"id": "...", "value": 1.0}, ...]}
    after we greet it with {"type": "connect", "protocol": "<protocol>"}.

Notes:
- Connection settings are re-read from the YAML on every connect().
- Timeout / error / close → status 'disconnected'; with auto_reconnect another
  connect() is scheduled after reconnect_delay_s.
- Writes to the parameters table reach us through the change feed and are
  debounced into a single load_parameters().
- When the database is down the last snapshot from the offline cache is served
  and history records are queued for replay. While offline the database is
  tried again every offline.retry_s (from the worker loops and on connect()).
  New records go to the queue as long as older ones are waiting there.
"""
from __future__ import annotations

import json
import logging
import random
import threading
import time
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from websockets.exceptions import ConnectionClosedOK, WebSocketException
from websockets.sync.client import connect as ws_connect

from plc_visualizer.core.config import settings
from plc_visualizer.core.status import evaluate_status, status_counts, system_status
from plc_visualizer.core.types import (
    ConnectionMode,
    Parameter,
    ParameterStatus,
    PLCConnectionSettings,
    StatusType,
)
from plc_visualizer.db.session import SessionLocal
from plc_visualizer.services.alerts import AlertsManager, alerts_manager
from plc_visualizer.services.change_feed import ChangeFeed, Debouncer, change_feed
from plc_visualizer.services.offline_cache import OfflineCache
from plc_visualizer.services.parameters import (
    add_history_entry,
    cleanup_history,
    convert_to_parameter,
    fetch_parameters,
    history_record,
)

log = logging.getLogger("plc")

# relative size of one simulation step: value * (1 + (r - 0.5) * STEP)
SIM_STEP = 0.01


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class PLCConnection:
    def __init__(
        self,
        *,
        alerts: Optional[AlertsManager] = None,
        cache: Optional[OfflineCache] = None,
        feed: Optional[ChangeFeed] = None,
        session_factory: Optional[Callable[[], Any]] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._lock = threading.RLock()
        self._params: List[Parameter] = []
        self._status = StatusType.DISCONNECTED
        self.offline = False
        self.last_error: Optional[str] = None
        self.plc: PLCConnectionSettings = settings.connection

        self.alerts = alerts or alerts_manager
        self.cache = cache or OfflineCache(
            settings.offline.get("cache_file", "./data/offline_cache.json")
        )
        self.feed = feed or change_feed
        self._session_factory = session_factory or SessionLocal
        self._rng = rng or random.Random()

        # runtime
        self._attempting = False
        self._stop = threading.Event()
        self._worker: Optional[threading.Thread] = None
        self._socket = None
        self._reconnect_timer: Optional[threading.Timer] = None
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._reload = Debouncer(
            float(settings.realtime.get("debounce_s", 1.0)), self.load_parameters
        )
        self._history_writes = 0
        self._last_db_try = 0.0

    # ───────────────────────── lifecycle ────────────────────────────────────
    def start(self) -> None:
        if self._unsubscribe is None:
            self._unsubscribe = self.feed.subscribe(self._on_table_change)
        self.load_parameters()
        self.connect()

    def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._reload.cancel()
        self.disconnect()

    def _on_table_change(self, event: str, parameter_id: str) -> None:
        log.debug(f"[plc] table change {event} {parameter_id}")
        self._reload.trigger()

    # ───────────────────────── status ───────────────────────────────────────
    @property
    def status(self) -> StatusType:
        return self._status

    def _set_status(self, st: StatusType) -> None:
        with self._lock:
            if self._status != st:
                log.info(f"[plc] status {self._status.value} -> {st.value}")
            self._status = st

    def parameters(self) -> List[Parameter]:
        with self._lock:
            return list(self._params)

    def snapshot(self) -> List[Dict[str, Any]]:
        return [p.to_dict() for p in self.parameters()]

    def state(self) -> Dict[str, Any]:
        params = self.parameters()
        return {
            "connection_status": self._status.value,
            "system_status": system_status(params, self._status).value,
            "offline": self.offline,
            "mode": self.plc.mode.value,
            "target": f"{self.plc.ip}:{self.plc.port}",
            "protocol": self.plc.protocol.value,
            "last_error": self.last_error,
            "total": len(params),
            "counts": status_counts(params),
        }

    # ───────────────────────── data ─────────────────────────────────────────
    def load_parameters(self) -> List[Parameter]:
        self._last_db_try = time.monotonic()
        try:
            with self._session_factory() as db:
                fresh = [convert_to_parameter(r) for r in fetch_parameters(db)]
        except SQLAlchemyError as e:
            log.warning(f"[plc] database unavailable, serving offline snapshot: {e}")
            self.offline = True
            fresh = [Parameter.from_dict(d) for d in self.cache.load_snapshot()]
            self._replace(fresh)
            return fresh

        self.offline = False
        try:
            self.cache.save_snapshot([p.to_dict() for p in fresh])
        except OSError as e:
            log.error(f"[plc] offline snapshot not saved: {e}")
        self._replay_pending()
        self._replace(fresh)
        log.info(f"[plc] parameters loaded: {len(fresh)}")
        return fresh

    def _replace(self, fresh: List[Parameter]) -> None:
        with self._lock:
            prev = {p.id: p.status for p in self._params}
            self._params = list(fresh)
        self._observe(prev, fresh)

    def _observe(self, prev: Dict[str, ParameterStatus], params: List[Parameter]) -> None:
        for p in params:
            try:
                self.alerts.observe(prev.get(p.id), p)
            except Exception as e:
                log.error(f"[plc] alert for {p.id} failed: {e}")

    def tick(self, rng: Optional[random.Random] = None) -> List[Parameter]:
        """One simulation step over all parameters."""
        rng = rng or self._rng
        now = _now_iso()
        with self._lock:
            prev = {p.id: p.status for p in self._params}
            updated: List[Parameter] = []
            for p in self._params:
                change = (rng.random() - 0.5) * SIM_STEP
                value = round(p.value * (1 + change), 2)
                updated.append(replace(
                    p, value=value, status=evaluate_status(value, p.thresholds), timestamp=now
                ))
            self._params = updated
        self._observe(prev, updated)
        return list(updated)

    def apply_feed_message(self, msg: Any) -> int:
        """Apply a 'parameters' message from the feed; returns how many changed."""
        if not isinstance(msg, dict) or msg.get("type") != "parameters":
            return 0
        incoming: Dict[str, float] = {}
        for it in msg.get("parameters") or []:
            if not isinstance(it, dict) or "id" not in it:
                continue
            try:
                incoming[str(it["id"])] = float(it["value"])
            except (KeyError, TypeError, ValueError):
                log.debug(f"[plc] bad value in feed item: {it!r}")

        now = _now_iso()
        changed: List[Parameter] = []
        with self._lock:
            prev = {p.id: p.status for p in self._params}
            out: List[Parameter] = []
            for p in self._params:
                if p.id in incoming:
                    v = incoming[p.id]
                    p = replace(p, value=v, status=evaluate_status(v, p.thresholds), timestamp=now)
                    changed.append(p)
                out.append(p)
            self._params = out
        self._observe(prev, changed)

        if settings.data_collection.historical_logging and changed:
            self._write_history([history_record(p) for p in changed])
        return len(changed)

    # ───────────────────────── history ──────────────────────────────────────
    def save_history(self) -> int:
        if not settings.data_collection.historical_logging:
            return 0
        params = self.parameters()
        if params:
            self._write_history([history_record(p) for p in params])
        return len(params)

    def _write_history(self, records: List[Dict[str, Any]]) -> None:
        if self.offline or self.cache.has_pending():
            # older records are still queued; keep insertion order
            self._queue_history(records)
            return
        H = settings.history
        every = int(H.get("cleanup_every", 500) or 500)
        done = 0
        try:
            with self._session_factory() as db:
                for record in records:
                    add_history_entry(db, record)
                    done += 1
                    self._history_writes += 1
                    if self._history_writes % every == 0:
                        cleanup_history(db, int(H.get("ttl_days", 0) or 0), int(H.get("max_rows", 0) or 0))
        except SQLAlchemyError as e:
            log.warning(f"[plc] history write failed, queued offline: {e}")
            self.offline = True
            self._queue_history(records[done:])

    def _queue_history(self, records: List[Dict[str, Any]]) -> None:
        self.cache.max_pending = int(settings.offline.get("max_pending", 5000) or 0)
        try:
            self.cache.queue_history(*records)
        except OSError as e:
            log.error(f"[plc] {len(records)} history records lost: {e}")

    def _replay_pending(self) -> None:
        def _write(entry: Dict[str, Any]) -> None:
            with self._session_factory() as db:
                add_history_entry(db, entry)
        try:
            self.cache.replay(_write)
        except OSError as e:
            log.error(f"[plc] offline replay failed: {e}")

    def _retry_database(self) -> None:
        """While offline, reload from the database once every offline.retry_s."""
        if not self.offline:
            return
        retry = float(settings.offline.get("retry_s", 10) or 10)
        if time.monotonic() - self._last_db_try < retry:
            return
        log.info("[plc] offline, trying the database again")
        self.load_parameters()

    # ───────────────────────── connection ───────────────────────────────────
    def connect(self, force: bool = False) -> None:
        """(Re)connect with the current settings.connection. force=True drops an attempt in flight."""
        with self._lock:
            if self._attempting and not force:
                return
            self._attempting = True
        self._cancel_reconnect()
        self._halt_worker()

        self.plc = settings.connection
        self.last_error = None
        if self.offline:
            self.load_parameters()
        self._set_status(StatusType.CONNECTING)
        log.info(f"[plc] connecting to {self.plc.ip}:{self.plc.port} "
                 f"({self.plc.protocol.value}, mode={self.plc.mode.value})")

        if self.plc.mode == ConnectionMode.SIMULATION:
            self._set_status(StatusType.NORMAL)
            with self._lock:
                self._attempting = False
            self._start_worker(self._run_simulation, "plc-sim")
        else:
            self._start_worker(self._run_socket, "plc-ws")

    def disconnect(self) -> None:
        self._cancel_reconnect()
        self._halt_worker()
        with self._lock:
            self._attempting = False
        self._set_status(StatusType.DISCONNECTED)

    def _start_worker(self, target: Callable[[threading.Event], None], name: str) -> None:
        stop = threading.Event()
        th = threading.Thread(target=target, args=(stop,), name=name, daemon=True)
        with self._lock:
            self._stop = stop
            self._worker = th
        th.start()

    def _halt_worker(self) -> None:
        with self._lock:
            stop, worker, sock = self._stop, self._worker, self._socket
            self._worker = None
            self._socket = None
        stop.set()
        if sock is not None:
            try:
                sock.close()
            except Exception:
                pass
        if worker is not None and worker is not threading.current_thread():
            worker.join(timeout=2.0)

    def _cancel_reconnect(self) -> None:
        with self._lock:
            t, self._reconnect_timer = self._reconnect_timer, None
        if t is not None:
            t.cancel()

    def _schedule_reconnect(self) -> None:
        delay = float(self.plc.reconnect_delay_s)
        with self._lock:
            if self._reconnect_timer is not None:
                self._reconnect_timer.cancel()
            t = threading.Timer(delay, self.connect)
            t.daemon = True
            self._reconnect_timer = t
        t.start()
        log.info(f"[plc] reconnect in {delay:.0f}s")

    @property
    def reconnect_pending(self) -> bool:
        with self._lock:
            return self._reconnect_timer is not None

    def _on_link_down(self, reason: str, stop: threading.Event) -> None:
        if stop.is_set():
            # worker was replaced or stopped
            return
        with self._lock:
            self._attempting = False
            self._socket = None
        self.last_error = reason
        self._set_status(StatusType.DISCONNECTED)
        log.warning(f"[plc] {self.plc.url}: {reason}")
        if self.plc.auto_reconnect:
            self._schedule_reconnect()

    # ───────────────────────── workers ──────────────────────────────────────
    def _run_simulation(self, stop: threading.Event) -> None:
        log.info("[plc] simulation mode started")
        last_hist = time.monotonic()
        while not stop.wait(max(1, settings.data_collection.polling_rate_s)):
            self._retry_database()
            if self._status != StatusType.NORMAL:
                continue
            try:
                self.tick()
                save_every = int(settings.history.get("save_every_s", 60) or 60)
                if time.monotonic() - last_hist >= save_every:
                    self.save_history()
                    last_hist = time.monotonic()
            except Exception as e:
                log.error(f"[plc] simulation step failed: {e}")
        log.info("[plc] simulation mode stopped")

    def _run_socket(self, stop: threading.Event) -> None:
        opened = False
        reason = "connection closed"
        try:
            with ws_connect(self.plc.url, open_timeout=self.plc.connect_timeout_s) as ws:
                with self._lock:
                    if stop.is_set():
                        return
                    self._socket = ws
                    self._attempting = False
                opened = True
                self._set_status(StatusType.NORMAL)

                ws.send(json.dumps({"type": "connect", "protocol": self.plc.protocol.value}))
                self._pump(ws, stop)
        except ConnectionClosedOK:
            pass
        except (OSError, TimeoutError, WebSocketException) as e:
            reason = f"socket error: {e}" if opened else f"connect failed: {e}"

        if not stop.is_set():
            self._on_link_down(reason, stop)

    def _pump(self, ws: Any, stop: threading.Event) -> None:
        # recv() times out every retry_s; offline retries run between messages
        while not stop.is_set():
            retry = float(settings.offline.get("retry_s", 10) or 10)
            try:
                raw = ws.recv(timeout=retry)
            except TimeoutError:
                raw = None
            if raw is not None and not stop.is_set():
                self._handle_raw(raw)
            self._retry_database()

    def _handle_raw(self, raw: Any) -> None:
        try:
            msg = json.loads(raw)
        except (TypeError, ValueError) as e:
            log.error(f"[plc] bad message from feed: {e}")
            return
        try:
            self.apply_feed_message(msg)
        except Exception as e:
            log.error(f"[plc] feed message not applied: {e}")
