import json
import logging
import random
import socket
import threading
from contextlib import contextmanager

import pytest
from sqlalchemy.exc import SQLAlchemyError
from websockets.exceptions import ConnectionClosed
from websockets.sync.server import serve

from plc_visualizer.core.types import ParameterStatus, StatusType
from plc_visualizer.db.models import ParameterHistoryRow
from plc_visualizer.db.session import SessionLocal
from plc_visualizer.services.change_feed import ChangeFeed, change_feed
from plc_visualizer.services.offline_cache import OfflineCache
from plc_visualizer.services.parameters import create_parameter
from plc_visualizer.services.plc_connection import PLCConnection


class RecordingAlerts:
    def __init__(self):
        self.calls = []

    def observe(self, previous, p):
        self.calls.append((p.id, previous, p.status))


class FlakySessions:
    def __init__(self):
        self.fail = False

    def __call__(self):
        if self.fail:
            raise SQLAlchemyError("database is down")
        return SessionLocal()


@pytest.fixture
def alerts():
    return RecordingAlerts()


@pytest.fixture
def sessions():
    return FlakySessions()


@pytest.fixture
def make_conn(tmp_path, alerts, sessions):
    made = []

    def _make(feed=None):
        conn = PLCConnection(
            alerts=alerts,
            cache=OfflineCache(str(tmp_path / "offline.json")),
            feed=feed or ChangeFeed(),
            session_factory=sessions,
            rng=random.Random(42),
        )
        made.append(conn)
        return conn

    yield _make
    for conn in made:
        conn.stop()


@pytest.fixture
def reactor(db):
    return create_parameter(db, {
        "name": "Reactor", "unit": "°C", "value": 75.0, "min_value": 70, "max_value": 85,
    })


def _free_port():
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@contextmanager
def _feed_server(handler):
    server = serve(handler, "127.0.0.1", 0)
    th = threading.Thread(target=server.serve_forever, daemon=True)
    th.start()
    try:
        yield server.socket.getsockname()[1]
    finally:
        server.shutdown()
        th.join(timeout=2)


def _drain(ws):
    try:
        for _ in ws:
            pass
    except ConnectionClosed:
        pass


# ─────────────────────────────────────────────────────────────────────────────
# loading
# ─────────────────────────────────────────────────────────────────────────────

def test_load_parameters_saves_snapshot(make_conn, reactor, alerts):
    conn = make_conn()
    params = conn.load_parameters()
    assert [p.id for p in params] == [reactor.id]
    assert conn.offline is False
    assert conn.cache.load_snapshot()[0]["id"] == reactor.id
    # first sighting is not a transition
    assert alerts.calls == [(reactor.id, None, ParameterStatus.NORMAL)]


def test_database_down_serves_snapshot(make_conn, reactor, sessions):
    conn = make_conn()
    conn.load_parameters()
    sessions.fail = True
    params = conn.load_parameters()
    assert conn.offline is True
    assert [p.id for p in params] == [reactor.id]
    assert params[0].value == 75.0

    sessions.fail = False
    conn.load_parameters()
    assert conn.offline is False


# ─────────────────────────────────────────────────────────────────────────────
# simulation
# ─────────────────────────────────────────────────────────────────────────────

def test_tick_is_a_small_random_step(make_conn, reactor):
    conn = make_conn()
    conn.load_parameters()
    before = conn.parameters()[0]
    after = conn.tick()[0]
    assert abs(after.value - before.value) <= before.value * 0.005 + 0.01
    assert after.value == round(after.value, 2)
    assert after.status == ParameterStatus.NORMAL


def test_simulation_connect_and_disconnect(make_conn, reactor):
    conn = make_conn()
    conn.load_parameters()
    conn.connect()
    assert conn.status == StatusType.NORMAL
    assert conn.state()["system_status"] == "normal"
    conn.disconnect()
    assert conn.status == StatusType.DISCONNECTED
    assert conn.state()["system_status"] == "disconnected"


def test_save_history_writes_every_parameter(make_conn, reactor, db, configure):
    conn = make_conn()
    conn.load_parameters()
    assert conn.save_history() == 1
    assert db.query(ParameterHistoryRow).count() == 1

    configure("data_collection", historical_logging=False)
    assert conn.save_history() == 0


# ─────────────────────────────────────────────────────────────────────────────
# feed messages
# ─────────────────────────────────────────────────────────────────────────────

def test_feed_message_updates_values_and_raises_transition(make_conn, reactor, alerts, db):
    conn = make_conn()
    conn.load_parameters()
    alerts.calls.clear()

    n = conn.apply_feed_message({"type": "parameters", "parameters": [
        {"id": reactor.id, "value": 88},
        {"id": "unknown", "value": 1},
        {"id": reactor.id + "x"},
    ]})
    assert n == 1
    p = conn.parameters()[0]
    assert p.value == 88.0
    assert p.status == ParameterStatus.WARNING
    assert alerts.calls == [(reactor.id, ParameterStatus.NORMAL, ParameterStatus.WARNING)]
    assert db.query(ParameterHistoryRow).count() == 1


def test_feed_message_of_other_type_is_ignored(make_conn, reactor):
    conn = make_conn()
    conn.load_parameters()
    assert conn.apply_feed_message({"type": "hello"}) == 0
    assert conn.apply_feed_message(["not", "a", "dict"]) == 0
    assert conn.apply_feed_message({"type": "parameters",
                                    "parameters": [{"id": reactor.id, "value": "n/a"}]}) == 0


def test_history_is_queued_offline_and_replayed(make_conn, reactor, sessions, db):
    conn = make_conn()
    conn.load_parameters()
    sessions.fail = True
    conn.apply_feed_message({"type": "parameters", "parameters": [{"id": reactor.id, "value": 80}]})
    assert len(conn.cache.pending_history()) == 1

    sessions.fail = False
    conn.load_parameters()
    assert conn.cache.pending_history() == []
    rows = db.query(ParameterHistoryRow).all()
    assert [r.value for r in rows] == [80.0]


# ─────────────────────────────────────────────────────────────────────────────
# change feed
# ─────────────────────────────────────────────────────────────────────────────

def test_table_changes_reload_the_list(make_conn, db, wait_for):
    conn = make_conn(feed=change_feed)
    conn.start()
    assert conn.parameters() == []

    row = create_parameter(db, {"name": "Flow", "value": 20, "min_value": 15, "max_value": 25})
    assert wait_for(lambda: [p.id for p in conn.parameters()] == [row.id])


# ─────────────────────────────────────────────────────────────────────────────
# websocket
# ─────────────────────────────────────────────────────────────────────────────

def test_websocket_connect_failure_schedules_reconnect(make_conn, configure, wait_for):
    configure("connection", mode="websocket", port=str(_free_port()),
              connect_timeout_s=1, reconnect_delay_s=30, auto_reconnect=True)
    conn = make_conn()
    conn.connect()
    assert wait_for(lambda: conn.status == StatusType.DISCONNECTED and conn.reconnect_pending)
    assert conn.last_error

    conn.disconnect()
    assert not conn.reconnect_pending


def test_websocket_connect_failure_without_auto_reconnect(make_conn, configure, wait_for):
    configure("connection", mode="websocket", port=str(_free_port()),
              connect_timeout_s=1, auto_reconnect=False)
    conn = make_conn()
    conn.connect()
    assert wait_for(lambda: conn.status == StatusType.DISCONNECTED and conn.last_error)
    assert not conn.reconnect_pending


def test_websocket_feed_pushes_values(make_conn, reactor, configure, wait_for):
    greetings = []

    def handler(ws):
        greetings.append(json.loads(ws.recv()))
        ws.send(json.dumps({"type": "parameters",
                            "parameters": [{"id": reactor.id, "value": 99.0}]}))
        _drain(ws)

    with _feed_server(handler) as port:
        configure("connection", mode="websocket", port=str(port), protocol="opcua")
        conn = make_conn()
        conn.load_parameters()
        conn.connect()
        assert wait_for(lambda: conn.parameters()[0].value == 99.0)
        assert conn.status == StatusType.NORMAL
        assert greetings == [{"type": "connect", "protocol": "opcua"}]
        assert conn.parameters()[0].status == ParameterStatus.ALARM


def test_invalid_feed_messages_are_skipped(make_conn, reactor, configure, wait_for, caplog):
    caplog.set_level(logging.ERROR, logger="plc")

    def handler(ws):
        ws.recv()
        ws.send("{not json")
        ws.send(json.dumps({"type": "parameters",
                            "parameters": [{"id": reactor.id, "value": 80.5}]}))
        _drain(ws)

    with _feed_server(handler) as port:
        configure("connection", mode="websocket", port=str(port))
        conn = make_conn()
        conn.load_parameters()
        conn.connect()
        assert wait_for(lambda: conn.parameters()[0].value == 80.5)
        assert conn.status == StatusType.NORMAL
    assert "bad message from feed" in caplog.text


def test_server_close_schedules_reconnect(make_conn, configure, wait_for):
    def handler(ws):
        ws.recv()       # greeting, then the server hangs up

    with _feed_server(handler) as port:
        configure("connection", mode="websocket", port=str(port),
                  reconnect_delay_s=30, auto_reconnect=True)
        conn = make_conn()
        conn.connect()
        assert wait_for(lambda: conn.status == StatusType.DISCONNECTED and conn.reconnect_pending)
        assert conn.last_error == "connection closed"


def test_connect_while_attempt_in_flight(make_conn, configure):
    # accepts TCP but never answers the websocket handshake
    with socket.socket() as silent:
        silent.bind(("127.0.0.1", 0))
        silent.listen()
        configure("connection", mode="websocket", port=str(silent.getsockname()[1]),
                  connect_timeout_s=1, auto_reconnect=False)
        conn = make_conn()
        conn.connect()
        assert conn.status == StatusType.CONNECTING

        configure("connection", mode="simulation")
        conn.connect()
        assert conn.status == StatusType.CONNECTING
        assert conn.state()["mode"] == "websocket"

        conn.connect(force=True)
        assert conn.status == StatusType.NORMAL
        assert conn.state()["mode"] == "simulation"


# ─────────────────────────────────────────────────────────────────────────────
# thresholds and offline recovery
# ─────────────────────────────────────────────────────────────────────────────

class _Upward:
    def random(self):
        return 0.99


def test_tick_across_threshold_is_a_transition(make_conn, db, alerts):
    row = create_parameter(db, {"name": "Reactor", "value": 84.9, "min_value": 70, "max_value": 85})
    conn = make_conn()
    conn.load_parameters()
    alerts.calls.clear()

    p = conn.tick(_Upward())[0]
    assert p.value > 85
    assert p.status == ParameterStatus.WARNING
    assert alerts.calls == [(row.id, ParameterStatus.NORMAL, ParameterStatus.WARNING)]


def test_offline_runtime_recovers_on_connect(make_conn, reactor, sessions, db):
    conn = make_conn()
    conn.load_parameters()
    sessions.fail = True
    conn.load_parameters()
    conn.save_history()
    conn.tick()
    conn.save_history()
    assert conn.offline is True
    assert len(conn.cache.pending_history()) == 2

    sessions.fail = False
    conn.connect(force=True)
    assert conn.offline is False
    assert conn.state()["offline"] is False
    assert conn.cache.pending_history() == []
    assert db.query(ParameterHistoryRow).count() == 2


def test_offline_runtime_retries_from_the_worker(make_conn, reactor, sessions, configure, wait_for):
    configure("data_collection", polling_rate_s=1)
    configure("offline", retry_s=0.1)
    conn = make_conn()
    sessions.fail = True
    conn.start()
    assert conn.offline is True
    assert conn.parameters() == []

    sessions.fail = False
    assert wait_for(lambda: not conn.offline, timeout=4.0)
    assert [p.id for p in conn.parameters()] == [reactor.id]


def test_new_history_waits_behind_queued_records(make_conn, reactor, sessions, db):
    conn = make_conn()
    conn.load_parameters()
    sessions.fail = True
    conn.apply_feed_message({"type": "parameters", "parameters": [{"id": reactor.id, "value": 80}]})
    assert conn.offline is True

    sessions.fail = False
    conn.apply_feed_message({"type": "parameters", "parameters": [{"id": reactor.id, "value": 81}]})
    assert db.query(ParameterHistoryRow).count() == 0
    assert [e["value"] for e in conn.cache.pending_history()] == [80.0, 81.0]

    conn.load_parameters()
    rows = db.query(ParameterHistoryRow).order_by(ParameterHistoryRow.id).all()
    assert [r.value for r in rows] == [80.0, 81.0]


def test_offline_queue_is_capped(make_conn, reactor, sessions, configure):
    configure("offline", max_pending=2)
    conn = make_conn()
    conn.load_parameters()
    sessions.fail = True
    for v in (80, 81, 82):
        conn.apply_feed_message({"type": "parameters", "parameters": [{"id": reactor.id, "value": v}]})
    assert [e["value"] for e in conn.cache.pending_history()] == [81.0, 82.0]
