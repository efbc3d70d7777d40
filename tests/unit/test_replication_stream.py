from dataclasses import replace
from pathlib import Path
from types import SimpleNamespace

import psycopg2
import pytest

from lsn_replicator.config import Settings
from lsn_replicator.replication.errors import ReplicationError, UnsupportedBackendError
from lsn_replicator.replication.notifications import Opcode, parse_notification
from lsn_replicator.replication.stream import PgReplicationStream, ReplicationContext


def _settings(**overrides) -> Settings:
    base = Settings(
        db_type="postgresql",
        db_host="db",
        db_port=5432,
        db_name="openstreetmap",
        db_user="osm",
        db_password="secret",
        db_sslmode="disable",
        slot_name="osmosis",
        output_plugin="osm-logical",
        iterations=1,
        min_interval_ms=0,
        max_interval_ms=60000,
        idle_sleep_seconds=1.0,
        status_interval_seconds=20,
        output_dir=Path("replication"),
        state_fsync=False,
    )
    return replace(base, **overrides)


class FakeCursor:
    def __init__(self, messages=(), wal_end=0, fail=None):
        self._messages = list(messages)
        self.wal_end = wal_end
        self._fail = fail or {}
        self.feedback: list[dict] = []
        self.started: dict = {}
        self.created: list[tuple] = []
        self.closed = False

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False

    def _maybe_fail(self, name):
        if name in self._fail:
            raise self._fail[name]

    def read_message(self):
        self._maybe_fail("read_message")
        if self._messages:
            return self._messages.pop(0)
        return None

    def send_feedback(self, **kwargs):
        self._maybe_fail("send_feedback")
        self.feedback.append(kwargs)

    def start_replication(self, **kwargs):
        self._maybe_fail("start_replication")
        self.started = kwargs

    def create_replication_slot(self, slot_name, output_plugin=None):
        self._maybe_fail("create_replication_slot")
        self.created.append((slot_name, output_plugin))

    def close(self):
        self.closed = True


class FakeConnection:
    def __init__(self, cursor: FakeCursor):
        self._cursor = cursor
        self.closed = False

    def cursor(self):
        return self._cursor

    def close(self):
        self.closed = True


def _message(data_start: int, payload: bytes):
    return SimpleNamespace(data_start=data_start, payload=payload)


@pytest.mark.unit
def test_read_pending_decodes_lines_and_tracks_position():
    cursor = FakeCursor([_message(0x120, b"BEGIN"), _message(0x130, b"NEW way 1 2")])
    stream = PgReplicationStream(FakeConnection(cursor), cursor, start_lsn=0x100)

    assert stream.read_pending() == "BEGIN"
    assert stream.last_received_position() == 0x120
    assert stream.read_pending() == "NEW way 1 2"
    assert stream.read_pending() is None
    assert stream.last_received_position() == 0x130


@pytest.mark.unit
def test_undecodable_payload_reaches_parser_as_unknown():
    cursor = FakeCursor([_message(0x140, b"NEW way \xff 1")])
    stream = PgReplicationStream(FakeConnection(cursor), cursor, start_lsn=0x100)

    line = stream.read_pending()

    assert line == "NEW way \ufffd 1"
    assert parse_notification(line).opcode is Opcode.UNKNOWN
    assert stream.last_received_position() == 0x140


@pytest.mark.unit
def test_server_wal_end_advances_last_received():
    cursor = FakeCursor(wal_end=0x500)
    stream = PgReplicationStream(FakeConnection(cursor), cursor, start_lsn=0x100)

    assert stream.read_pending() is None
    assert stream.last_received_position() == 0x500


@pytest.mark.unit
def test_last_received_defaults_to_start_position():
    cursor = FakeCursor()
    stream = PgReplicationStream(FakeConnection(cursor), cursor, start_lsn=0x100)

    assert stream.last_received_position() == 0x100


@pytest.mark.unit
def test_read_failure_is_wrapped():
    cursor = FakeCursor(fail={"read_message": psycopg2.OperationalError("gone")})
    stream = PgReplicationStream(FakeConnection(cursor), cursor, start_lsn=0)

    with pytest.raises(ReplicationError) as excinfo:
        stream.read_pending()
    assert isinstance(excinfo.value.__cause__, psycopg2.OperationalError)


@pytest.mark.unit
def test_acknowledge_and_forced_status_push():
    cursor = FakeCursor()
    stream = PgReplicationStream(FakeConnection(cursor), cursor, start_lsn=0)

    stream.acknowledge(0x200, 0x200)
    stream.force_status_push()

    assert cursor.feedback == [
        {"write_lsn": 0x200, "flush_lsn": 0x200, "apply_lsn": 0x200},
        {"force": True},
    ]


@pytest.mark.unit
def test_status_push_failure_is_wrapped():
    cursor = FakeCursor(fail={"send_feedback": psycopg2.OperationalError("gone")})
    stream = PgReplicationStream(FakeConnection(cursor), cursor, start_lsn=0)

    with pytest.raises(ReplicationError):
        stream.force_status_push()


@pytest.mark.unit
def test_close_is_idempotent_and_tolerates_errors():
    class BrokenConnection(FakeConnection):
        def close(self):
            raise psycopg2.InterfaceError("already closed")

    cursor = FakeCursor()
    stream = PgReplicationStream(BrokenConnection(cursor), cursor, start_lsn=0)

    stream.close()
    stream.close()

    assert stream.closed
    assert cursor.closed


@pytest.mark.unit
def test_context_opens_stream_at_position():
    cursor = FakeCursor()
    connection = FakeConnection(cursor)
    dsns = []

    def _connect(dsn):
        dsns.append(dsn)
        return connection

    context = ReplicationContext(_settings(), connect=_connect)
    stream = context.open_stream("osmosis", 0x1_0000_0010)

    assert "host=db" in dsns[0]
    assert cursor.started == {
        "slot_name": "osmosis",
        "start_lsn": 0x1_0000_0010,
        "decode": False,
        "status_interval": 20,
    }

    context.close()
    assert stream.closed
    assert connection.closed


@pytest.mark.unit
def test_context_creates_slot_and_releases_connection():
    cursor = FakeCursor()
    connection = FakeConnection(cursor)

    with ReplicationContext(_settings(), connect=lambda _dsn: connection) as context:
        context.create_logical_source("osmosis", "osm-logical")

    assert cursor.created == [("osmosis", "osm-logical")]
    assert connection.closed


@pytest.mark.unit
def test_slot_creation_failure_is_fatal():
    cursor = FakeCursor(
        fail={"create_replication_slot": psycopg2.ProgrammingError("exists")}
    )
    connection = FakeConnection(cursor)
    context = ReplicationContext(_settings(), connect=lambda _dsn: connection)

    with pytest.raises(ReplicationError, match="osmosis"):
        context.create_logical_source("osmosis", "osm-logical")
    assert connection.closed


@pytest.mark.unit
def test_stream_start_failure_closes_connection():
    cursor = FakeCursor(fail={"start_replication": psycopg2.OperationalError("no slot")})
    connection = FakeConnection(cursor)
    context = ReplicationContext(_settings(), connect=lambda _dsn: connection)

    with pytest.raises(ReplicationError, match="0/10"):
        context.open_stream("osmosis", 0x10)
    assert connection.closed


@pytest.mark.unit
def test_connection_failure_is_fatal():
    def _connect(_dsn):
        raise psycopg2.OperationalError("refused")

    context = ReplicationContext(_settings(), connect=_connect)

    with pytest.raises(ReplicationError):
        context.open_stream("osmosis", 0)


@pytest.mark.unit
@pytest.mark.parametrize("db_type", ["mysql", "oracle", ""])
def test_unsupported_backends_fail_at_construction(db_type):
    with pytest.raises(UnsupportedBackendError):
        ReplicationContext(_settings(db_type=db_type), connect=lambda _dsn: None)
