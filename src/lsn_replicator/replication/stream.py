"""psycopg2 logical replication connection management.

All psycopg2 errors are translated into :class:`ReplicationError` here so the
replicator never needs to know about the driver.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from ..config import Settings
from ..db import DatabaseType, Error, LogicalReplicationConnection
from .errors import ReplicationError, UnsupportedBackendError
from .lsn import int_to_lsn

logger = logging.getLogger(__name__)


class PgReplicationStream:
    """Non-blocking view over a started psycopg2 replication cursor."""

    def __init__(self, connection, cursor, start_lsn: int, encoding: str = "utf-8"):
        self._connection = connection
        self._cursor = cursor
        self._encoding = encoding
        self._last_received = start_lsn
        self._closed = False

    def read_pending(self) -> Optional[str]:
        try:
            message = self._cursor.read_message()
        except Error as exc:
            raise ReplicationError(
                "Unable to receive new logical replication data."
            ) from exc
        self._track_server_position()
        if message is None:
            return None
        if message.data_start > self._last_received:
            self._last_received = message.data_start
        payload = message.payload
        if isinstance(payload, (bytes, bytearray, memoryview)):
            return bytes(payload).decode(self._encoding, errors="replace")
        return str(payload)

    def _track_server_position(self) -> None:
        wal_end = getattr(self._cursor, "wal_end", None)
        if wal_end and wal_end > self._last_received:
            self._last_received = wal_end

    def last_received_position(self) -> int:
        return self._last_received

    def acknowledge(self, applied: int, flushed: int) -> None:
        try:
            self._cursor.send_feedback(
                write_lsn=flushed, flush_lsn=flushed, apply_lsn=applied
            )
        except Error as exc:
            raise ReplicationError(
                f"Failed to acknowledge logical replication position {int_to_lsn(applied)}."
            ) from exc

    def force_status_push(self) -> None:
        try:
            self._cursor.send_feedback(force=True)
        except Error as exc:
            raise ReplicationError(
                "Failed to update logical replication status."
            ) from exc

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._cursor.close()
        except Error:
            logger.warning("Unable to close replication cursor.", exc_info=True)
        try:
            self._connection.close()
        except Error:
            logger.warning("Unable to close replication connection.", exc_info=True)


class ReplicationContext:
    """Owns the replication connections used by one replicator run.

    Always close the context (or use it as a context manager) once the run is
    over; every stream it opened is closed with it.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        connect=LogicalReplicationConnection.connect,
    ) -> None:
        try:
            db_type = DatabaseType.parse(settings.db_type)
        except ValueError as exc:
            raise UnsupportedBackendError(str(exc)) from exc
        if db_type is not DatabaseType.POSTGRESQL:
            raise UnsupportedBackendError(
                f"Replication not supported for database type {db_type.value}."
            )
        self._dsn = settings.dsn()
        self._connect = connect
        self._status_interval = settings.status_interval_seconds
        self._streams: List[PgReplicationStream] = []

    def __enter__(self) -> "ReplicationContext":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.close()
        return False

    def _open_connection(self):
        logger.debug("Creating a new database replication connection.")
        try:
            return self._connect(self._dsn)
        except Error as exc:
            raise ReplicationError(
                "Unable to establish a database replication connection."
            ) from exc

    def create_logical_source(self, slot_name: str, output_plugin: str) -> None:
        conn = self._open_connection()
        try:
            with conn.cursor() as cur:
                cur.create_replication_slot(slot_name, output_plugin=output_plugin)
        except Error as exc:
            raise ReplicationError(
                f"Unable to create new replication slot {slot_name} "
                f"with plugin {output_plugin}."
            ) from exc
        finally:
            _close_quietly(conn)
        logger.info("Created replication slot %s.", slot_name)

    def open_stream(self, slot_name: str, start_lsn: int) -> PgReplicationStream:
        conn = self._open_connection()
        try:
            cur = conn.cursor()
            cur.start_replication(
                slot_name=slot_name,
                start_lsn=start_lsn,
                decode=False,
                status_interval=self._status_interval,
            )
        except Error as exc:
            _close_quietly(conn)
            raise ReplicationError(
                f"Unable to create new replication stream for {slot_name} "
                f"from LSN {int_to_lsn(start_lsn)}."
            ) from exc
        stream = PgReplicationStream(conn, cur, start_lsn)
        self._streams = [s for s in self._streams if not s.closed]
        self._streams.append(stream)
        return stream

    def close(self) -> None:
        for stream in self._streams:
            stream.close()
        self._streams = []


def _close_quietly(conn) -> None:
    try:
        conn.close()
    except Error:
        logger.warning("Unable to close database connection.", exc_info=True)


__all__ = ["PgReplicationStream", "ReplicationContext"]
