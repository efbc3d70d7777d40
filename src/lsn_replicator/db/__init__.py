"""Database utilities and psycopg2 helpers for API database access."""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Any, Iterator, Optional, Tuple

import psycopg2
from psycopg2 import Error, OperationalError
from psycopg2.extras import (
    LogicalReplicationConnection as _LogicalReplicationConnection,
)
from psycopg2.extras import RealDictCursor

if TYPE_CHECKING:  # pragma: no cover - import-time helper only
    from lsn_replicator.config import Settings


class DatabaseType(str, Enum):
    """Database backends the replicator knows about."""

    POSTGRESQL = "postgresql"
    MYSQL = "mysql"

    @classmethod
    def parse(cls, value: str) -> "DatabaseType":
        normalized = (value or "").strip().lower()
        for member in cls:
            if member.value == normalized:
                return member
        raise ValueError(f"Unknown database type {value!r}.")


class _ExecuteResult:
    def __init__(self, cursor):
        self._cursor = cursor
        self._rows: Optional[list] = None
        self._index = 0
        self._load_rows()

    def fetchone(self):
        rows = self._load_rows()
        if self._index >= len(rows):
            return None
        row = rows[self._index]
        self._index += 1
        return row

    def fetchall(self):
        rows = self._load_rows()
        remaining = rows[self._index :]
        self._index = len(rows)
        return remaining

    def __iter__(self) -> Iterator:
        rows = self._load_rows()
        start = self._index
        self._index = len(rows)
        return iter(rows[start:])

    def _load_rows(self) -> list:
        if self._rows is None:
            if self._cursor.description is not None:
                self._rows = list(self._cursor.fetchall())
            else:
                self._rows = []
            self._cursor.close()
        return self._rows


class Connection(psycopg2.extensions.connection):
    """psycopg2 connection returning dictionary rows from `execute`."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.autocommit = True

    def execute(
        self, query: str, params: Optional[Tuple[Any, ...]] = None
    ) -> _ExecuteResult:
        cursor = self.cursor(cursor_factory=RealDictCursor)
        cursor.execute(query, params)
        return _ExecuteResult(cursor)


class LogicalReplicationConnection(_LogicalReplicationConnection):
    """Logical replication connection with helper constructor."""

    @classmethod
    def connect(cls, dsn: str):
        return psycopg2.connect(dsn, connection_factory=cls)


def connect(*args, **kwargs) -> Connection:
    """Create a Connection instance using psycopg2."""

    kwargs.setdefault("connection_factory", Connection)
    return psycopg2.connect(*args, **kwargs)


def connect_from_settings(settings: "Settings") -> Connection:
    """Create a psycopg2 connection using the provided replicator settings."""

    return connect(
        host=settings.db_host,
        port=settings.db_port,
        dbname=settings.db_name,
        user=settings.db_user,
        password=settings.db_password,
        sslmode=settings.db_sslmode,
    )


__all__ = [
    "Connection",
    "DatabaseType",
    "Error",
    "LogicalReplicationConnection",
    "OperationalError",
    "connect",
    "connect_from_settings",
]
