"""Entity history lookups against the API database."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional

from ..db import Connection, Error, connect
from .errors import ReplicationError
from .state import format_timestamp

logger = logging.getLogger(__name__)

ACTION_CREATE = "create"
ACTION_MODIFY = "modify"
ACTION_DELETE = "delete"


@dataclass(frozen=True)
class ChangeEvent:
    """A single entity version and the kind of change it represents."""

    action: str
    element: str
    entity_id: int
    version: int
    timestamp: datetime
    changeset_id: int
    visible: bool
    user_id: Optional[int] = None
    user_name: Optional[str] = None
    tags: Dict[str, str] = field(default_factory=dict)
    payload: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action,
            "type": self.element,
            "id": self.entity_id,
            "version": self.version,
            "timestamp": format_timestamp(self.timestamp),
            "changeset": self.changeset_id,
            "visible": self.visible,
            "uid": self.user_id,
            "user": self.user_name,
            "tags": dict(self.tags),
            **self.payload,
        }


def change_action(version: int, visible: bool) -> str:
    if not visible:
        return ACTION_DELETE
    if version == 1:
        return ACTION_CREATE
    return ACTION_MODIFY


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


_ENTITY_TABLES = {
    "node": ("nodes", "node_id", "node_tags"),
    "way": ("ways", "way_id", "way_tags"),
    "relation": ("relations", "relation_id", "relation_tags"),
}

_COORDINATE_SCALE = 10_000_000


class PostgresHistorySource:
    """History source backed by the API database history tables."""

    def __init__(
        self,
        *,
        host: str,
        port: int,
        user: str,
        password: str,
        database: str,
        sslmode: str = "prefer",
        connect_timeout: float = 5.0,
    ) -> None:
        self._conn_kwargs = {
            "host": host,
            "port": port,
            "user": user,
            "password": password,
            "dbname": database,
            "sslmode": sslmode,
            "connect_timeout": int(connect_timeout),
        }
        self._conn: Optional[Connection] = None

    def _ensure_conn(self) -> Connection:
        if self._conn is not None and not self._conn.closed:
            return self._conn
        try:
            conn = connect(**self._conn_kwargs)
        except Error as exc:
            raise ReplicationError("Unable to connect to the API database.") from exc
        self._conn = conn
        return conn

    def close(self) -> None:
        if self._conn is not None and not self._conn.closed:
            try:
                self._conn.close()
            except Error:
                logger.warning("Unable to close database connection.", exc_info=True)
        self._conn = None

    def get_history(
        self, element_kind: str, entity_id: int, version: int
    ) -> Iterator[ChangeEvent]:
        """Return a closable, oldest-first iterator of change events."""
        return self._iter_history(element_kind, entity_id, version)

    def _iter_history(
        self, element_kind: str, entity_id: int, version: int
    ) -> Iterator[ChangeEvent]:
        tables = _ENTITY_TABLES.get(element_kind)
        if tables is None:
            logger.warning(
                "history requested for unknown element kind %s (id=%s)",
                element_kind,
                entity_id,
            )
            return
        try:
            rows = self._fetch_entity_rows(tables, entity_id, version)
            for row in rows:
                yield self._build_event(element_kind, tables, row)
        except Error as exc:
            raise ReplicationError(
                f"Unable to load history for {element_kind} {entity_id} "
                f"version {version}."
            ) from exc

    def _fetch_entity_rows(self, tables, entity_id: int, version: int) -> List[dict]:
        table, id_column, _ = tables
        conn = self._ensure_conn()
        return conn.execute(
            f"""
            SELECT e.{id_column} AS entity_id, e.version, e.changeset_id,
                   e.visible, e.timestamp, {self._extra_columns(table)}
                   c.user_id, u.display_name, u.data_public
              FROM {table} e
              JOIN changesets c ON c.id = e.changeset_id
              JOIN users u ON u.id = c.user_id
             WHERE e.{id_column} = %s AND e.version = %s
             ORDER BY e.version
            """,
            (entity_id, version),
        ).fetchall()

    @staticmethod
    def _extra_columns(table: str) -> str:
        if table == "nodes":
            return "e.latitude, e.longitude,"
        return ""

    def _build_event(self, element_kind: str, tables, row: Dict[str, Any]) -> ChangeEvent:
        entity_id = row["entity_id"]
        version = row["version"]
        public = bool(row.get("data_public"))
        return ChangeEvent(
            action=change_action(version, bool(row["visible"])),
            element=element_kind,
            entity_id=entity_id,
            version=version,
            timestamp=_as_utc(row["timestamp"]),
            changeset_id=row["changeset_id"],
            visible=bool(row["visible"]),
            user_id=row["user_id"] if public else None,
            user_name=row["display_name"] if public else None,
            tags=self._load_tags(tables, entity_id, version),
            payload=self._load_payload(element_kind, row),
        )

    def _load_tags(self, tables, entity_id: int, version: int) -> Dict[str, str]:
        _, id_column, tag_table = tables
        rows = self._ensure_conn().execute(
            f"""
            SELECT k, v
              FROM {tag_table}
             WHERE {id_column} = %s AND version = %s
             ORDER BY k
            """,
            (entity_id, version),
        ).fetchall()
        return {row["k"]: row["v"] for row in rows}

    def _load_payload(self, element_kind: str, row: Dict[str, Any]) -> Dict[str, Any]:
        entity_id = row["entity_id"]
        version = row["version"]
        if element_kind == "node":
            if not row["visible"]:
                return {}
            return {
                "lat": row["latitude"] / _COORDINATE_SCALE,
                "lon": row["longitude"] / _COORDINATE_SCALE,
            }
        conn = self._ensure_conn()
        if element_kind == "way":
            rows = conn.execute(
                """
                SELECT node_id
                  FROM way_nodes
                 WHERE way_id = %s AND version = %s
                 ORDER BY sequence_id
                """,
                (entity_id, version),
            ).fetchall()
            return {"nodes": [r["node_id"] for r in rows]}
        rows = conn.execute(
            """
            SELECT member_type, member_id, member_role
              FROM relation_members
             WHERE relation_id = %s AND version = %s
             ORDER BY sequence_id
            """,
            (entity_id, version),
        ).fetchall()
        return {
            "members": [
                {
                    "type": str(r["member_type"]).lower(),
                    "ref": r["member_id"],
                    "role": r["member_role"],
                }
                for r in rows
            ]
        }


class PostgresTimeLoader:
    """Reads the current time from the database server."""

    def __init__(self, connection_factory) -> None:
        self._connection_factory = connection_factory
        self._conn: Optional[Connection] = None

    def get_system_time(self) -> datetime:
        if self._conn is None or self._conn.closed:
            try:
                self._conn = self._connection_factory()
            except Error as exc:
                raise ReplicationError("Unable to connect to the API database.") from exc
        try:
            row = self._conn.execute("SELECT now() AS system_time").fetchone()
        except Error as exc:
            raise ReplicationError("Unable to load the database system time.") from exc
        return _as_utc(row["system_time"])

    def close(self) -> None:
        if self._conn is not None and not self._conn.closed:
            try:
                self._conn.close()
            except Error:
                logger.warning("Unable to close database connection.", exc_info=True)
        self._conn = None


__all__ = [
    "ACTION_CREATE",
    "ACTION_DELETE",
    "ACTION_MODIFY",
    "ChangeEvent",
    "PostgresHistorySource",
    "PostgresTimeLoader",
    "change_action",
]
