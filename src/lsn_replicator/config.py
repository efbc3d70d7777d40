"""Runtime configuration helpers for the LSN replicator."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from psycopg2.extensions import make_dsn


@dataclass(frozen=True)
class Settings:
    """Immutable container for replicator configuration."""

    db_type: str
    db_host: str
    db_port: int
    db_name: str
    db_user: str
    db_password: str
    db_sslmode: str
    slot_name: str
    output_plugin: str
    iterations: int
    min_interval_ms: int
    max_interval_ms: int
    idle_sleep_seconds: float
    status_interval_seconds: int
    output_dir: Path
    state_fsync: bool
    log_level: str = "INFO"

    def dsn(self) -> str:
        return make_dsn(
            host=self.db_host,
            port=self.db_port,
            dbname=self.db_name,
            user=self.db_user,
            password=self.db_password,
            sslmode=self.db_sslmode,
        )


def _as_bool(value: Optional[str], default: bool) -> bool:
    """Convert environment strings to booleans."""
    if value is None:
        return default
    return value.strip().lower() not in {"0", "false", "no"}


def _non_negative_int(value: Optional[str], default: int, name: str) -> int:
    if value is None or not value.strip():
        return default
    parsed = int(value)
    if parsed < 0:
        raise ValueError(f"{name} must not be negative")
    return parsed


def load_settings() -> Settings:
    """Load configuration from the environment (and `.env`)."""
    load_dotenv()
    db_type = os.getenv("DB_TYPE", "postgresql").strip().lower()
    db_host = os.getenv("PGHOST", "localhost")
    db_port = int(os.getenv("PGPORT", "5432"))
    db_name = os.getenv("PGDATABASE", "openstreetmap")
    db_user = os.getenv("PGUSER", "postgres")
    db_password = os.getenv("PGPASSWORD", "")
    db_sslmode = os.getenv("PGSSLMODE", "prefer")

    slot_name = os.getenv("REPLICATION_SLOT", "osmosis").strip() or "osmosis"
    output_plugin = os.getenv("REPLICATION_PLUGIN", "osm-logical").strip()
    iterations = _non_negative_int(
        os.getenv("REPLICATION_ITERATIONS"), 1, "REPLICATION_ITERATIONS"
    )
    min_interval_ms = _non_negative_int(
        os.getenv("REPLICATION_MIN_INTERVAL_MS"), 0, "REPLICATION_MIN_INTERVAL_MS"
    )
    max_interval_ms = _non_negative_int(
        os.getenv("REPLICATION_MAX_INTERVAL_MS"), 0, "REPLICATION_MAX_INTERVAL_MS"
    )
    idle_sleep_seconds = float(os.getenv("REPLICATION_IDLE_SLEEP_SECONDS", "1.0"))
    status_interval_seconds = int(
        os.getenv("REPLICATION_STATUS_INTERVAL_SECONDS", "20")
    )
    output_dir = Path(os.getenv("CHANGE_OUTPUT_DIR", "replication"))
    state_fsync = _as_bool(os.getenv("STATE_FSYNC"), False)
    log_level = os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO"

    return Settings(
        db_type=db_type,
        db_host=db_host,
        db_port=db_port,
        db_name=db_name,
        db_user=db_user,
        db_password=db_password,
        db_sslmode=db_sslmode,
        slot_name=slot_name,
        output_plugin=output_plugin or "osm-logical",
        iterations=iterations,
        min_interval_ms=min_interval_ms,
        max_interval_ms=max_interval_ms,
        idle_sleep_seconds=idle_sleep_seconds,
        status_interval_seconds=status_interval_seconds,
        output_dir=output_dir,
        state_fsync=state_fsync,
        log_level=log_level,
    )
