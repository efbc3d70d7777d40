"""Command line interface for the LSN replicator."""

from __future__ import annotations

import argparse
import dataclasses
import logging
import signal
from pathlib import Path
from typing import Optional

from .config import Settings, load_settings
from .db import connect_from_settings
from .replication import (
    LsnReplicator,
    PostgresHistorySource,
    PostgresTimeLoader,
    ReplicationContext,
    ReplicationError,
)
from .sinks import JsonlChangeSink

logger = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Replicate API database changes into change files using LSNs"
    )
    parser.add_argument(
        "--iterations",
        type=int,
        default=None,
        help="Number of replication intervals to run, 0 runs until stopped",
    )
    parser.add_argument(
        "--min-interval",
        type=int,
        default=None,
        help="Minimum milliseconds between intervals (currently unused)",
    )
    parser.add_argument(
        "--max-interval",
        type=int,
        default=None,
        help="Milliseconds an interval may stay idle before it is finished",
    )
    parser.add_argument("--slot-name", default=None, help="Replication slot name")
    parser.add_argument(
        "--output-dir", default=None, help="Directory receiving change files"
    )
    parser.add_argument("--log-level", default=None, help="Logging level")
    return parser


def _apply_overrides(settings: Settings, args: argparse.Namespace) -> Settings:
    overrides = {}
    if args.iterations is not None:
        overrides["iterations"] = args.iterations
    if args.min_interval is not None:
        overrides["min_interval_ms"] = args.min_interval
    if args.max_interval is not None:
        overrides["max_interval_ms"] = args.max_interval
    if args.slot_name:
        overrides["slot_name"] = args.slot_name
    if args.output_dir:
        overrides["output_dir"] = Path(args.output_dir)
    if args.log_level:
        overrides["log_level"] = args.log_level.upper()
    for name in ("iterations", "min_interval_ms", "max_interval_ms"):
        if overrides.get(name, 0) < 0:
            raise ValueError(f"{name.replace('_', '-')} must not be negative")
    return dataclasses.replace(settings, **overrides)


def build_replicator(
    settings: Settings, context: ReplicationContext
) -> tuple[LsnReplicator, PostgresHistorySource, PostgresTimeLoader]:
    """Wire the replicator and its database collaborators from settings."""
    history = PostgresHistorySource(
        host=settings.db_host,
        port=settings.db_port,
        user=settings.db_user,
        password=settings.db_password,
        database=settings.db_name,
        sslmode=settings.db_sslmode,
    )
    time_loader = PostgresTimeLoader(lambda: connect_from_settings(settings))
    replicator = LsnReplicator(
        slot_name=settings.slot_name,
        stream_provider=context,
        history_source=history,
        change_sink=JsonlChangeSink(settings.output_dir, fsync=settings.state_fsync),
        time_loader=time_loader,
        iterations=settings.iterations,
        min_interval_ms=settings.min_interval_ms,
        max_interval_ms=settings.max_interval_ms,
        output_plugin=settings.output_plugin,
        idle_sleep_seconds=settings.idle_sleep_seconds,
    )
    return replicator, history, time_loader


def _install_signal_handlers(replicator: LsnReplicator) -> None:
    def _request_stop(signum, _frame) -> None:
        logger.info("Received signal %s, stopping after the current interval", signum)
        replicator.stop()

    signal.signal(signal.SIGINT, _request_stop)
    signal.signal(signal.SIGTERM, _request_stop)


def run(settings: Settings) -> int:
    with ReplicationContext(settings) as context:
        replicator, history, time_loader = build_replicator(settings, context)
        _install_signal_handlers(replicator)
        try:
            completed = replicator.replicate()
        finally:
            history.close()
            time_loader.close()
    logger.info("Finished %d replication interval(s)", completed)
    return completed


def main(argv: Optional[list[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    try:
        settings = _apply_overrides(load_settings(), args)
    except ValueError as exc:
        parser.error(str(exc))

    if not logging.getLogger().handlers:
        logging.basicConfig(
            level=getattr(logging, settings.log_level, logging.INFO),
            format="%(asctime)s %(levelname)s %(name)s - %(message)s",
        )

    try:
        run(settings)
    except ReplicationError:
        logger.exception("Replication failed")
        return 1
    return 0


__all__ = ["build_replicator", "main", "run"]
