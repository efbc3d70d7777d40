"""Replicates changes from the database utilising logical sequence numbers."""

from __future__ import annotations

import logging
import time
from contextlib import closing
from datetime import datetime
from threading import Event
from typing import Any, Callable, Dict, Iterator, Mapping, Optional, Protocol

from .interval import IntervalController
from .lsn import int_to_lsn
from .notifications import Notification, Opcode, TransactionTracker, parse_notification
from .state import STATE_METADATA_KEY, ReplicationState

logger = logging.getLogger(__name__)


class ChangeEventLike(Protocol):
    timestamp: datetime


class ClosableEvents(Protocol):
    def __iter__(self) -> Iterator[ChangeEventLike]: ...

    def close(self) -> None: ...


class HistorySource(Protocol):
    """Materializes a committed entity version into change events, oldest first."""

    def get_history(
        self, element_kind: str, entity_id: int, version: int
    ) -> ClosableEvents: ...


class ChangeSink(Protocol):
    def initialize(self, metadata: Mapping[str, Any]) -> None: ...

    def process(self, event: ChangeEventLike) -> None: ...

    def complete(self) -> None: ...

    def close(self) -> None: ...


class ReplicationStream(Protocol):
    def read_pending(self) -> Optional[str]: ...

    def last_received_position(self) -> int: ...

    def acknowledge(self, applied: int, flushed: int) -> None: ...

    def force_status_push(self) -> None: ...

    def close(self) -> None: ...


class StreamProvider(Protocol):
    """Provisions slots and opens streams against the replication connection."""

    def create_logical_source(self, slot_name: str, output_plugin: str) -> None: ...

    def open_stream(self, slot_name: str, start_lsn: int) -> ReplicationStream: ...


class SystemTimeLoader(Protocol):
    def get_system_time(self) -> datetime: ...


class LsnReplicator:
    """Runs replication intervals, each producing one committed change set.

    Args:
        iterations: Number of intervals to run, 0 means run until stopped.
        min_interval_ms: Accepted for configuration compatibility, not used.
        max_interval_ms: How long an interval may stay idle, measured on the
            database clock, before it is finished.
    """

    def __init__(
        self,
        *,
        slot_name: str,
        stream_provider: StreamProvider,
        history_source: HistorySource,
        change_sink: ChangeSink,
        time_loader: SystemTimeLoader,
        iterations: int = 1,
        min_interval_ms: int = 0,
        max_interval_ms: int = 0,
        output_plugin: str = "osm-logical",
        idle_sleep_seconds: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if iterations < 0:
            raise ValueError("iterations must not be negative")
        self._slot_name = slot_name
        self._stream_provider = stream_provider
        self._history_source = history_source
        self._sink = change_sink
        self._time_loader = time_loader
        self._iterations = iterations
        self._output_plugin = output_plugin
        self._idle_sleep = idle_sleep_seconds
        self._sleep = sleep
        self._controller = IntervalController(
            max_interval_ms=max_interval_ms, min_interval_ms=min_interval_ms
        )
        self._stop_event = Event()
        self._last_state: Optional[ReplicationState] = None

    @property
    def last_state(self) -> Optional[ReplicationState]:
        """Checkpoint of the most recently finished interval."""
        return self._last_state

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    def stop(self) -> None:
        """Request a graceful stop once the current interval is finished."""
        self._stop_event.set()

    def replicate(self) -> int:
        """Run the replication loop and return the number of finished intervals."""
        try:
            return self._replicate_loop()
        finally:
            try:
                self._sink.close()
            except Exception:  # noqa: BLE001 - closing must not mask the outcome
                logger.warning("Unable to close change sink.", exc_info=True)

    def _replicate_loop(self) -> int:
        completed = 0
        while True:
            self._replicate_interval()
            completed += 1

            if self._iterations > 0 and completed >= self._iterations:
                logger.debug("Exiting replication loop.")
                break
            if self._stop_event.is_set():
                logger.info("Stop requested, exiting replication loop.")
                break
        return completed

    def _replicate_interval(self) -> None:
        state = ReplicationState()

        # A single state instance is shared by both ends of the pipeline; the
        # sink hydrates it from its previous run.
        metadata: Dict[str, Any] = {STATE_METADATA_KEY: state}
        self._sink.initialize(metadata)

        if state.never_replicated:
            logger.info(
                "Creating replication slot %s with plugin %s.",
                self._slot_name,
                self._output_plugin,
            )
            self._stream_provider.create_logical_source(
                self._slot_name, self._output_plugin
            )
        state.assign_slot(self._slot_name)

        logger.debug("Begin streaming logical changes from the database.")
        stream = self._stream_provider.open_stream(
            self._slot_name, state.lsn_max_queried
        )
        try:
            self._stream_interval(stream, state)
        finally:
            try:
                stream.close()
            except Exception:  # noqa: BLE001 - teardown failures are logged only
                logger.warning("Unable to close replication stream.", exc_info=True)

    def _stream_interval(self, stream: ReplicationStream, state: ReplicationState) -> None:
        tracker = TransactionTracker()
        started_at = self._time_loader.get_system_time()
        logger.debug("Loaded system time %s from the database.", started_at)
        logger.info(
            "Entering loop with maxInterval = %d", self._controller.max_interval_ms
        )

        while True:
            line = stream.read_pending()
            if line is not None:
                notification = parse_notification(line)
                tracker.apply(notification)
                self._handle_notification(notification, state)
                continue

            if self._stop_event.is_set():
                if not tracker.in_transaction:
                    logger.info("Stop requested, finishing interval.")
                    break
                # Keep draining until the open transaction commits.
                self._sleep(self._idle_sleep)
                continue

            if not tracker.in_transaction:
                now = self._time_loader.get_system_time()
                if self._controller.should_end_interval(
                    tracker.in_transaction, started_at, now
                ):
                    break

            if self._stop_event.wait(self._idle_sleep):
                logger.debug("Idle wait interrupted by stop request.")

        # Use a fresh database time: the start time could mark the change set
        # as older than the data it contains.
        system_time = self._time_loader.get_system_time()
        logger.debug("Loaded system time %s from the database.", system_time)

        state.finish_interval(stream.last_received_position(), system_time)

        self._sink.complete()

        stream.acknowledge(state.lsn_max_queried, state.lsn_max_queried)
        # Status messages are only sent periodically, force one before finishing.
        stream.force_status_push()

        self._last_state = state
        logger.info(
            "Replication sequence complete: %s...%s",
            int_to_lsn(state.lsn_max),
            int_to_lsn(state.lsn_max_queried),
        )

    def _handle_notification(
        self, notification: Notification, state: ReplicationState
    ) -> None:
        if notification.opcode is not Opcode.NEW:
            # UPDATE notifications carry nothing to write yet.
            return
        logger.info(
            "NEW %s %s %s",
            notification.element_kind,
            notification.entity_id,
            notification.version,
        )
        events = self._history_source.get_history(
            notification.element_kind, notification.entity_id, notification.version
        )
        self._copy_changes(events, state)

    def _copy_changes(self, events: ClosableEvents, state: ReplicationState) -> None:
        with closing(events):
            for event in events:
                state.advance_timestamp(event.timestamp)
                self._sink.process(event)


__all__ = [
    "ChangeSink",
    "HistorySource",
    "LsnReplicator",
    "ReplicationStream",
    "StreamProvider",
    "SystemTimeLoader",
]
