"""Change sink writing one JSON lines change file per replication interval.

Layout of the output directory::

    state.txt                   latest committed replication state
    000000001.jsonl             change file of sequence 1
    000000001.state.txt         replication state as of sequence 1

A change file only appears once ``complete`` has been called; an interval that
fails leaves the previous state untouched.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import IO, Any, Mapping, Optional

from ..replication.errors import ReplicationError
from ..replication.state import STATE_METADATA_KEY, ReplicationState
from .state_file import StateFileStore, fsync_directory

logger = logging.getLogger(__name__)

STATE_FILE_NAME = "state.txt"


class JsonlChangeSink:
    def __init__(self, output_dir: Path | str, *, fsync: bool = False) -> None:
        self._output_dir = Path(output_dir)
        self._fsync = fsync
        self._state_store = StateFileStore(self._output_dir / STATE_FILE_NAME, fsync=fsync)
        self._state: Optional[ReplicationState] = None
        self._handle: Optional[IO[str]] = None
        self._temp_path: Optional[Path] = None
        self._written = 0

    @property
    def state(self) -> Optional[ReplicationState]:
        return self._state

    def initialize(self, metadata: Mapping[str, Any]) -> None:
        state = metadata.get(STATE_METADATA_KEY)
        if not isinstance(state, ReplicationState):
            raise ReplicationError("No replication state supplied to the change sink.")
        self._output_dir.mkdir(parents=True, exist_ok=True)
        try:
            properties = self._state_store.load()
            if properties is not None:
                state.load(properties)
        except (OSError, ValueError) as exc:
            raise ReplicationError(
                f"Unable to read replication state from {self._state_store.path}."
            ) from exc
        self._state = state
        self._discard_temp()
        fd, temp_name = tempfile.mkstemp(
            prefix=".changes.", suffix=".jsonl.tmp", dir=str(self._output_dir)
        )
        self._temp_path = Path(temp_name)
        self._handle = os.fdopen(fd, "w", encoding="utf-8")
        self._written = 0

    def process(self, event: Any) -> None:
        if self._handle is None:
            raise ReplicationError("process called before initialize.")
        record = event.to_dict() if hasattr(event, "to_dict") else dict(event)
        self._handle.write(json.dumps(record, ensure_ascii=False, sort_keys=True) + "\n")
        self._written += 1

    def complete(self) -> None:
        if self._handle is None or self._state is None or self._temp_path is None:
            raise ReplicationError("complete called before initialize.")
        state = self._state
        sequence_number = state.sequence_number + 1
        name = f"{sequence_number:09d}"
        change_path = self._output_dir / f"{name}.jsonl"
        try:
            self._handle.flush()
            if self._fsync:
                os.fsync(self._handle.fileno())
            self._handle.close()
            self._handle = None

            os.replace(self._temp_path, change_path)
            self._temp_path = None
            if self._fsync:
                fsync_directory(self._output_dir)

            state.sequence_number = sequence_number
            properties = state.to_properties()
            StateFileStore(
                self._output_dir / f"{name}.state.txt", fsync=self._fsync
            ).save(properties)
            self._state_store.save(properties)
        except OSError as exc:
            raise ReplicationError(
                f"Unable to write change file sequence {sequence_number} "
                f"to {self._output_dir}."
            ) from exc
        logger.info(
            "Wrote %d changes to %s (sequence %d)",
            self._written,
            change_path,
            state.sequence_number,
        )

    def close(self) -> None:
        self._discard_temp()
        self._state = None

    def _discard_temp(self) -> None:
        if self._handle is not None:
            try:
                self._handle.close()
            except OSError:
                logger.warning("Unable to close change file.", exc_info=True)
            self._handle = None
        if self._temp_path is not None:
            try:
                self._temp_path.unlink()
            except OSError:
                logger.warning(
                    "Unable to remove temporary change file %s.",
                    self._temp_path,
                    exc_info=True,
                )
            self._temp_path = None


__all__ = ["JsonlChangeSink", "STATE_FILE_NAME"]
