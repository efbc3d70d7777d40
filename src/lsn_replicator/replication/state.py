"""Replication checkpoint shared between the replicator and the change sink.

A single :class:`ReplicationState` instance is created for every interval and
handed to the sink under :data:`STATE_METADATA_KEY`.  The sink hydrates it from
durable storage during ``initialize`` and persists it again from ``complete``;
the replicator only mutates it in memory.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Mapping, Optional

from .errors import ReplicationError
from .lsn import INVALID_LSN, int_to_lsn, lsn_to_int

STATE_METADATA_KEY = "replication.state"

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

PROPERTY_KEYS = ("slotName", "lsnMax", "lsnMaxQueried", "timestamp", "sequenceNumber")


def format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: str) -> datetime:
    parsed = datetime.strptime(value.strip(), TIMESTAMP_FORMAT)
    return parsed.replace(tzinfo=timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class ReplicationState:
    """Contains the state to be remembered between replication invocations.

    ``lsn_max`` is the position confirmed complete by the previous finished
    interval; ``lsn_max_queried`` is how far the stream had been read at that
    point and is where the next interval resumes.
    """

    slot_name: Optional[str] = None
    lsn_max: int = INVALID_LSN
    lsn_max_queried: int = INVALID_LSN
    timestamp: datetime = field(default_factory=lambda: EPOCH)
    sequence_number: int = 0

    @classmethod
    def from_properties(cls, properties: Mapping[str, str]) -> "ReplicationState":
        state = cls()
        state.load(properties)
        return state

    def load(self, properties: Mapping[str, str]) -> None:
        """Replace all fields with values read from a property mapping."""
        missing = [key for key in PROPERTY_KEYS if key not in properties]
        if missing:
            raise ValueError(f"replication state is missing {', '.join(missing)}")
        lsn_max = lsn_to_int(properties["lsnMax"])
        lsn_max_queried = lsn_to_int(properties["lsnMaxQueried"])
        if lsn_max > lsn_max_queried:
            raise ValueError(
                f"lsnMax {properties['lsnMax']} is ahead of "
                f"lsnMaxQueried {properties['lsnMaxQueried']}"
            )
        sequence_number = int(properties["sequenceNumber"])
        if sequence_number < 0:
            raise ValueError("sequenceNumber must not be negative")
        self.timestamp = parse_timestamp(properties["timestamp"])
        self.sequence_number = sequence_number
        self.lsn_max = lsn_max
        self.lsn_max_queried = lsn_max_queried
        self.slot_name = properties["slotName"].strip() or None

    def to_properties(self) -> Dict[str, str]:
        return {
            "slotName": self.slot_name or "",
            "lsnMax": int_to_lsn(self.lsn_max),
            "lsnMaxQueried": int_to_lsn(self.lsn_max_queried),
            "timestamp": format_timestamp(self.timestamp),
            "sequenceNumber": str(self.sequence_number),
        }

    @property
    def never_replicated(self) -> bool:
        return self.lsn_max_queried == INVALID_LSN and self.slot_name is None

    def assign_slot(self, slot_name: str) -> None:
        if self.slot_name is not None and self.slot_name != slot_name:
            raise ReplicationError(
                f"Replication state belongs to slot {self.slot_name}, "
                f"refusing to reuse it for slot {slot_name}."
            )
        self.slot_name = slot_name

    def advance_timestamp(self, value: datetime) -> None:
        value = _as_utc(value)
        if _as_utc(self.timestamp) < value:
            self.timestamp = value

    def finish_interval(self, last_received: int, system_time: datetime) -> None:
        """Rotate the LSN marks once an interval has been fully processed."""
        if last_received < self.lsn_max_queried:
            # Nothing was received beyond the resume point.
            last_received = self.lsn_max_queried
        self.lsn_max = self.lsn_max_queried
        self.lsn_max_queried = last_received
        self.advance_timestamp(system_time)

    def __str__(self) -> str:
        return (
            f"ReplicationState(slotName={self.slot_name}, "
            f"lsnMax={int_to_lsn(self.lsn_max)}, "
            f"lsnMaxQueried={int_to_lsn(self.lsn_max_queried)}, "
            f"timestamp={format_timestamp(self.timestamp)}, "
            f"sequenceNumber={self.sequence_number})"
        )


__all__ = [
    "EPOCH",
    "PROPERTY_KEYS",
    "ReplicationState",
    "STATE_METADATA_KEY",
    "format_timestamp",
    "parse_timestamp",
]
