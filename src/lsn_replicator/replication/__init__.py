"""Logical replication core: checkpoint state, stream protocol and replicator."""

from .engine import (
    ChangeSink,
    HistorySource,
    LsnReplicator,
    ReplicationStream,
    StreamProvider,
    SystemTimeLoader,
)
from .errors import ReplicationError, UnsupportedBackendError
from .history import ChangeEvent, PostgresHistorySource, PostgresTimeLoader
from .interval import IntervalController
from .lsn import INVALID_LSN, INVALID_LSN_TEXT, int_to_lsn, lsn_to_int
from .notifications import Notification, Opcode, TransactionTracker, parse_notification
from .state import STATE_METADATA_KEY, ReplicationState
from .stream import PgReplicationStream, ReplicationContext

__all__ = [
    "ChangeEvent",
    "ChangeSink",
    "HistorySource",
    "INVALID_LSN",
    "INVALID_LSN_TEXT",
    "IntervalController",
    "LsnReplicator",
    "Notification",
    "Opcode",
    "PgReplicationStream",
    "PostgresHistorySource",
    "PostgresTimeLoader",
    "ReplicationContext",
    "ReplicationError",
    "ReplicationState",
    "ReplicationStream",
    "STATE_METADATA_KEY",
    "StreamProvider",
    "SystemTimeLoader",
    "TransactionTracker",
    "UnsupportedBackendError",
    "int_to_lsn",
    "lsn_to_int",
    "parse_notification",
]
