"""Exceptions raised by the replication core."""

from __future__ import annotations


class ReplicationError(RuntimeError):
    """Fatal replication failure; the original cause is chained."""


class UnsupportedBackendError(ReplicationError):
    """Raised when replication is requested for an unsupported database type."""


__all__ = ["ReplicationError", "UnsupportedBackendError"]
