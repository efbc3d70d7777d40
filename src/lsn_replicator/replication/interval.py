"""Decides when an idle replication interval is finished."""

from __future__ import annotations

import logging
from datetime import datetime

logger = logging.getLogger(__name__)


def _millis_between(start: datetime, end: datetime) -> int:
    delta = end - start
    return (delta.days * 86_400_000) + (delta.seconds * 1000) + (
        delta.microseconds // 1000
    )


class IntervalController:
    """Ends an interval once the database clock shows the idle budget is spent.

    The budget is measured against the database clock read when the interval
    started.  ``min_interval_ms`` is accepted for configuration compatibility
    and currently plays no part in the decision.
    """

    def __init__(self, max_interval_ms: int, min_interval_ms: int = 0) -> None:
        if max_interval_ms < 0:
            raise ValueError("max_interval_ms must not be negative")
        self.max_interval_ms = max_interval_ms
        self.min_interval_ms = min_interval_ms

    def remaining_ms(self, started_at: datetime, now: datetime) -> int:
        return self.max_interval_ms - _millis_between(started_at, now)

    def should_end_interval(
        self, in_transaction: bool, started_at: datetime, now: datetime
    ) -> bool:
        # A change file must never be cut inside a transaction.
        if in_transaction:
            return False
        remaining = self.remaining_ms(started_at, now)
        if remaining <= 0:
            logger.debug("Ending because remaining interval <= 0: %d", remaining)
            return True
        if remaining > self.max_interval_ms:
            logger.debug(
                "Ending because remaining interval > max interval (clock skew): %d",
                remaining,
            )
            return True
        logger.debug("Waiting for more data, time left: %dms", remaining)
        return False


__all__ = ["IntervalController"]
