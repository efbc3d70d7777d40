"""Decoding of the text lines emitted by the logical decoding output plugin.

Each line is one notification::

    BEGIN
    NEW way 123 4
    COMMIT

Lines that cannot be interpreted are reported as ``UNKNOWN`` and skipped by
the replicator; they never abort an interval.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

logger = logging.getLogger(__name__)


class Opcode(str, Enum):
    BEGIN = "BEGIN"
    COMMIT = "COMMIT"
    NEW = "NEW"
    UPDATE = "UPDATE"
    UNKNOWN = "UNKNOWN"


_NEW_TOKEN_COUNT = 4


@dataclass(frozen=True)
class Notification:
    """One decoded stream line."""

    opcode: Opcode
    element_kind: Optional[str] = None
    entity_id: Optional[int] = None
    version: Optional[int] = None
    line: str = ""


def parse_notification(line: str) -> Notification:
    tokens = line.split()
    if not tokens:
        logger.info('Received bad stream message: "%s"', line)
        return Notification(Opcode.UNKNOWN, line=line)

    op = tokens[0]
    if op == Opcode.BEGIN.value:
        return Notification(Opcode.BEGIN, line=line)
    if op == Opcode.COMMIT.value:
        return Notification(Opcode.COMMIT, line=line)
    if op == Opcode.UPDATE.value:
        return Notification(Opcode.UPDATE, line=line)
    if op == Opcode.NEW.value:
        if len(tokens) != _NEW_TOKEN_COUNT:
            logger.info("Received malformed NEW message: %s", line)
            return Notification(Opcode.UNKNOWN, line=line)
        try:
            entity_id = int(tokens[2])
            version = int(tokens[3])
        except ValueError:
            logger.info("Received malformed NEW message: %s", line)
            return Notification(Opcode.UNKNOWN, line=line)
        return Notification(
            Opcode.NEW,
            element_kind=tokens[1],
            entity_id=entity_id,
            version=version,
            line=line,
        )

    logger.info("Received unknown stream message: %s", line)
    return Notification(Opcode.UNKNOWN, line=line)


class TransactionTracker:
    """Tracks whether the stream is currently inside a transaction."""

    def __init__(self) -> None:
        self._in_transaction = False

    @property
    def in_transaction(self) -> bool:
        return self._in_transaction

    def apply(self, notification: Notification) -> None:
        if notification.opcode is Opcode.BEGIN:
            logger.debug("Received a BEGIN")
            self._in_transaction = True
        elif notification.opcode is Opcode.COMMIT:
            logger.debug("Received a COMMIT")
            self._in_transaction = False


__all__ = ["Notification", "Opcode", "TransactionTracker", "parse_notification"]
