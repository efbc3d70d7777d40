"""Conversion between PostgreSQL textual LSNs and integers."""

from __future__ import annotations

INVALID_LSN = 0
INVALID_LSN_TEXT = "0/0"

_MAX_PART = 0xFFFFFFFF


def lsn_to_int(value: str) -> int:
    """Parse an ``XXXXXXXX/XXXXXXXX`` position into its 64-bit integer form."""
    if value is None:
        raise ValueError("LSN value is missing")
    text = value.strip()
    upper_text, sep, lower_text = text.partition("/")
    if not sep or not upper_text or not lower_text:
        raise ValueError(f"invalid LSN {value!r}")
    try:
        upper = int(upper_text, 16)
        lower = int(lower_text, 16)
    except ValueError as exc:
        raise ValueError(f"invalid LSN {value!r}") from exc
    if not (0 <= upper <= _MAX_PART and 0 <= lower <= _MAX_PART):
        raise ValueError(f"LSN {value!r} is out of range")
    return (upper << 32) | lower


def int_to_lsn(value: int) -> str:
    upper = value >> 32
    lower = value & _MAX_PART
    return f"{upper:X}/{lower:X}"


__all__ = ["INVALID_LSN", "INVALID_LSN_TEXT", "int_to_lsn", "lsn_to_int"]
