"""Durable storage for replication state as a properties text file."""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import Dict, Mapping, Optional

logger = logging.getLogger(__name__)

_HEADER = "#Replication state, do not edit while the replicator is running"


def _escape(value: str) -> str:
    return (
        value.replace("\\", "\\\\")
        .replace("=", "\\=")
        .replace(":", "\\:")
        .replace("\n", "\\n")
    )


def _unescape(value: str) -> str:
    result = []
    chars = iter(value)
    for char in chars:
        if char != "\\":
            result.append(char)
            continue
        nxt = next(chars, "")
        result.append("\n" if nxt == "n" else nxt)
    return "".join(result)


def _split_property(line: str):
    escaped = False
    for index, char in enumerate(line):
        if escaped:
            escaped = False
        elif char == "\\":
            escaped = True
        elif char == "=":
            return line[:index], line[index + 1 :]
    raise ValueError(f"invalid property line {line!r}")


def dumps_properties(properties: Mapping[str, str]) -> str:
    lines = [_HEADER]
    for key in sorted(properties):
        lines.append(f"{_escape(key)}={_escape(properties[key])}")
    return "\n".join(lines) + "\n"


def loads_properties(text: str) -> Dict[str, str]:
    properties: Dict[str, str] = {}
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith("#") or line.startswith("!"):
            continue
        key, value = _split_property(line)
        properties[_unescape(key.strip())] = _unescape(value.strip())
    return properties


class StateFileStore:
    """Reads and atomically rewrites a single properties file."""

    def __init__(self, path: Path | str, *, fsync: bool = False) -> None:
        self._path = Path(path)
        self._fsync = fsync

    @property
    def path(self) -> Path:
        return self._path

    def exists(self) -> bool:
        return self._path.exists()

    def load(self) -> Optional[Dict[str, str]]:
        if not self._path.exists():
            return None
        return loads_properties(self._path.read_text(encoding="utf-8"))

    def save(self, properties: Mapping[str, str]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        write_atomically(self._path, dumps_properties(properties), fsync=self._fsync)


def write_atomically(path: Path, content: str, *, fsync: bool = False) -> None:
    """Replace ``path`` with ``content`` so readers see the old or new file."""
    with tempfile.NamedTemporaryFile(
        "w",
        encoding="utf-8",
        dir=path.parent,
        prefix=f".{path.name}.",
        suffix=".tmp",
        delete=False,
    ) as staged:
        staged_path = Path(staged.name)
        try:
            staged.write(content)
            staged.flush()
            if fsync:
                os.fsync(staged.fileno())
        except OSError:
            staged_path.unlink(missing_ok=True)
            raise
    try:
        staged_path.replace(path)
    except OSError as exc:
        logger.error("Unable to move %s into place at %s: %s", staged_path, path, exc)
        staged_path.unlink(missing_ok=True)
        raise
    if fsync:
        fsync_directory(path.parent)


def fsync_directory(directory: Path) -> None:
    try:
        dir_fd = os.open(directory, os.O_RDONLY)
    except OSError:  # pragma: no cover - platform dependent
        return
    try:
        os.fsync(dir_fd)
    finally:
        os.close(dir_fd)


__all__ = [
    "StateFileStore",
    "dumps_properties",
    "fsync_directory",
    "loads_properties",
    "write_atomically",
]
