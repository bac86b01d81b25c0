"""Writers emit transformed flow entries."""

from __future__ import annotations

import logging
import sys
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, TextIO

_log = logging.getLogger(__name__)

_MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun",
           "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")


def _format_value(value: Any) -> str:
    if value is None:
        return "<nil>"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Mapping):
        items = " ".join(
            f"{_format_value(k)}:{_format_value(value[k])}"
            for k in sorted(value, key=str)
        )
        return f"map[{items}]"
    if isinstance(value, (list, tuple)):
        return "[" + " ".join(_format_value(v) for v in value) + "]"
    if isinstance(value, float) and value.is_integer() and abs(value) < 1e21:
        return str(int(value))
    return str(value)


def _stamp_milli(now: datetime) -> str:
    return (
        f"{_MONTHS[now.month - 1]} {now.day:2d} "
        f"{now:%H:%M:%S}.{now.microsecond // 1000:03d}"
    )


class Writer(ABC):
    """A pipeline stage that stores or emits flow entries."""

    @abstractmethod
    def write(self, entries: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Write ``entries`` and return them."""


@dataclass
class WriteNone(Writer):
    """Discard entries, remembering the most recent batch."""

    prev_records: list[dict[str, Any]] = field(default_factory=list)

    def write(self, entries: list[dict[str, Any]]) -> list[dict[str, Any]]:
        _log.debug("entering write none, entries = %s", entries)
        self.prev_records = entries
        return entries


@dataclass
class WriteStdout(Writer):
    """Print each entry with a timestamp, one per line."""

    stream: TextIO | None = None

    def write(self, entries: list[dict[str, Any]]) -> list[dict[str, Any]]:
        _log.debug("write stdout: number of entries = %d", len(entries))
        out = self.stream if self.stream is not None else sys.stdout
        for entry in entries:
            out.write(f"{_stamp_milli(datetime.now())}: {_format_value(entry)}\n")
        return entries