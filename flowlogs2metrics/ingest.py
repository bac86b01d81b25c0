"""Ingesters feed raw records into the pipeline."""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any

from flowlogs2metrics.exit import register_exit_event

_log = logging.getLogger(__name__)

DELAY_SECONDS = 10.0

ProcessFunction = Callable[[list[Any]], None]


class Ingester(ABC):
    """A pipeline stage that reads records and hands batches to ``process``."""

    @abstractmethod
    def ingest(self, process: ProcessFunction) -> None:
        """Read records and call ``process`` with each batch."""


class IngestFile(Ingester):
    """Read the lines of a file once, or resend them periodically."""

    def __init__(
        self,
        file_name: str,
        loop: bool = False,
        exit_event: threading.Event | None = None,
        delay: float = DELAY_SECONDS,
    ) -> None:
        self.file_name = file_name
        self.loop = loop
        self.exit_event = exit_event if exit_event is not None else threading.Event()
        self.delay = delay
        self.prev_records: list[Any] = []

    def _read_lines(self) -> list[Any]:
        with open(self.file_name, encoding="utf-8") as handle:
            return [line.rstrip("\n").removesuffix("\r") for line in handle]

    def ingest(self, process: ProcessFunction) -> None:
        lines = self._read_lines()
        _log.debug("Ingesting %d log lines from %s", len(lines), self.file_name)
        if not self.loop:
            self.prev_records = lines
            process(lines)
            return
        while not self.exit_event.wait(self.delay):
            self.prev_records = lines
            process(lines)
        _log.debug("exiting ingest file because of signal")


def new_ingest_file(file_name: str, ingest_type: str = "file") -> IngestFile:
    """Create a file ingester; ``ingest_type`` is ``file`` or ``file_loop``."""
    if not file_name:
        raise ValueError("ingest filename not specified")
    if ingest_type not in ("file", "file_loop"):
        raise ValueError(f"unknown file ingest type {ingest_type!r}")
    _log.info("input file name = %s", file_name)
    event = threading.Event()
    register_exit_event(event)
    return IngestFile(file_name, loop=ingest_type == "file_loop", exit_event=event)