"""Ingest records from a Kafka topic, batched by read timeout."""

from __future__ import annotations

import enum
import json
import logging
import queue
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

from flowlogs2metrics.exit import register_exit_event
from flowlogs2metrics.ingest import Ingester, ProcessFunction

_log = logging.getLogger(__name__)

CHANNEL_SIZE = 1000
DEFAULT_BATCH_READ_TIMEOUT = 100


class StartOffset(enum.IntEnum):
    """Where a new consumer group starts reading."""

    FIRST = -2
    LAST = -1


class GroupBalancer(enum.Enum):
    """Partition assignment strategies."""

    RANGE = "range"
    ROUND_ROBIN = "roundRobin"
    RACK_AFFINITY = "rackAffinity"


@dataclass
class IngestKafkaParams:
    """Kafka ingest configuration."""

    brokers: list[str] = field(default_factory=list)
    topic: str = ""
    group_id: str = ""
    start_offset: str = ""
    group_balancers: list[str] = field(default_factory=list)
    batch_read_timeout: int = 0


@dataclass
class ReaderConfig:
    """Settings handed to the Kafka reader."""

    brokers: list[str]
    topic: str
    group_id: str
    group_balancers: list[GroupBalancer]
    start_offset: StartOffset


class _Reader(Protocol):
    def read_message(self) -> bytes | str:
        ...


def parse_params(params_json: str) -> IngestKafkaParams:
    """Parse the JSON configuration; keys are matched case-insensitively."""
    data = json.loads(params_json) or {}
    if not isinstance(data, dict):
        raise ValueError(f"kafka configuration must be an object, got {data!r}")
    lowered = {str(key).lower(): value for key, value in data.items()}
    params = IngestKafkaParams(
        brokers=list(lowered.get("brokers") or []),
        topic=str(lowered.get("topic") or ""),
        group_id=str(lowered.get("groupid") or ""),
        start_offset=str(lowered.get("startoffset") or ""),
        group_balancers=list(lowered.get("groupbalancers") or []),
        batch_read_timeout=int(lowered.get("batchreadtimeout") or 0),
    )
    if params.batch_read_timeout == 0:
        params.batch_read_timeout = DEFAULT_BATCH_READ_TIMEOUT
    _log.info("BatchReadTimeout = %d", params.batch_read_timeout)
    return params


def reader_config(params: IngestKafkaParams) -> ReaderConfig:
    """Translate ingest parameters into reader settings."""
    if params.start_offset in ("FirstOffset", ""):
        offset = StartOffset.FIRST
    elif params.start_offset == "LastOffset":
        offset = StartOffset.LAST
    else:
        _log.error("illegal value for StartOffset: %s", params.start_offset)
        offset = StartOffset.FIRST
    balancers = []
    for name in params.group_balancers:
        try:
            balancers.append(GroupBalancer(name))
        except ValueError:
            _log.warning("groupbalancers parameter missing")
            balancers.append(GroupBalancer.ROUND_ROBIN)
    return ReaderConfig(
        brokers=list(params.brokers),
        topic=params.topic,
        group_id=params.group_id,
        group_balancers=balancers,
        start_offset=offset,
    )


class IngestKafka(Ingester):
    """Collect messages and pass them on in batches after a quiet period."""

    def __init__(
        self,
        params: IngestKafkaParams,
        reader: _Reader | None = None,
        exit_event: threading.Event | None = None,
    ) -> None:
        self.params = params
        self.reader = reader
        self.exit_event = exit_event if exit_event is not None else threading.Event()
        self.prev_records: list[Any] = []
        self._in: queue.Queue[str] = queue.Queue(maxsize=CHANNEL_SIZE)

    def feed(self, record: str) -> None:
        """Queue one record for the next batch."""
        self._in.put(record)

    def _listen(self) -> None:
        while not self.exit_event.is_set():
            try:
                message = self.reader.read_message()
            except Exception as err:  # reader errors must not stop the listener
                _log.error("%s", err)
                continue
            if isinstance(message, bytes):
                message = message.decode("utf-8", "replace")
            if message:
                self._in.put(message)

    def ingest(self, process: ProcessFunction) -> None:
        if self.reader is not None:
            threading.Thread(target=self._listen, name="kafka-listener", daemon=True).start()
        timeout = self.params.batch_read_timeout / 1000.0
        records: list[Any] = []
        while not self.exit_event.is_set():
            try:
                records.append(self._in.get(timeout=timeout))
            except queue.Empty:
                if records:
                    process(records)
                    self.prev_records = records
                records = []
        _log.debug("exiting ingest kafka because of signal")


def new_ingest_kafka(
    params_json: str,
    reader_factory: Callable[[ReaderConfig], _Reader | None] | None = None,
) -> IngestKafka:
    """Create a Kafka ingester; ``reader_factory`` builds the message reader."""
    params = parse_params(params_json)
    config = reader_config(params)
    reader = None
    if reader_factory is not None:
        reader = reader_factory(config)
        if reader is None:
            raise RuntimeError("new_ingest_kafka: failed to create kafka reader")
    event = threading.Event()
    register_exit_event(event)
    ingester = IngestKafka(params, reader, event)
    ingester.reader_config = config
    return ingester