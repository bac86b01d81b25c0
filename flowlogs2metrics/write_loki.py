"""Write flow records to a Loki log store."""

from __future__ import annotations

import json
import logging
import math
import queue
import re
import threading
import time
import urllib.error
import urllib.parse
import urllib.request
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from fractions import Fraction
from typing import Any, Protocol

from flowlogs2metrics.exit import register_exit_event

_log = logging.getLogger(__name__)

CHANNEL_SIZE = 1000

_UNITS = {
    "ns": 1, "us": 1_000, "µs": 1_000, "μs": 1_000, "ms": 1_000_000,
    "s": 1_000_000_000, "m": 60_000_000_000, "h": 3_600_000_000_000,
}
_DURATION_PART = re.compile(r"(\d+\.?\d*|\.\d+)(ns|us|µs|μs|ms|s|m|h)")
_LABEL_NAME = re.compile(r"[a-zA-Z_][a-zA-Z0-9_]*")


def parse_duration(text: str) -> int:
    """Parse a duration such as ``1m30s`` or ``100ms`` into nanoseconds."""
    original = text
    sign = 1
    if text[:1] in "+-" and text:
        sign = -1 if text[0] == "-" else 1
        text = text[1:]
    if text == "0":
        return 0
    if not text:
        raise ValueError(f"invalid duration {original!r}")
    total = Fraction(0)
    position = 0
    while position < len(text):
        match = _DURATION_PART.match(text, position)
        if match is None:
            raise ValueError(f"invalid duration {original!r}")
        total += Fraction(match.group(1)) * _UNITS[match.group(2)]
        position = match.end()
    return sign * int(total)


def sanitize_label(label: str) -> str:
    """Replace characters Loki rejects in label names with underscores."""
    return label.replace("/", "_").replace(".", "_").replace("-", "_")


def _sprint(value: Any) -> str:
    if value is None:
        return "<nil>"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer() and abs(value) < 1e21:
        return str(int(value))
    return str(value)


@dataclass
class WriteLokiConfig:
    """User-facing Loki writer configuration, with defaults."""

    url: str = "http://loki:3100/"
    tenant_id: str = ""
    batch_wait: str = "1s"
    batch_size: int = 100 * 1024
    timeout: str = "10s"
    min_backoff: str = "1s"
    max_backoff: str = "5m"
    max_retries: int = 10
    labels: list[str] = field(default_factory=list)
    static_labels: dict[str, str] = field(default_factory=dict)
    ignore_list: list[str] = field(default_factory=list)
    client_config: dict[str, Any] = field(default_factory=dict)
    timestamp_label: str = "TimeReceived"
    timestamp_scale: str = "1s"

    _KEYS = {
        "url": "url", "tenantid": "tenant_id", "batchwait": "batch_wait",
        "batchsize": "batch_size", "timeout": "timeout", "minbackoff": "min_backoff",
        "maxbackoff": "max_backoff", "maxretries": "max_retries", "labels": "labels",
        "staticlabels": "static_labels", "ignorelist": "ignore_list",
        "clientconfig": "client_config", "timestamplabel": "timestamp_label",
        "timestampscale": "timestamp_scale",
    }

    @classmethod
    def from_json(cls, text: str) -> WriteLokiConfig:
        """Overlay a JSON object (keys matched case-insensitively) on the defaults."""
        config = cls()
        data = json.loads(text) if text else None
        if data is None:
            return config
        if not isinstance(data, dict):
            raise ValueError(f"loki configuration must be an object, got {data!r}")
        for key, value in data.items():
            attr = cls._KEYS.get(str(key).lower())
            if attr is not None and value is not None:
                setattr(config, attr, value)
        return config

    def validate(self) -> None:
        """Raise ValueError if the configuration cannot work."""
        if not self.url:
            raise ValueError("url can't be empty")
        if self.batch_size < 0:
            raise ValueError(f"invalid batchSize: {self.batch_size}")
        if self.max_retries < 0:
            raise ValueError(f"invalid maxRetries: {self.max_retries}")


@dataclass
class LokiConfig:
    """Client settings derived from :class:`WriteLokiConfig`; durations in seconds."""

    url: str
    tenant_id: str
    batch_wait: float
    batch_size: int
    timeout: float
    min_backoff: float
    max_backoff: float
    max_retries: int
    client_config: dict[str, Any] = field(default_factory=dict)


def _seconds(text: str, name: str) -> float:
    try:
        return parse_duration(text) / 1e9
    except ValueError as err:
        raise ValueError(f"failed in parsing {name} : {err}") from err


def build_loki_config(config: WriteLokiConfig) -> LokiConfig:
    """Build client settings; raise ValueError on a bad duration or URL."""
    batch_wait = _seconds(config.batch_wait, "BatchWait")
    timeout = _seconds(config.timeout, "Timeout")
    min_backoff = _seconds(config.min_backoff, "MinBackoff")
    max_backoff = _seconds(config.max_backoff, "MaxBackoff")
    url = config.url.removesuffix("/") + "/loki/api/v1/push"
    parsed = urllib.parse.urlparse(url)
    if not parsed.scheme or not parsed.netloc:
        raise ValueError(f"failed to parse client URL: {url}")
    return LokiConfig(
        url=url, tenant_id=config.tenant_id, batch_wait=batch_wait,
        batch_size=config.batch_size, timeout=timeout, min_backoff=min_backoff,
        max_backoff=max_backoff, max_retries=config.max_retries,
        client_config=dict(config.client_config),
    )


class _Emitter(Protocol):
    def handle(self, labels: dict[str, str], timestamp: int, record: str) -> None:
        ...


class HttpLokiClient:
    """Push log lines to Loki over HTTP, retrying with exponential backoff."""

    def __init__(self, config: LokiConfig) -> None:
        self.config = config

    def handle(self, labels: dict[str, str], timestamp: int, record: str) -> None:
        """Push one line; ``timestamp`` is nanoseconds since the epoch."""
        body = json.dumps(
            {"streams": [{"stream": labels, "values": [[str(timestamp), record]]}]}
        ).encode("utf-8")
        headers = {"Content-Type": "application/json"}
        if self.config.tenant_id:
            headers["X-Scope-OrgID"] = self.config.tenant_id
        backoff = self.config.min_backoff
        attempt = 0
        while True:
            request = urllib.request.Request(self.config.url, data=body, headers=headers, method="POST")
            try:
                with urllib.request.urlopen(request, timeout=self.config.timeout):
                    return
            except urllib.error.HTTPError as err:
                if err.code < 500 and err.code != 429:
                    raise
                last: Exception = err
            except (urllib.error.URLError, OSError) as err:
                last = err
            attempt += 1
            if attempt > self.config.max_retries:
                raise last
            time.sleep(backoff)
            backoff = min(backoff * 2, self.config.max_backoff)


def _as_float(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        _log.warning("Type %s is not implemented for float64 conversion", type(value).__name__)
        return None
    return float(value)


class LokiWriter:
    """Queue records and push them to Loki from a background thread."""

    def __init__(
        self,
        api_config: WriteLokiConfig,
        client: _Emitter,
        time_now: Callable[[], int] = time.time_ns,
    ) -> None:
        self.api_config = api_config
        self.client = client
        self.time_now = time_now
        self.exit_event = threading.Event()
        self._in: queue.Queue[dict[str, Any]] = queue.Queue(maxsize=CHANNEL_SIZE)
        self._thread = threading.Thread(target=self._process_records, name="loki-writer", daemon=True)
        self._thread.start()

    def _extract_timestamp(self, record: Mapping[str, Any]) -> int:
        label = self.api_config.timestamp_label
        if not label:
            return self.time_now()
        if label not in record:
            _log.warning("Timestamp label %s not found in record. Using local time", label)
            return self.time_now()
        ft = _as_float(record[label])
        if ft is None or math.isnan(ft):
            _log.warning("Invalid timestamp found. Using local time")
            return self.time_now()
        if ft == 0:
            _log.warning("Empty timestamp in record. Using local time")
            return self.time_now()
        try:
            scale = parse_duration(self.api_config.timestamp_scale)
        except ValueError as err:
            _log.warning("failed in parsing TimestampScale : %s", err)
            return self.time_now()
        return int(ft * float(scale))

    def _labels(self, record: Mapping[str, Any]) -> dict[str, str]:
        labels = dict(self.api_config.static_labels)
        for label in self.api_config.labels:
            if label not in record:
                continue
            key = sanitize_label(label)
            if not _LABEL_NAME.fullmatch(key):
                _log.debug("Invalid label %s. Ignoring it", label)
                continue
            labels[key] = _sprint(record[label])
        return labels

    def process_record(self, record: dict[str, Any]) -> None:
        """Send one record; labels and ignored fields are removed from it."""
        timestamp = self._extract_timestamp(record)
        labels = self._labels(record)
        for key in [*self.api_config.ignore_list, *self.api_config.labels]:
            record.pop(key, None)
        line = json.dumps(record, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
        self.client.handle(labels, timestamp, line)

    def write(self, entries: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Queue entries for sending and return them."""
        for entry in entries:
            self._in.put(entry)
        return entries

    def _process_records(self) -> None:
        while not self.exit_event.is_set():
            try:
                record = self._in.get(timeout=0.1)
            except queue.Empty:
                continue
            try:
                self.process_record(record)
            except Exception as err:  # keep the writer alive on any client failure
                _log.error("Write (Loki) error %s", err)

    def close(self) -> None:
        """Stop the background thread."""
        self.exit_event.set()
        if self._thread is not threading.current_thread():
            self._thread.join()


def new_write_loki(loki_json: str, client: _Emitter | None = None) -> LokiWriter:
    """Create a Loki writer from JSON configuration."""
    api_config = WriteLokiConfig.from_json(loki_json)
    try:
        api_config.validate()
    except ValueError as err:
        raise ValueError(f"the provided config is not valid: {err}") from err
    loki_config = build_loki_config(api_config)
    writer = LokiWriter(api_config, client if client is not None else HttpLokiClient(loki_config))
    writer.loki_config = loki_config
    register_exit_event(writer.exit_event)
    return writer