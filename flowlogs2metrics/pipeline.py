"""Wire the pipeline stages together."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from flowlogs2metrics.extract import ExtractNone, Extractor
from flowlogs2metrics.ingest import Ingester
from flowlogs2metrics.transform import Transformer, execute_transforms
from flowlogs2metrics.write import WriteNone, WriteStdout, Writer
from flowlogs2metrics.write_loki import new_write_loki

_log = logging.getLogger(__name__)

Decoder = Callable[[list[Any]], list[dict[str, Any]]]
Encoder = Callable[[list[dict[str, Any]]], Any]


def _pass_through(entries: list[Any]) -> list[dict[str, Any]]:
    decoded = []
    for entry in entries:
        if not isinstance(entry, dict):
            raise TypeError(f"entry {entry!r} is not a mapping; a decoder is needed")
        decoded.append(entry)
    return decoded


@dataclass
class Pipeline:
    """Ingest, decode, transform, write, extract and encode flow records."""

    ingester: Ingester
    transformers: list[Transformer] = field(default_factory=list)
    writer: Writer = field(default_factory=WriteNone)
    extractor: Extractor = field(default_factory=ExtractNone)
    decoder: Decoder | None = None
    encoder: Encoder | None = None
    is_running: bool = False

    def run(self) -> None:
        """Ingest until the ingester returns."""
        self.is_running = True
        try:
            self.ingester.ingest(self.process)
        finally:
            self.is_running = False

    def process(self, entries: list[Any]) -> None:
        """Push one batch of raw entries through the remaining stages."""
        _log.debug("number of entries = %d", len(entries))
        decoded = (self.decoder or _pass_through)(entries)
        transformed = [execute_transforms(self.transformers, entry) for entry in decoded]
        self.writer.write(transformed)
        extracted = self.extractor.extract(transformed)
        if self.encoder is not None:
            self.encoder(extracted)

    def _check_running(self) -> None:
        if not self.is_running:
            raise RuntimeError("pipeline is not running")

    def is_ready(self) -> Callable[[], None]:
        """Return a check that raises RuntimeError unless the pipeline runs."""
        return self._check_running

    def is_alive(self) -> Callable[[], None]:
        """Return a check that raises RuntimeError unless the pipeline runs."""
        return self._check_running


def get_writer(kind: str, loki_json: str = "{}") -> Writer | Any:
    """Create the writer named by ``kind``."""
    if kind == "stdout":
        return WriteStdout()
    if kind == "none":
        return WriteNone()
    if kind == "loki":
        return new_write_loki(loki_json)
    raise ValueError("`write` not defined; if no writer needed, specify `none`")


def new_pipeline(
    ingester: Ingester,
    transformers: list[Transformer] | None = None,
    writer: Writer | None = None,
    extractor: Extractor | None = None,
    decoder: Decoder | None = None,
    encoder: Encoder | None = None,
) -> Pipeline:
    """Assemble a pipeline; missing stages pass data through."""
    return Pipeline(
        ingester=ingester,
        transformers=list(transformers or []),
        writer=writer if writer is not None else WriteNone(),
        extractor=extractor if extractor is not None else ExtractNone(),
        decoder=decoder,
        encoder=encoder,
    )