"""Extractors turn transformed flow entries into derived records."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any

from flowlogs2metrics.aggregate import Aggregates, aggregates_from_config

_log = logging.getLogger(__name__)


class Extractor(ABC):
    """A pipeline stage that derives records from flow entries."""

    @abstractmethod
    def extract(self, entries: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Return the records derived from ``entries``."""


class ExtractNone(Extractor):
    """Pass entries through unchanged."""

    def extract(self, entries: list[dict[str, Any]]) -> list[dict[str, Any]]:
        return entries


class ExtractAggregate(Extractor):
    """Feed entries into aggregates and report their metrics."""

    def __init__(self, aggregates: Aggregates) -> None:
        self.aggregates = aggregates

    def extract(self, entries: list[dict[str, Any]]) -> list[dict[str, Any]]:
        self.aggregates.evaluate(entries)
        return self.aggregates.get_metrics()


def new_extract_aggregate(definitions_json: str) -> ExtractAggregate:
    """Create an aggregating extractor from a JSON list of definitions."""
    _log.debug("entering new_extract_aggregate")
    return ExtractAggregate(aggregates_from_config(definitions_json))


def get_extractor(kind: str, aggregates_json: str = "") -> Extractor:
    """Create the extractor named by ``kind``."""
    if kind == "none":
        return ExtractNone()
    if kind == "aggregates":
        return new_extract_aggregate(aggregates_json)
    raise ValueError("`extract` not defined; if no extractor needed, specify `none`")