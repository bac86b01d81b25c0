"""Transformers reshape flow entries before they are written."""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from flowlogs2metrics.transform_network import Network, new_transform_network

_log = logging.getLogger(__name__)

OPERATION_GENERIC = "generic"
OPERATION_NETWORK = "network"
OPERATION_NONE = "none"


def _lower_keys(data: Mapping[str, Any]) -> dict[str, Any]:
    return {str(key).lower(): value for key, value in data.items()}


class Transformer(ABC):
    """A pipeline stage that transforms one flow entry."""

    @abstractmethod
    def transform(self, entry: dict[str, Any]) -> dict[str, Any]:
        """Return the transformed entry."""


Transformer.register(Network)


class TransformNone(Transformer):
    """Return entries unchanged."""

    def transform(self, entry: dict[str, Any]) -> dict[str, Any]:
        return entry


@dataclass(frozen=True)
class GenericRule:
    """Copy the field ``input`` to the field ``output``."""

    input: str
    output: str

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> GenericRule:
        """Build a rule from a mapping with case-insensitive keys."""
        lowered = _lower_keys(data)
        return cls(input=str(lowered.get("input") or ""), output=str(lowered.get("output") or ""))


@dataclass
class Generic(Transformer):
    """Build a new entry holding only the renamed fields."""

    rules: list[GenericRule] = field(default_factory=list)

    def transform(self, entry: dict[str, Any]) -> dict[str, Any]:
        return {rule.output: entry.get(rule.input) for rule in self.rules}


def _generic_from_config(config: Any) -> Generic:
    if config is None:
        return Generic()
    if not isinstance(config, Mapping):
        raise ValueError(f"generic transform configuration must be a mapping, got {config!r}")
    rules = _lower_keys(config).get("rules") or []
    return Generic([GenericRule.from_mapping(rule) for rule in rules])


def get_transformers(transform_json: str) -> list[Transformer]:
    """Create the transformers listed in a JSON array of definitions."""
    try:
        definitions = json.loads(transform_json)
    except (TypeError, ValueError) as err:
        raise ValueError(f"error in unmarshalling transform definitions: {err}") from err
    if definitions is None:
        return []
    if not isinstance(definitions, list):
        raise ValueError(f"transform definitions must be a list, got {definitions!r}")

    transformers: list[Transformer] = []
    for item in definitions:
        lowered = _lower_keys(item)
        kind = lowered.get("type") or ""
        _log.debug("transform type = %s", kind)
        if kind == OPERATION_GENERIC:
            transformers.append(_generic_from_config(lowered.get("generic")))
        elif kind == OPERATION_NETWORK:
            transformers.append(new_transform_network(lowered.get("network") or {}))
        elif kind == OPERATION_NONE:
            transformers.append(TransformNone())
        else:
            raise ValueError(f"unknown transform type {kind!r}")
    return transformers


def execute_transforms(transformers: Iterable[Transformer], entry: dict[str, Any]) -> dict[str, Any]:
    """Run ``entry`` through every transformer in order."""
    for transformer in transformers:
        entry = transformer.transform(entry)
    return entry