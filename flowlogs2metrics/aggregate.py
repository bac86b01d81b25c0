"""Group flow entries by label values and aggregate a numeric field."""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any

_log = logging.getLogger(__name__)

OPERATION_SUM = "sum"
OPERATION_AVG = "avg"
OPERATION_MAX = "max"
OPERATION_MIN = "min"
OPERATION_COUNT = "count"


def _format_value(value: Any) -> str:
    if value is None:
        return "<nil>"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer() and abs(value) < 1e21:
        return str(int(value))
    return str(value)


def _parse_float(text: str) -> float:
    try:
        return float(text)
    except ValueError:
        return 0.0


def normalized_values(labels: Mapping[str, str]) -> str:
    """Join label values, ordered by label name, with commas."""
    return ",".join(labels[key] for key in sorted(labels))


@dataclass(frozen=True)
class Definition:
    """How to group and aggregate entries."""

    name: str = ""
    by: tuple[str, ...] = ()
    operation: str = ""
    record_key: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "by", tuple(self.by or ()))

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> Definition:
        """Build a definition from a mapping with case-insensitive keys."""
        lowered = {str(key).lower(): value for key, value in data.items()}
        return cls(
            name=lowered.get("name") or "",
            by=tuple(lowered.get("by") or ()),
            operation=lowered.get("operation") or "",
            record_key=lowered.get("recordkey") or "",
        )


@dataclass
class GroupState:
    """Running state of one group of an aggregate."""

    normalized_values: str
    recent_raw_values: list[float] = field(default_factory=list)
    value: float = 0.0
    count: int = 0


@dataclass
class Aggregate:
    """One aggregate definition and the state of its groups."""

    definition: Definition
    groups: dict[str, GroupState] = field(default_factory=dict)

    def labels_from_entry(self, entry: Mapping[str, Any]) -> tuple[dict[str, str], bool]:
        """Return the group-by labels of an entry and whether all were present."""
        all_found = True
        labels: dict[str, str] = {}
        for key in self.definition.by:
            if key not in entry:
                all_found = False
            labels[key] = _format_value(entry.get(key))
        return labels, all_found

    def filter_entry(self, entry: Mapping[str, Any]) -> str:
        """Return the group key of an entry; raise ValueError if labels are missing."""
        labels, all_found = self.labels_from_entry(entry)
        if not all_found:
            raise ValueError("missing keys in entry")
        return normalized_values(labels)

    def update_by_entry(self, entry: Mapping[str, Any], normalized: str) -> None:
        """Fold an entry into the group identified by ``normalized``."""
        operation = self.definition.operation
        state = self.groups.get(normalized)
        if state is None:
            state = GroupState(normalized_values=normalized)
            if operation == OPERATION_MIN:
                state.value = sys.float_info.max
            self.groups[normalized] = state

        record_key = self.definition.record_key
        if operation == OPERATION_COUNT:
            state.value = float(state.count + 1)
            state.recent_raw_values.append(1.0)
        elif record_key and record_key in entry:
            value = _parse_float(_format_value(entry[record_key]))
            state.recent_raw_values.append(value)
            if operation == OPERATION_SUM:
                state.value += value
            elif operation == OPERATION_MAX:
                state.value = max(state.value, value)
            elif operation == OPERATION_MIN:
                state.value = min(state.value, value)
            elif operation == OPERATION_AVG:
                state.value = (state.value * state.count + value) / (state.count + 1)

        state.count += 1

    def evaluate(self, entries: Iterable[Mapping[str, Any]]) -> None:
        """Fold every entry that carries all group-by labels."""
        for entry in entries:
            try:
                normalized = self.filter_entry(entry)
            except ValueError:
                continue
            self.update_by_entry(entry, normalized)

    def get_metrics(self) -> list[dict[str, Any]]:
        """Report one metric per group and reset the recent raw values."""
        definition = self.definition
        metrics = []
        for group in self.groups.values():
            value_text = f"{group.value:f}"
            metrics.append(
                {
                    "name": definition.name,
                    "operation": definition.operation,
                    "record_key": definition.record_key,
                    "by": ",".join(definition.by),
                    "aggregate": group.normalized_values,
                    "value": value_text,
                    "recentRawValues": group.recent_raw_values,
                    "count": str(group.count),
                    definition.name + "_value": value_text,
                    "_".join(definition.by): group.normalized_values,
                }
            )
            group.recent_raw_values = []
        return metrics


@dataclass
class Aggregates:
    """An ordered collection of aggregates."""

    items: list[Aggregate] = field(default_factory=list)

    def __iter__(self) -> Iterator[Aggregate]:
        return iter(self.items)

    def __len__(self) -> int:
        return len(self.items)

    def __getitem__(self, index: int) -> Aggregate:
        return self.items[index]

    def evaluate(self, entries: Iterable[Mapping[str, Any]]) -> None:
        """Feed the entries to every aggregate."""
        entries = list(entries)
        for aggregate in self.items:
            aggregate.evaluate(entries)

    def get_metrics(self) -> list[dict[str, Any]]:
        """Collect the metrics of every aggregate."""
        return [metric for aggregate in self.items for metric in aggregate.get_metrics()]

    def add_aggregate(self, definition: Definition) -> Aggregate:
        """Append a new, empty aggregate for ``definition``."""
        aggregate = Aggregate(definition=definition)
        self.items.append(aggregate)
        return aggregate

    def remove_aggregate(self, by: Iterable[str]) -> Aggregate:
        """Remove the first aggregate grouped by ``by``; raise KeyError if none."""
        by = tuple(by)
        for index, aggregate in enumerate(self.items):
            if aggregate.definition.by == by:
                return self.items.pop(index)
        raise KeyError(f"can't find By = {list(by)}")


def aggregates_from_config(definitions_json: str) -> Aggregates:
    """Build aggregates from a JSON list of definitions.

    Unparsable configuration is logged and yields no aggregates.
    """
    aggregates = Aggregates()
    try:
        definitions = json.loads(definitions_json)
    except (TypeError, ValueError) as err:
        _log.error("error in unmarshalling aggregates: %s", err)
        return aggregates
    if definitions is None:
        return aggregates
    if not isinstance(definitions, list):
        _log.error("aggregates must be a list, got %r", definitions)
        return aggregates
    for item in definitions:
        aggregates.add_aggregate(Definition.from_mapping(item))
    return aggregates