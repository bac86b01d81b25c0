import json

import pytest

from flowlogs2metrics.aggregate import (
    Aggregate,
    Aggregates,
    Definition,
    aggregates_from_config,
    normalized_values,
)


def ingest_mock_entry(missing_key: bool) -> dict:
    entry = {
        "srcIP": "10.0.0.1",
        "8888IP": "8.8.8.8",
        "emptyIP": "",
        "level": "error",
        "srcPort": 11777,
        "protocol": "tcp",
        "protocol_num": 6,
        "value": "7",
        "message": "test message",
    }
    if not missing_key:
        entry["dstIP"] = "20.0.0.2"
        entry["dstPort"] = 22
    return entry


def mock_aggregate() -> Aggregate:
    return Aggregate(
        definition=Definition(
            name="Avg by src and dst IP's",
            by=("dstIP", "srcIP"),
            operation="avg",
            record_key="value",
        )
    )


def mock_labels(reverse_order: bool) -> dict:
    if reverse_order:
        return {"srcIP": "10.0.0.1", "dstIP": "20.0.0.2"}
    return {"dstIP": "20.0.0.2", "srcIP": "10.0.0.1"}


def test_normalized_values():
    expected = "20.0.0.2,10.0.0.1"
    assert normalized_values(mock_labels(False)) == expected
    assert normalized_values(mock_labels(True)) == expected


def test_labels_from_entry():
    aggregate = Aggregate(definition=Definition(by=("dstIP", "srcIP"), operation="count"))
    labels, all_found = aggregate.labels_from_entry(ingest_mock_entry(False))
    assert all_found is True
    assert labels == mock_labels(False)


def test_filter_entry():
    aggregate = mock_aggregate()
    assert aggregate.filter_entry(ingest_mock_entry(False)) == "20.0.0.2,10.0.0.1"
    with pytest.raises(ValueError, match="missing keys in entry"):
        aggregate.filter_entry(ingest_mock_entry(True))


def test_evaluate():
    aggregate = mock_aggregate()
    entry1 = ingest_mock_entry(False)
    entries = [entry1, ingest_mock_entry(False), ingest_mock_entry(True)]
    labels, _ = aggregate.labels_from_entry(entry1)
    normalized = normalized_values(labels)

    aggregate.evaluate(entries)

    assert aggregate.groups[normalized].count == 2
    assert aggregate.groups[normalized].value == 7.0


def test_get_metrics():
    aggregate = mock_aggregate()
    entries = [ingest_mock_entry(False), ingest_mock_entry(False), ingest_mock_entry(True)]
    aggregate.evaluate(entries)
    metrics = aggregate.get_metrics()

    assert len(metrics) == 1
    assert metrics[0]["name"] == aggregate.definition.name
    assert float(metrics[0]["value"]) == 7.0
    assert metrics[0]["count"] == "2"
    assert metrics[0]["by"] == "dstIP,srcIP"
    assert metrics[0]["dstIP_srcIP"] == "20.0.0.2,10.0.0.1"
    assert metrics[0]["recentRawValues"] == [7.0, 7.0]


def test_get_metrics_resets_recent_raw_values():
    aggregate = mock_aggregate()
    aggregate.evaluate([ingest_mock_entry(False)])
    aggregate.get_metrics()
    metrics = aggregate.get_metrics()
    assert metrics[0]["recentRawValues"] == []
    assert metrics[0]["count"] == "1"


@pytest.mark.parametrize(
    "operation, expected",
    [("sum", 14.0), ("max", 7.0), ("min", 7.0), ("avg", 7.0), ("count", 2.0)],
)
def test_operations(operation, expected):
    aggregate = Aggregate(
        definition=Definition(name="n", by=("srcIP",), operation=operation, record_key="value")
    )
    aggregate.evaluate([ingest_mock_entry(False), ingest_mock_entry(True)])
    assert aggregate.groups["10.0.0.1"].value == expected


def test_new_aggregates_from_config():
    config = [
        {
            "Name": "Avg by src and dst IP's",
            "By": ["dstIP", "srcIP"],
            "Operation": "avg",
            "RecordKey": "value",
        }
    ]
    aggregates = aggregates_from_config(json.dumps(config))
    assert aggregates[0].definition == mock_aggregate().definition


def test_aggregates_from_invalid_config_is_empty():
    assert len(aggregates_from_config("not json")) == 0


def test_add_and_remove_aggregate():
    aggregates = Aggregates()
    aggregates.add_aggregate(Definition(name="a", by=("srcIP",)))
    aggregates.add_aggregate(Definition(name="b", by=("dstIP",)))
    removed = aggregates.remove_aggregate(["srcIP"])
    assert removed.definition.name == "a"
    assert [a.definition.name for a in aggregates] == ["b"]
    with pytest.raises(KeyError, match="can't find By"):
        aggregates.remove_aggregate(["nope"])


def test_aggregates_evaluate_and_metrics():
    aggregates = Aggregates()
    aggregates.add_aggregate(mock_aggregate().definition)
    aggregates.add_aggregate(Definition(name="count", by=("srcIP",), operation="count"))
    aggregates.evaluate([ingest_mock_entry(False), ingest_mock_entry(True)])
    metrics = aggregates.get_metrics()
    assert [m["name"] for m in metrics] == ["Avg by src and dst IP's", "count"]
    assert metrics[1]["count"] == "2"