import json

import pytest

from flowlogs2metrics.extract import (
    ExtractAggregate,
    ExtractNone,
    get_extractor,
    new_extract_aggregate,
)

AVG_CONFIG = json.dumps(
    [{"Name": "avg_value", "By": ["srcIP"], "Operation": "avg", "RecordKey": "value"}]
)


def entries():
    return [
        {"srcIP": "10.0.0.1", "value": "7"},
        {"srcIP": "10.0.0.1", "value": "7"},
        {"dstIP": "20.0.0.2", "value": "7"},
    ]


def test_extract_none_passes_through():
    data = entries()
    assert ExtractNone().extract(data) is data


def test_get_extractor_none():
    extractor = get_extractor("none")
    data = entries()
    assert extractor.extract(data) == entries()


def test_get_extractor_unknown_raises():
    with pytest.raises(ValueError, match="specify `none`"):
        get_extractor("bogus")


def test_extract_aggregate_reports_metrics():
    extractor = get_extractor("aggregates", AVG_CONFIG)
    metrics = extractor.extract(entries())
    assert len(metrics) == 1
    assert metrics[0]["name"] == "avg_value"
    assert metrics[0]["aggregate"] == "10.0.0.1"
    assert float(metrics[0]["value"]) == 7.0
    assert metrics[0]["count"] == str(2)


def test_extract_aggregate_accumulates_between_calls():
    extractor = new_extract_aggregate(AVG_CONFIG)
    extractor.extract(entries())
    metrics = extractor.extract(entries())
    assert metrics[0]["count"] == str(4)
    assert metrics[0]["recentRawValues"] == [7.0, 7.0]


def test_extract_aggregate_invalid_config_yields_nothing():
    extractor = new_extract_aggregate("not json")
    assert extractor.extract(entries()) == []
    assert len(extractor.aggregates) == 0


def test_extract_aggregate_instance_holds_aggregates():
    extractor = new_extract_aggregate(AVG_CONFIG)
    assert isinstance(extractor, ExtractAggregate)
    assert extractor.aggregates[0].definition.name == "avg_value"