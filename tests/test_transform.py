import json

import pytest

from flowlogs2metrics.transform import (
    Generic,
    GenericRule,
    Transformer,
    TransformNone,
    execute_transforms,
    get_transformers,
)
from flowlogs2metrics.transform_network import Network

_FLOW_FIELDS = (
    ("srcIP", "10.0.0.1"), ("8888IP", "8.8.8.8"), ("emptyIP", ""),
    ("level", "error"), ("srcPort", 11777), ("protocol", "tcp"),
    ("protocol_num", 6), ("value", "7"), ("message", "test message"),
)
_DESTINATION_FIELDS = (("dstIP", "20.0.0.2"), ("dstPort", 22))


@pytest.fixture
def flow():
    return dict(_FLOW_FIELDS + _DESTINATION_FIELDS)


def _generic_stage(*pairs):
    return {
        "type": "generic",
        "generic": {"rules": [dict(input=src, output=dst) for src, dst in pairs]},
    }


def test_generic_from_config_renames_fields(flow):
    stage = _generic_stage(
        ("srcIP", "SrcAddr"), ("dstIP", "DstAddr"), ("dstPort", "DstPort"),
        ("srcPort", "SrcPort"), ("protocol", "Protocol"), ("srcIP", "srcIP"),
    )
    transformer = get_transformers(json.dumps([stage]))[0]
    assert isinstance(transformer, Generic)
    assert len(transformer.rules) == 6
    expected = dict(SrcAddr="10.0.0.1", srcIP="10.0.0.1", SrcPort=11777,
                    Protocol="tcp", DstAddr="20.0.0.2", DstPort=22)
    assert transformer.transform(flow) == expected


def test_chained_stages_apply_in_order(flow):
    stages = [
        _generic_stage(
            ("srcIP", "SrcAddr"), ("dstIP", "DstAddr"), ("dstPort", "DstPort"),
            ("srcPort", "SrcPort"), ("protocol", "Protocol"),
        ),
        {"type": "none"},
        _generic_stage(
            ("SrcAddr", "SrcAddr2"), ("DstAddr", "DstAddr2"), ("DstPort", "DstPort2"),
            ("SrcPort", "SrcPort2"), ("Protocol", "Protocol2"),
        ),
    ]
    transformers = get_transformers(json.dumps(stages))
    assert len(transformers) == 3
    expected = dict(SrcAddr2="10.0.0.1", SrcPort2=11777, Protocol2="tcp",
                    DstAddr2="20.0.0.2", DstPort2=22)
    assert execute_transforms(transformers, flow) == expected


def test_generic_missing_input_gives_none():
    generic = Generic([GenericRule("absent", "out")])
    assert generic.transform({"x": 1}) == {"out": None}


def test_transform_none_returns_same_entry():
    entry = {"a": 1}
    assert TransformNone().transform(entry) is entry


def test_network_from_config(flow):
    stage = {"type": "network", "network": {"rules": [
        {"input": "srcIP", "output": "subnetSrcIP", "type": "add_subnet", "parameters": "/24"}
    ]}}
    transformer = get_transformers(json.dumps([stage]))[0]
    assert isinstance(transformer, Network)
    assert isinstance(transformer, Transformer)
    assert transformer.transform(flow)["subnetSrcIP"] == "10.0.0.0/24"


def test_null_definitions_yield_no_transformers():
    assert get_transformers("null") == []


def test_case_insensitive_keys():
    stage = {"Type": "generic", "Generic": {"Rules": [{"Input": "a", "Output": "b"}]}}
    assert execute_transforms(get_transformers(json.dumps([stage])), {"a": 5}) == {"b": 5}


@pytest.mark.parametrize("text", ["", "{not json", json.dumps({"type": "none"})])
def test_invalid_configuration_raises(text):
    with pytest.raises(ValueError):
        get_transformers(text)


def test_unknown_type_raises():
    with pytest.raises(ValueError, match="unknown transform type"):
        get_transformers(json.dumps([{"type": "mystery"}]))