import json

import pytest

from flowlogs2metrics.extract import ExtractNone
from flowlogs2metrics.ingest import new_ingest_file
from flowlogs2metrics.pipeline import get_writer, new_pipeline
from flowlogs2metrics.transform import get_transformers
from flowlogs2metrics.write import WriteNone, WriteStdout

FLOWS = [
    {"Bytes": 20801, "DstAddr": "10.130.2.1", "DstPort": 36936, "Packets": 401,
     "SrcAddr": "10.130.2.13", "SrcPort": 3100},
    {"Bytes": 20802, "DstAddr": "10.130.2.2", "DstPort": 36936, "Packets": 402,
     "SrcAddr": "10.130.2.13", "SrcPort": 3100},
]

TRANSFORM = json.dumps([{"type": "generic", "generic": {"rules": [
    {"input": "Bytes", "output": "fl2m_bytes"},
    {"input": "DstAddr", "output": "fl2m_dstAddr"},
    {"input": "SrcAddr", "output": "fl2m_srcAddr"},
]}}])


def test_simple_pipeline(tmp_path):
    path = tmp_path / "flows.json"
    path.write_text("\n".join(json.dumps(flow) for flow in FLOWS) + "\n")
    decoded_batches = []

    def decoder(lines):
        decoded = [json.loads(line) for line in lines]
        decoded_batches.append(decoded)
        return decoded

    encoded = []
    pipeline = new_pipeline(
        new_ingest_file(str(path)), get_transformers(TRANSFORM), WriteNone(),
        ExtractNone(), decoder, encoded.append,
    )
    pipeline.run()
    assert len(pipeline.ingester.prev_records) == len(decoded_batches[0])
    assert len(pipeline.ingester.prev_records) == len(pipeline.writer.prev_records)
    assert pipeline.writer.prev_records[0] == {
        "fl2m_bytes": 20801, "fl2m_dstAddr": "10.130.2.1", "fl2m_srcAddr": "10.130.2.13"}
    assert encoded == [pipeline.writer.prev_records]
    assert pipeline.is_running is False


def test_readiness_follows_running_state():
    seen = []

    class Ingester:
        def ingest(self, process):
            seen.append(pipeline.is_running)
            pipeline.is_ready()()
            pipeline.is_alive()()

    pipeline = new_pipeline(Ingester())
    with pytest.raises(RuntimeError, match="pipeline is not running"):
        pipeline.is_ready()()
    pipeline.run()
    assert seen == [True]
    with pytest.raises(RuntimeError):
        pipeline.is_alive()()


def test_entries_without_decoder_must_be_mappings():
    pipeline = new_pipeline(None)
    with pytest.raises(TypeError):
        pipeline.process(["raw line"])


def test_get_writer():
    assert isinstance(get_writer("none"), WriteNone)
    assert isinstance(get_writer("stdout"), WriteStdout)
    with pytest.raises(ValueError):
        get_writer("bogus")