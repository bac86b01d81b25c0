# flowlogs2metrics

A small, self-contained library for processing network flow logs. Records
are read from a source, decoded into dictionaries, passed through a chain
of transforms, written to a sink, and rolled up into aggregate metrics.

The package needs nothing beyond the standard library.

| Stage     | What the package provides                                      |
|-----------|----------------------------------------------------------------|
| ingest    | `IngestFile` (read once or replayed on a timer), `IngestKafka` (batches messages from a reader you supply) |
| decode    | any callable you pass to the pipeline; none are built in       |
| transform | `TransformNone`, `Generic` (rename fields), `Network` (subnets, conditions, services, connection tracking, Kubernetes metadata) |
| write     | `WriteNone`, `WriteStdout`, `LokiWriter`                        |
| extract   | `ExtractNone`, `ExtractAggregate` (sum, avg, min, max, count by label set) |
| encode    | any callable you pass to the pipeline; none are built in       |

## Transforming records

`flowlogs2metrics.transform.get_transformers` takes a JSON list of
transform definitions (keys are matched case-insensitively):

```python
from flowlogs2metrics.transform import get_transformers, execute_transforms

transformers = get_transformers("""
[
  {"type": "generic",
   "generic": {"rules": [
     {"input": "srcIP", "output": "SrcAddr"},
     {"input": "dstIP", "output": "DstAddr"}
   ]}},
  {"type": "network",
   "network": {"rules": [
     {"input": "SrcAddr", "output": "SrcSubnet",
      "type": "add_subnet", "parameters": "/24"}
   ]}}
]
""")

record = {"srcIP": "10.0.0.1", "dstIP": "20.0.0.2"}
print(execute_transforms(transformers, record))
# {'SrcAddr': '10.0.0.1', 'DstAddr': '20.0.0.2', 'SrcSubnet': '10.0.0.0/24'}
```

A `generic` transform builds a new record holding only the fields its
rules name. A `network` transform adds fields to the record it is given.
An unknown transform type raises `ValueError`.

### Network rules

Rules of `flowlogs2metrics.transform_network.Network` run in order, so a
rule may use a field an earlier rule added:

- `add_subnet` — the input IP joined with `parameters` (e.g. `/16`) as a
  network address; unparsable values are logged and skipped.
- `add_if` — the input value followed by `parameters` (e.g. `<10`) is
  evaluated by `evaluate_condition`; when true, the value is copied to
  `output` and `<output>_Evaluate` is set to `True`.
- `add_regex_if` — when the input matches the regular expression in
  `parameters`, the value is copied to `output` and `<output>_Matched`
  is set to `True`.
- `add_service` — looks up the service name for the input port and the
  protocol held in the field named by `parameters` (a name such as `tcp`
  or a protocol number).
- `conn_tracking` — the input is a template such as
  `"{{.srcIP}},{{.srcPort}},{{.dstIP}}"` rendered by `render_template`;
  the first time a flow is seen, `output` is set to `parameters` (or
  `True` if empty).
- `add_kubernetes` — adds `<output>_Namespace`, `_Name`, `_Type`,
  `_OwnerName`, `_OwnerType` and, when known, `_HostIP`; with
  `parameters` set, the object's labels are added as
  `<parameters>_<label>`.
- `add_location` — logged and skipped; see below.

An unknown rule type raises `ValueError` when the record is transformed.

## Aggregating records

```python
from flowlogs2metrics.aggregate import aggregates_from_config

aggregates = aggregates_from_config("""
[{"Name": "bytes_by_pair", "By": ["dstIP", "srcIP"],
  "Operation": "sum", "RecordKey": "bytes"}]
""")

aggregates.evaluate([
    {"srcIP": "10.0.0.1", "dstIP": "20.0.0.2", "bytes": 100},
    {"srcIP": "10.0.0.1", "dstIP": "20.0.0.2", "bytes": 50},
])
for metric in aggregates.get_metrics():
    print(metric["aggregate"], metric["value"], metric["count"])
# 20.0.0.2,10.0.0.1 150.000000 2
```

Records missing any of the `By` fields are skipped. Group keys join the
label values ordered by label name. Each call to `get_metrics` reports
every group and clears the raw values gathered since the previous report.
Unparsable configuration is logged and yields no aggregates.
`Aggregates.remove_aggregate(by)` raises `KeyError` when nothing matches.

`flowlogs2metrics.extract.get_extractor("aggregates", definitions_json)`
wraps this as a pipeline stage; `get_extractor("none")` passes records
through.

## Connection tracking

```python
from flowlogs2metrics.connection_tracking import ConnectionTracking

tracker = ConnectionTracking(expiry_time=120)
tracker.add_flow("10.0.0.1,11777,20.0.0.2,22,tcp")   # True: first sighting
tracker.add_flow("10.0.0.1,11777,20.0.0.2,22,tcp")   # False: already known
tracker.flowlogs_count("10.0.0.1,11777,20.0.0.2,22,tcp")  # 2
```

Flows not updated for `expiry_time` seconds are dropped by
`cleanup_expired_entries`, or in the background after
`start_cleanup_loop` (or `init_connection_tracking`); call `stop` to end
the loop.

## Running a whole pipeline

The file ingester hands the pipeline raw text lines, so supply a decoder
that turns them into dictionaries:

```python
import json

from flowlogs2metrics.ingest import new_ingest_file
from flowlogs2metrics.transform import get_transformers
from flowlogs2metrics.extract import get_extractor
from flowlogs2metrics.pipeline import new_pipeline, get_writer

pipeline = new_pipeline(
    ingester=new_ingest_file("flows.json", "file"),
    transformers=get_transformers('[{"type": "none"}]'),
    writer=get_writer("stdout"),
    extractor=get_extractor("none"),
    decoder=lambda lines: [json.loads(line) for line in lines],
    encoder=None,
)
pipeline.run()
```

Without a decoder, entries must already be dictionaries, otherwise
`TypeError` is raised. With ingest type `file` the file is read once,
sent down the pipeline and `run` returns. With `file_loop` the same lines
are replayed every 10 seconds until an exit is signalled:
`setup_elegant_exit` in `flowlogs2metrics.exit` turns SIGINT and SIGTERM
into `trigger_exit`, which sets every event registered with
`register_exit_event`. The ingesters and the Loki writer created by the
`new_*` functions register their events themselves.

`pipeline.is_ready()` and `pipeline.is_alive()` return checks that raise
`RuntimeError` while the pipeline is not running.

## Reading from Kafka

`flowlogs2metrics.ingest_kafka.new_ingest_kafka(params_json,
reader_factory)` parses the settings (`brokers`, `topic`, `groupId`,
`startOffset`, `groupBalancers`, `batchReadTimeout` in milliseconds,
default 100) and calls `reader_factory` with the resulting
`ReaderConfig`. The reader it returns must offer `read_message()`,
returning bytes or text. Messages are collected and passed on as one
batch once no message has arrived for the read timeout. Records can also
be queued directly with `IngestKafka.feed`.

## Writing to Loki

`flowlogs2metrics.write_loki.new_write_loki(loki_json, client=None)`
overlays the JSON settings on the defaults of `WriteLokiConfig` (URL,
tenant, batch settings, backoff, static and dynamic labels, ignore list,
timestamp field and scale) and, unless a client is given, pushes over
HTTP with `HttpLokiClient`, retrying with exponential backoff. Records
are queued by `write` and sent from a background thread; `close` stops
it.

Label names are sanitised by replacing `/`, `.` and `-` with `_`; labels
still invalid are dropped. Labels and ignored fields are removed from the
line that is sent. Timestamps are read from the configured field
(default `TimeReceived`) and scaled by `timestampScale` (for example `1s`
or `1ms`); when the field is missing, zero or not numeric, the local time
is used.

## What the package does not do

- There is no command-line program or configuration-file loader; stages
  are built in code as shown above.
- There is no NetFlow/IPFIX collector and no Kafka client: Kafka
  ingestion needs a reader supplied by the caller.
- No decoders or encoders are built in (no JSON, AWS or Prometheus
  stages); pass callables to `new_pipeline` instead.
- There is no IP geolocation database: `add_location` rules only log
  that no location is available.
- Kubernetes metadata is not fetched from a cluster. `KubeData` looks up
  IPs in informers supplied by the caller (objects with `by_index`, and a
  replica set store with `get_by_key`); `node_ips`, `pod_ips` and
  `service_ips` give the IPs to index by. Pass it to
  `new_transform_network`; an `add_kubernetes` rule without it raises
  `RuntimeError`, so such rules cannot be set up through
  `get_transformers`.