# egressnode

`egressnode` is the control plane of a media egress node. It decides whether
the node can take on a new recording or streaming request, keeps track of the
CPU and memory each running egress uses, launches and supervises the handler
processes that do the media work, and gathers their metrics into one
Prometheus text exposition.

It requires Python 3.11 or later and depends only on PyYAML.

## Modules

| Module | Purpose |
| --- | --- |
| `egressnode.types` | `RequestType`, `SourceType`, `EgressType`, `MimeType`, `Profile`, `OutputType` and `FileExtension` enums, default codecs per output type, codec compatibility tables, and the helpers `get_output_type_compatible_with_codecs`, `is_output_type_compatible_with_codecs` and `get_map_intersection`. |
| `egressnode.gstlog` | Interpretation of media pipeline log lines and bus messages: `parse_debug_info`, `should_ignore`, `format_gst_log`, `stream_id_from_create_stream`, `classify_error` (returning an `ErrorAction`), and `get_segment_params`, `get_image_information` and `get_first_sample_start_date` for message structures given as mappings. Malformed input raises `PipelineError`. |
| `egressnode.metrics` | `parse_metric_families` and `render_metric_families` for the Prometheus text format, `apply_default_label` and `deserialize_metrics` for labelling handler metrics with their `egress_id`, and `MetricsService`, which merges the metrics of live handlers with those stored from finished ones. |
| `egressnode.handler_metrics` | `HandlerMonitor`: upload counters, an upload latency histogram, backup-storage write counters and channel-size gauges for one handler, read out with `collect()`. |
| `egressnode.monitor` | `Monitor`: admission control from a `CPUCostConfig`, memory limits and an audio client limit, plus per-process CPU and memory tracking that asks the service to kill the worst offender when the node is overloaded. |
| `egressnode.process` | `ProcessManager` and `Process`: launching handler processes, waiting for them to report ready, aborting, killing and forgetting them. Also `EgressInfo`, `EgressStatus` and `EgressNotFoundError`. |
| `egressnode.debug` | `DebugService`: answers `/gst_pipeline/<egress_id>` and `/pprof/...` requests, and can serve them over HTTP with `start_debug_handlers(port)`. |
| `egressnode.server` | `Server` and `ServiceConfig`: answering start requests, affinity queries, status queries and handler callbacks, and draining on shutdown. |

## Choosing an output type

```python
from egressnode.types import MimeType, OutputType, get_output_type_compatible_with_codecs

get_output_type_compatible_with_codecs(
    [OutputType.OGG, OutputType.MP4], {MimeType.AAC}, {MimeType.H264}
)  # OutputType.MP4
```

`get_output_type_compatible_with_codecs` returns the first output type that
can carry at least one of the audio codecs and at least one of the video
codecs, or `OutputType.UNKNOWN_FILE` when none can. `None` for a codec set
skips that check; an empty set matches nothing. `get_map_intersection(a, b)`
returns, as a set, the keys of `a` that are present (and truthy, if `b` is a
mapping) in `b`.

## Admission and load

```python
from egressnode.monitor import CPUCostConfig, EgressRequest, Monitor
from egressnode.types import RequestType

monitor = Monitor("node-1", "cluster-1", CPUCostConfig(), service, num_cpu=8,
                  pulse_clients=lambda: 0)
monitor.accept_request(EgressRequest("EG_1", RequestType.TRACK))
```

`service` is any object with `is_idle()`, `is_disabled()`, `is_terminating()`
and `kill_process(egress_id, err)`. Construction raises `ValueError` if the
node has fewer CPUs than the cheapest request type needs.

`can_accept_request` answers without side effects. `accept_request` reserves
the request's cost for 15 seconds and raises `EgressAlreadyExistsError` or
`NotEnoughCPUError` when it cannot be taken. Room composite and web requests
also need room for four more audio clients under `max_pulse_clients`; without
a `pulse_clients` callable they are always refused. `update_pid` attaches the
handler's process id, `update_egress_stats(ProcStats(...))` feeds CPU and
memory samples in, and `egress_ended` returns average CPU, peak CPU and peak
memory. Sustained high load kills the heaviest handler with
`CPUExhaustedError`; exceeding `max_memory` kills one with `OOMError`.
`collect()` returns the node's gauges as metric families.

## Running the service

`Server(conf, io_client, monitor, process_manager, validator)` takes:

- a `ServiceConfig` (node and cluster ids, a temporary directory, ports for
  the debug, Prometheus and template HTTP servers, where 0 disables each, the
  handler command and a dict of extra settings passed to handlers);
- an I/O client with `create_egress(info)`, `update_egress(info)`,
  `is_healthy()` and `drain()`;
- a `Monitor`;
- a `ProcessManager(client_factory)`, where `client_factory(ipc_dir)` returns
  a handler client with `get_metrics()`, `get_pipeline_dot()` and
  `get_pprof(profile_name, timeout, debug)`;
- a validator called as `validator(conf, req)` that returns an `EgressInfo`
  or raises.

`start_egress(req)` admits the request, validates it, and runs
`<handler_command> run-handler --config <yaml> --request <json>` in a new
session. The handler must call back through `handler_ready(egress_id)` within
10 seconds, or it is killed and `EgressNotFoundError` is raised. Handlers
report through `handler_update(info)`, which shuts the node down on an
internal error code (500), and `handler_finished(egress_id, info, metrics)`.
`start_egress_affinity(req)` returns -1, 0.5 or 1; `list_active_egress()`
lists running egress ids; `status()` returns JSON with `CpuLoad` and each
active request. `run()` blocks until `shutdown(terminating, kill)` is called,
then waits for active requests to finish and drains the I/O client.
`start_templates_server(directory)` serves a directory on localhost.

## What this package does not do

- It has no command-line program; `Server` is embedded by the caller.
- It does not carry requests over any network bus or RPC transport: the
  caller delivers start requests and handler callbacks by calling `Server`
  methods, and supplies the I/O client and the handler client factory.
- It does not contain the handler itself: no media pipeline, no encoding, no
  uploads to storage. `egressnode.gstlog` only interprets the messages such a
  pipeline produces.
- Request validation is left to the `validator` the caller passes in.
- The built-in profiler of `DebugService` knows a single profile, `threads`,
  a dump of the service's thread stacks.