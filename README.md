# sysalert

Building blocks that carry security alerts from a detection engine to the
places people read them. The package has alert channels, a queue with a worker
thread that feeds the channels, monitoring for dropped syscall events,
periodic metrics snapshots, a small health and version web endpoint, and an
in-process service that streams alerts to subscribers.

The package uses only the standard library.

## Modules

- `sysalert.logger` provides `Logger` and `LogLevel`. `LogLevel` holds
  syslog-style severities from `EMERG` to `DEBUG`. `Logger.log` writes
  messages at or above the threshold to standard error, to syslog, or to both.
  The stderr timestamp is local `asctime` by default. It becomes ISO 8601 UTC
  after `set_time_format_iso_8601(True)`. `set_level` accepts `emergency`,
  `alert`, `critical`, `error`, `warning`, `notice`, `info` or `debug`, and
  raises `ValueError` for any other name.
- `sysalert.outputs` provides the alert channels:
  - `FileOutput` appends lines to the file named by the `filename` option.
  - `StdoutOutput` writes to standard output.
  - `ProgramOutput` pipes each alert into the shell command given by the
    `program` option.
  - `SyslogOutput` writes to syslog.
  - `HttpOutput` POSTs to the `url` option. It reads the TLS options
    `insecure`, `mtls`, `client_cert`, `client_key`, `ca_cert`, `ca_bundle`
    and `ca_path`. It also reads `echo`, `user_agent`, `compress_uploads` and
    `keep_alive`.

  `FileOutput` and `ProgramOutput` close their file or pipe after every
  message unless `keep_alive` is `"true"`. `create_output(config)` builds a
  channel from an `OutputConfig` by name. It raises `OutputError` for an
  unknown name. The `program` and `syslog` channels are not available on
  Windows. `Priority`, `format_priority` and `parse_priority` handle alert
  priorities.
- `sysalert.dispatcher` provides `OutputDispatcher`. It initialises one
  channel per `OutputConfig`. A channel that fails to initialise is logged and
  skipped. `handle_msg` formats a message as JSON or as text and queues it.
  A worker thread delivers each queued message to every channel. A watchdog
  logs any channel that blocks for longer than `timeout_ms`.
  `cleanup_outputs` and `reopen_outputs` pass those requests on to the
  channels. With `queue_capacity` greater than zero the queue is bounded.
  Messages that do not fit are dropped and counted in
  `outputs_queue_num_drops()`. `close()`, or leaving a `with` block, drains
  the queue and stops the worker.
- `sysalert.configuration` provides the `Configuration` dataclass with all
  settings and defaults, plus `EngineKind` and the per-engine dataclasses
  (`KmodConfig`, `EbpfConfig`, `ModernEbpfConfig`, `ReplayConfig`,
  `GvisorConfig`). `decode_plugin_config(node, plugins_dir)` turns one
  plugin mapping into a `PluginConfig`:
  - A relative `library_path` is placed under `plugins_dir`.
  - A mapping `init_config` is stored as a JSON string.
  - `open_params` is trimmed.

  Malformed entries raise `ConfigurationError`.
- `sysalert.event_drops` provides `SyscallEventDropManager`. Call
  `process_event(ts)` for every event. At most once per second it reads a
  `CaptureStats` snapshot from the callable you supply. It compares the drop
  ratio against the threshold, and runs the configured `DropAction`s:
  - `DISREGARD` does nothing.
  - `LOG` writes a debug log line.
  - `ALERT` sends a message through `handle_msg`.
  - `EXIT` makes `process_event` return `False`.

  A `TokenBucket` limits how often the actions run. `print_stats` writes a
  summary.
- `sysalert.webserver` provides `WebServer` and `VersionsInfo`. `WebServer`
  serves `{"status": "ok"}` on the health endpoint you name. It serves
  `VersionsInfo.as_json()` on `/versions`, optionally over TLS, using a
  fixed-size thread pool. Starting a server that is already running raises
  `WebServerError`, and so does a failure to bind or to load the certificate.
- `sysalert.stats_writer` provides `StatsWriter` and `StatsCollector`.
  `init_ticker(interval_msec)` starts a background ticker and `get_ticker()`
  reads it. `StatsCollector.collect` takes one snapshot per tick from an
  inspector object you supply. A snapshot holds host and engine info, event
  rates and `Stat` values. `StatsWriter` sends each snapshot as a message
  through the outputs, appends it as a JSON line to `metrics_output_file`, or
  does both, depending on the `Configuration`.
- `sysalert.grpc_outputs` provides `GrpcOutput`, `ResponseQueue`,
  `OutputsService`, `RequestContext` and `StreamContext`. `GrpcOutput`
  converts each alert into an `OutputResponse` and pushes it onto a
  `ResponseQueue`. `OutputsService.get` and `OutputsService.sub` pop
  responses for a stream context, and `shutdown` stops the service.

## Example

```python
from sysalert.dispatcher import OutputDispatcher
from sysalert.outputs import OutputConfig, Priority

with OutputDispatcher(
    [OutputConfig(name="stdout")],
    json_output=True,
    hostname="host-1",
) as dispatcher:
    dispatcher.handle_msg(
        1_700_000_000_000_000_000,
        Priority.WARNING,
        "Something happened",
        "Example rule",
        {"user": "root"},
    )
```

Health and version endpoints:

```python
from sysalert.webserver import VersionsInfo, WebServer

with WebServer() as server:
    server.start(VersionsInfo(falco_version="1.0.0"), 1, 0, "127.0.0.1",
                 "/healthz", "", False)
    print(server.port)  # port actually bound
```

## What it does not do

- It has no command-line program and no main loop.
- It does not load configuration files and does not apply `key=value`
  overrides. `Configuration` is a plain dataclass that you fill in yourself.
- It has no rules engine, so it produces no alerts of its own.
  `OutputDispatcher` formats only the messages passed to `handle_msg`.
- It does not capture events. Capture statistics, engine names and metrics
  come from the callables and inspector objects you pass in.
- `sysalert.grpc_outputs` has no network transport. `OutputsService` is an
  in-process service over a queue, not a listening RPC server.

## Tests

```
pip install -e .[test]
pytest
```