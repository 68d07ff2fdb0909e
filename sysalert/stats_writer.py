"""Periodic collection of metrics snapshots and their delivery to outputs."""

from __future__ import annotations

import enum
import json
import math
import queue
import sys
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional, Protocol, TextIO

from .configuration import Configuration
from .logger import Logger, LogLevel
from .outputs import Priority

ONE_SECOND_IN_NS = 1_000_000_000

SYSCALL_SOURCE = "syscall"

BPF_ENGINE = "bpf"
KMOD_ENGINE = "kmod"
MODERN_BPF_ENGINE = "modern_bpf"
SOURCE_PLUGIN_ENGINE = "source_plugin"
NODRIVER_ENGINE = "nodriver"
GVISOR_ENGINE = "gvisor"

ALL_DRIVER_ENGINES = (
    BPF_ENGINE,
    KMOD_ENGINE,
    MODERN_BPF_ENGINE,
    SOURCE_PLUGIN_ENGINE,
    NODRIVER_ENGINE,
    GVISOR_ENGINE,
)

# Metrics flag bits understood by the capture engine.
STATS_KERNEL_COUNTERS = 1 << 0
STATS_LIBBPF_STATS = 1 << 1
STATS_RESOURCE_UTILIZATION = 1 << 2
STATS_STATE_COUNTERS = 1 << 3

METRICS_RULE = "sysalert internal: metrics snapshot"
METRICS_MESSAGE = "sysalert metrics snapshot"

_TICKER_MASK = 0xFFFF


class StatValueType(enum.Enum):
    """Type of the value held by a metric."""

    U64 = "u64"
    U32 = "u32"
    S64 = "s64"
    D = "d"


@dataclass(frozen=True)
class Stat:
    """One named metric as reported by the inspector."""

    name: str
    type: StatValueType
    value: Any


class _Inspector(Protocol):
    start_ts_epoch: int
    kernel_release: str
    boot_ts_epoch: int
    hostname: str
    num_cpus: int

    def check_current_engine(self, name: str) -> bool: ...

    def sinsp_stats(self, flags: int) -> Iterable[Stat]: ...

    def capture_stats(self, flags: int) -> Iterable[Stat]: ...


class _Outputs(Protocol):
    def handle_msg(
        self, ts: int, priority: Priority, msg: str, rule: str, output_fields: dict[str, Any]
    ) -> None: ...

    def outputs_queue_num_drops(self) -> int: ...


class _Ticker:
    """A 16-bit counter advanced by a background thread at a fixed interval."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._value = 0
        self._stop: Optional[threading.Event] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def value(self) -> int:
        return self._value

    def _run(self, interval: float, stop: threading.Event) -> None:
        while not stop.wait(interval):
            self._value = (self._value + 1) & _TICKER_MASK

    def start(self, interval_msec: int) -> None:
        with self._lock:
            self._stop_locked()
            if interval_msec == 0:
                return
            stop = threading.Event()
            thread = threading.Thread(
                target=self._run, args=(interval_msec / 1000.0, stop), name="stats-ticker", daemon=True
            )
            self._stop, self._thread = stop, thread
            thread.start()

    def stop(self) -> None:
        with self._lock:
            self._stop_locked()

    def _stop_locked(self) -> None:
        if self._stop is not None:
            self._stop.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join()
        self._stop = None
        self._thread = None


_TICKER = _Ticker()


def init_ticker(interval_msec: int) -> None:
    """(Re)start the ticker with a period in milliseconds; 0 disarms it."""
    if interval_msec < 0:
        raise ValueError(f"Could not set up periodic timer: invalid interval {interval_msec}")
    _TICKER.start(int(interval_msec))


def get_ticker() -> int:
    """Current ticker value; it only matters whether it changed."""
    return _TICKER.value


def _round1(value: float) -> float:
    """Round to one decimal, halves away from zero."""
    return math.copysign(math.floor(abs(value) * 10.0 + 0.5), value) / 10.0


@dataclass
class _StatsMessage:
    stop: bool = False
    ts: int = 0
    source: str = ""
    output_fields: dict[str, Any] = field(default_factory=dict)


class StatsWriter:
    """Writes metrics snapshots to the outputs and/or a JSON-lines file.

    Snapshots are handled by a worker thread; samples pushed before the
    ticker first advances are discarded.
    """

    def __init__(
        self,
        outputs: Optional[_Outputs],
        config: Configuration,
        *,
        version: str = "",
        logger: Optional[Logger] = None,
    ) -> None:
        self._config = config
        self._outputs: Optional[_Outputs] = None
        self.version = version
        self.logger = logger if logger is not None else Logger()
        self._initialized = False
        self._total_samples = 0
        self._file: Optional[TextIO] = None
        self._worker: Optional[threading.Thread] = None
        self._closed = False
        self._queue: queue.Queue[_StatsMessage] = queue.Queue(
            maxsize=config.outputs_queue_capacity
        )

        if config.metrics_enabled:
            self._outputs = outputs
            if config.metrics_output_file:
                self._file = open(config.metrics_output_file, "a", encoding="utf-8")
                self._initialized = True
            if config.metrics_stats_rule_enabled:
                self._initialized = True

        if self._initialized:
            first_tick = get_ticker()
            self._worker = threading.Thread(
                target=self._run, args=(first_tick,), name="stats-writer", daemon=True
            )
            self._worker.start()

    @property
    def total_samples(self) -> int:
        return self._total_samples

    def has_output(self) -> bool:
        """True if the writer has somewhere to send snapshots."""
        return self._initialized

    def _push(self, msg: _StatsMessage) -> None:
        try:
            self._queue.put_nowait(msg)
        except queue.Full:
            sys.stderr.write("Fatal error: Stats queue reached maximum capacity. Exiting.\n")
            raise SystemExit(1) from None

    def _run(self, first_tick: int) -> None:
        use_outputs = self._config.metrics_stats_rule_enabled
        use_file = self._file is not None
        last_tick = first_tick
        while True:
            msg = self._queue.get()
            if msg.stop:
                return
            tick = get_ticker()
            if tick == first_tick:
                continue
            if tick != last_tick:
                self._total_samples += 1
            last_tick = tick
            try:
                if use_outputs:
                    if self._outputs is None:
                        raise RuntimeError("no outputs configured")
                    self._outputs.handle_msg(
                        msg.ts,
                        Priority.INFORMATIONAL,
                        METRICS_MESSAGE,
                        METRICS_RULE,
                        msg.output_fields,
                    )
                if use_file:
                    assert self._file is not None
                    line = json.dumps(
                        {"sample": self._total_samples, "output_fields": msg.output_fields},
                        ensure_ascii=False,
                        separators=(",", ":"),
                        sort_keys=True,
                    )
                    self._file.write(line + "\n")
                    self._file.flush()
            except Exception as exc:
                self.logger.log(LogLevel.ERR, f"stats_writer (worker): {exc}\n")

    def close(self) -> None:
        """Stop the worker after it drains the queue, close the file and the ticker."""
        if self._closed or not self._initialized:
            self._closed = True
            return
        self._closed = True
        self._queue.put(_StatsMessage(stop=True))
        if self._worker is not None:
            self._worker.join()
        if self._file is not None:
            self._file.close()
            self._file = None
        _TICKER.stop()

    def __enter__(self) -> "StatsWriter":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class StatsCollector:
    """Samples an inspector once per ticker period and feeds a StatsWriter.

    Not thread-safe; use one collector per thread.
    """

    def __init__(self, writer: StatsWriter) -> None:
        self._writer = writer
        self._last_tick = 0
        self._last_now = 0
        self._last_n_evts = 0
        self._last_n_drops = 0
        self._last_num_evts = 0

    def collect(self, inspector: _Inspector, src: str, num_evts: int) -> None:
        """Take one sample for source ``src`` if the ticker moved since the last one."""
        if not self._writer.has_output():
            return
        tick = get_ticker()
        if tick == self._last_tick:
            return
        self._last_tick = tick

        now = time.time_ns()
        delta_ns = now - self._last_now if self._last_now != 0 else 0
        self._last_now = now
        delta_sec = delta_ns / ONE_SECOND_IN_NS

        output_fields: dict[str, Any] = {}
        self._wrapper_fields(output_fields, inspector, now, src, num_evts, delta_sec)
        self._additional_fields(output_fields, inspector, delta_sec, src)

        self._writer._push(
            _StatsMessage(ts=now, source=src, output_fields=output_fields)
        )

    def _wrapper_fields(
        self,
        output_fields: dict[str, Any],
        inspector: _Inspector,
        now: int,
        src: str,
        num_evts: int,
        delta_sec: float,
    ) -> None:
        writer = self._writer
        output_fields["evt.time"] = now
        output_fields["sysalert.version"] = writer.version
        output_fields["sysalert.start_ts"] = inspector.start_ts_epoch
        output_fields["sysalert.duration_sec"] = (
            now - inspector.start_ts_epoch
        ) // ONE_SECOND_IN_NS
        output_fields["sysalert.kernel_release"] = inspector.kernel_release
        output_fields["sysalert.host_boot_ts"] = inspector.boot_ts_epoch
        output_fields["sysalert.hostname"] = inspector.hostname
        output_fields["sysalert.host_num_cpus"] = inspector.num_cpus
        if writer._outputs is not None:
            output_fields["sysalert.outputs_queue_num_drops"] = (
                writer._outputs.outputs_queue_num_drops()
            )

        output_fields["evt.source"] = src
        engine = next(
            (name for name in ALL_DRIVER_ENGINES if inspector.check_current_engine(name)),
            None,
        )
        if engine is not None:
            output_fields["scap.engine_name"] = engine

        if self._last_num_evts != 0 and delta_sec > 0:
            output_fields["sysalert.evts_rate_sec"] = _round1(
                (num_evts - self._last_num_evts) / delta_sec
            )
        output_fields["sysalert.num_evts"] = num_evts
        output_fields["sysalert.num_evts_prev"] = self._last_num_evts
        self._last_num_evts = num_evts

    def _additional_fields(
        self,
        output_fields: dict[str, Any],
        inspector: _Inspector,
        delta_sec: float,
        src: str,
    ) -> None:
        config = self._writer._config
        include_empty = config.metrics_include_empty_values
        to_mb = config.metrics_convert_memory_to_mb
        flags = config.metrics_flags

        for stat in inspector.sinsp_stats(flags):
            if not stat.name:
                break
            metric = "sysalert." + stat.name
            if stat.type is StatValueType.U64:
                if stat.value == 0 and not include_empty:
                    continue
                if to_mb and stat.name == "container_memory_used":
                    output_fields[metric] = int(stat.value / 1024 / 1024)
                elif to_mb and stat.name.startswith("memory_"):
                    output_fields[metric] = int(stat.value / 1024)
                else:
                    output_fields[metric] = stat.value
            elif stat.type is StatValueType.U32:
                if stat.value == 0 and not include_empty:
                    continue
                if to_mb and stat.name.startswith("memory_"):
                    output_fields[metric] = int(stat.value / 1024)
                else:
                    output_fields[metric] = stat.value
            elif stat.type is StatValueType.D:
                if stat.value == 0 and not include_empty:
                    continue
                output_fields[metric] = stat.value

        if src != SYSCALL_SOURCE:
            return

        if not (
            inspector.check_current_engine(BPF_ENGINE)
            or inspector.check_current_engine(MODERN_BPF_ENGINE)
        ):
            flags &= ~STATS_LIBBPF_STATS

        snapshot = list(inspector.capture_stats(flags))
        if not snapshot:
            return

        n_evts_delta = 0
        n_drops_delta = 0
        for stat in snapshot:
            if not stat.name:
                break
            if stat.type is not StatValueType.U64:
                continue
            metric = "scap." + stat.name
            if stat.name == "n_evts":
                output_fields[metric] = stat.value
                output_fields["scap.n_evts_prev"] = self._last_n_evts
                n_evts_delta = stat.value - self._last_n_evts
                if n_evts_delta != 0 and delta_sec > 0:
                    output_fields["scap.evts_rate_sec"] = _round1(n_evts_delta / delta_sec)
                else:
                    output_fields["scap.evts_rate_sec"] = 0.0
                self._last_n_evts = stat.value
            elif stat.name == "n_drops":
                output_fields[metric] = stat.value
                output_fields["scap.n_drops_prev"] = self._last_n_drops
                n_drops_delta = stat.value - self._last_n_drops
                if n_drops_delta != 0 and delta_sec > 0:
                    output_fields["scap.evts_drop_rate_sec"] = _round1(
                        n_drops_delta / delta_sec
                    )
                else:
                    output_fields["scap.evts_drop_rate_sec"] = 0.0
                self._last_n_drops = stat.value
            if stat.value == 0 and not include_empty:
                continue
            output_fields[metric] = stat.value

        # Field order is not guaranteed, so the percentage comes last.
        if n_evts_delta > 0:
            output_fields["scap.n_drops_perc"] = (100.0 * n_drops_delta) / n_evts_delta
        else:
            output_fields["scap.n_drops_perc"] = 0.0