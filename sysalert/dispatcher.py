"""Queue-backed fan-out of alerts to every configured output."""

from __future__ import annotations

import enum
import json
import queue
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional

from .logger import Logger, LogLevel
from .outputs import (
    Message,
    Output,
    OutputConfig,
    OutputError,
    Priority,
    create_output,
    format_priority,
)

INTERNAL_SOURCE = "internal"

_NS_PER_SECOND = 1_000_000_000


class ControlMessageType(enum.IntEnum):
    """Kinds of messages travelling through the dispatcher queue."""

    STOP = 0
    OUTPUT = 1
    CLEANUP = 2
    REOPEN = 3


@dataclass(frozen=True)
class _ControlMessage:
    type: ControlMessageType
    message: Optional[Message] = None


class _Watchdog:
    """Calls a callback with a payload when a deadline passes uncancelled."""

    def __init__(self, callback: Callable[[Any], None]) -> None:
        self._callback = callback
        self._cond = threading.Condition()
        self._deadline: Optional[float] = None
        self._payload: Any = None
        self._stopped = False
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()

    def set_timeout(self, seconds: float, payload: Any) -> None:
        with self._cond:
            self._deadline = time.monotonic() + seconds
            self._payload = payload
            self._cond.notify()

    def cancel_timeout(self) -> None:
        with self._cond:
            self._deadline = None
            self._cond.notify()

    def stop(self) -> None:
        with self._cond:
            self._stopped = True
            self._cond.notify()
        self._thread.join()

    def _run(self) -> None:
        while True:
            with self._cond:
                while not self._stopped and (
                    self._deadline is None or time.monotonic() < self._deadline
                ):
                    timeout = (
                        None
                        if self._deadline is None
                        else max(0.0, self._deadline - time.monotonic())
                    )
                    self._cond.wait(timeout)
                if self._stopped:
                    return
                payload = self._payload
                self._deadline = None
            self._callback(payload)


def _dump(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"), sort_keys=True)


def _is_primitive(value: Any) -> bool:
    return value is None or isinstance(value, (str, bool, int, float))


def _iso8601(ts: int) -> str:
    seconds = time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime(ts // _NS_PER_SECOND))
    return f"{seconds}.{ts % _NS_PER_SECOND:09d}Z"


def _local_time(ts: int) -> str:
    clock = time.strftime("%H:%M:%S", time.localtime(ts // _NS_PER_SECOND))
    return f"{clock}.{ts % _NS_PER_SECOND:09d}"


class OutputDispatcher:
    """Formats messages and hands them to all outputs from a worker thread.

    Producers push into a bounded queue; pushes that find it full are
    dropped and counted.
    """

    def __init__(
        self,
        outputs: Iterable[OutputConfig] = (),
        *,
        json_output: bool = False,
        timeout_ms: int = 2000,
        buffered: bool = True,
        queue_capacity: int = 0,
        time_format_iso_8601: bool = False,
        hostname: str = "",
        logger: Optional[Logger] = None,
        output_factory: Callable[[OutputConfig], Output] = create_output,
    ) -> None:
        self.logger = logger if logger is not None else Logger()
        self.json_output = json_output
        self.buffered = buffered
        self.time_format_iso_8601 = time_format_iso_8601
        self.hostname = hostname
        self._timeout = timeout_ms / 1000.0
        self._factory = output_factory
        self._outputs: list[Output] = []
        for config in outputs:
            self._add_output(config)

        self._queue: queue.Queue[_ControlMessage] = queue.Queue(maxsize=queue_capacity)
        self._num_drops = 0
        self._drops_lock = threading.Lock()
        self._closed = False
        self._worker = threading.Thread(
            target=self._run_worker, name="output-dispatcher", daemon=True
        )
        self._worker.start()

    @property
    def outputs(self) -> list[Output]:
        return list(self._outputs)

    def _add_output(self, config: OutputConfig) -> None:
        output = self._factory(config)
        try:
            output.init(config, self.buffered, self.hostname, self.json_output)
        except OutputError as exc:
            self.logger.log(LogLevel.ERR, f"Failed to init output: {exc}")
            return
        self._outputs.append(output)

    def handle_msg(
        self,
        ts: int,
        priority: Priority,
        msg: str,
        rule: str,
        output_fields: dict[str, Any],
    ) -> None:
        """Format a message not tied to an event and queue it for all outputs."""
        if not isinstance(output_fields, dict):
            raise OutputError("output fields must be key-value maps")

        if self.json_output:
            document = {
                "output": msg,
                "priority": format_priority(priority),
                "rule": rule,
                "time": _iso8601(ts),
                "output_fields": output_fields,
                "hostname": self.hostname,
                "source": INTERNAL_SOURCE,
            }
            text = _dump(document)
        else:
            parts = []
            for key in sorted(output_fields):
                value = output_fields[key]
                if not _is_primitive(value):
                    raise OutputError("output fields must be key-value maps")
                parts.append(f"{key}={_dump(value)}")
            text = (
                f"{_local_time(ts)}: {format_priority(priority)} {msg} "
                f"({' '.join(parts)})"
            )

        message = Message(
            ts=ts,
            priority=priority,
            source=INTERNAL_SOURCE,
            rule=rule,
            msg=text,
            fields=dict(output_fields),
        )
        self._push(_ControlMessage(ControlMessageType.OUTPUT, message))

    def cleanup_outputs(self) -> None:
        """Ask every output to flush or clean its buffers."""
        self._push(_ControlMessage(ControlMessageType.CLEANUP))

    def reopen_outputs(self) -> None:
        """Ask every output to close and reopen its resources."""
        self._push(_ControlMessage(ControlMessageType.REOPEN))

    def outputs_queue_num_drops(self) -> int:
        """Number of messages dropped because the queue was full."""
        with self._drops_lock:
            return self._num_drops

    def _push(self, cmsg: _ControlMessage) -> None:
        try:
            self._queue.put_nowait(cmsg)
        except queue.Full:
            with self._drops_lock:
                if self._num_drops == 0:
                    self.logger.log(
                        LogLevel.ERR,
                        "Outputs queue out of memory. Drop event and continue on ...",
                    )
                self._num_drops += 1

    def _clear_queue(self) -> None:
        while True:
            try:
                self._queue.get_nowait()
            except queue.Empty:
                return

    def _process(self, output: Output, cmsg: _ControlMessage) -> None:
        if cmsg.type is ControlMessageType.OUTPUT:
            assert cmsg.message is not None
            output.output(cmsg.message)
        elif cmsg.type in (ControlMessageType.CLEANUP, ControlMessageType.STOP):
            output.cleanup()
        elif cmsg.type is ControlMessageType.REOPEN:
            output.reopen()
        else:
            self.logger.log(
                LogLevel.DEBUG, "Outputs worker received an unknown message type\n"
            )

    def _on_output_timeout(self, name: str) -> None:
        self.logger.log(
            LogLevel.CRIT,
            f'"{name}" output timeout, all output channels are blocked\n',
        )

    def _run_worker(self) -> None:
        watchdog = _Watchdog(self._on_output_timeout)
        try:
            while True:
                cmsg = self._queue.get()
                for output in self._outputs:
                    watchdog.set_timeout(self._timeout, output.name)
                    try:
                        self._process(output, cmsg)
                    except Exception as exc:  # an output must not stop the others
                        self.logger.log(LogLevel.ERR, f"{output.name}: {exc}\n")
                watchdog.cancel_timeout()
                if cmsg.type is ControlMessageType.STOP:
                    return
        finally:
            watchdog.stop()

    def close(self) -> None:
        """Stop the worker after it drains the queue; idempotent."""
        if self._closed:
            return
        self._closed = True

        def on_timeout() -> None:
            self.logger.log(
                LogLevel.NOTICE,
                "output channels still blocked, discarding all remaining notifications\n",
            )
            self._clear_queue()
            self._push(_ControlMessage(ControlMessageType.STOP))

        timer = threading.Timer(self._timeout, on_timeout)
        timer.daemon = True
        timer.start()
        try:
            self._push(_ControlMessage(ControlMessageType.STOP))
            self._worker.join()
        finally:
            timer.cancel()

    def __enter__(self) -> "OutputDispatcher":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()