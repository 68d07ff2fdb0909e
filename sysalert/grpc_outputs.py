"""Alert streaming over a response queue for remote subscribers."""

from __future__ import annotations

import collections
import enum
import json
import threading
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Union

from .logger import Logger
from .outputs import Message, Output, OutputError, Priority

META_SESSION = "session_id"
META_REQUEST = "request_id"

Metadata = Union[Mapping[str, str], Iterable[tuple[str, str]]]


class _Source(enum.IntEnum):
    SYSCALL = 0
    K8S_AUDIT = 1
    INTERNAL = 2
    PLUGIN = 3


_SOURCE_NAMES = {
    name: member
    for member in _Source
    for name in (member.name, member.name.lower())
}


def _parse_source(name: str) -> _Source:
    # Unknown source names are expected to come from plugins.
    return _SOURCE_NAMES.get(name, _Source.PLUGIN)


class RequestContext:
    """Per-request state carrying client metadata and a log prefix."""

    def __init__(self, metadata: Metadata = ()) -> None:
        items = metadata.items() if isinstance(metadata, Mapping) else metadata
        self._metadata: list[tuple[str, str]] = [(str(k), str(v)) for k, v in items]

        session_id = self.get_metadata(META_SESSION)
        request_id = self.get_metadata(META_REQUEST)
        prefix = ""
        if session_id:
            prefix += f"[sid={session_id}]"
        if request_id:
            prefix += f"[rid={request_id}]"
        self.prefix = prefix + " " if prefix else ""

    def get_metadata(self, key: str) -> str:
        """Value of the first metadata entry named ``key``, or an empty string."""
        return next((value for name, value in self._metadata if name == key), "")


class StreamStatus(enum.IntEnum):
    """Life cycle of a streaming request."""

    STREAMING = 1
    SUCCESS = 2
    ERROR = 3


class StreamContext(RequestContext):
    """Context of a server-streaming or bidirectional request."""

    def __init__(self, metadata: Metadata = ()) -> None:
        super().__init__(metadata)
        self.status = StreamStatus.STREAMING
        self.stream: Any = None
        self.has_more = False
        self.is_running = True


@dataclass
class OutputResponse:
    """An alert as delivered to remote subscribers."""

    time: int = 0
    rule: str = ""
    source_deprecated: int = int(_Source.SYSCALL)
    priority: Priority = Priority.EMERGENCY
    output: str = ""
    output_fields: dict[str, str] = field(default_factory=dict)
    hostname: str = ""
    tags: list[str] = field(default_factory=list)
    source: str = ""

    @property
    def seconds(self) -> int:
        return self.time // 1_000_000_000

    @property
    def nanos(self) -> int:
        return self.time % 1_000_000_000


class ResponseQueue:
    """Unbounded thread-safe FIFO of responses."""

    def __init__(self) -> None:
        self._items: collections.deque[OutputResponse] = collections.deque()
        self._lock = threading.Lock()

    def push(self, response: OutputResponse) -> None:
        with self._lock:
            self._items.append(response)

    def try_pop(self) -> Optional[OutputResponse]:
        """Remove and return the oldest response, or None if empty."""
        with self._lock:
            return self._items.popleft() if self._items else None

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


_DEFAULT_QUEUE = ResponseQueue()


class OutputsService:
    """Serves queued responses to ``get`` and ``sub`` requests."""

    def __init__(
        self,
        response_queue: Optional[ResponseQueue] = None,
        server_shutdown: Optional[Callable[[], None]] = None,
    ) -> None:
        self.queue = response_queue if response_queue is not None else _DEFAULT_QUEUE
        self._server_shutdown = server_shutdown
        self._stop = threading.Event()

    def is_running(self) -> bool:
        return not self._stop.is_set()

    def _next(self, ctx: StreamContext) -> Optional[OutputResponse]:
        if ctx.status in (StreamStatus.SUCCESS, StreamStatus.ERROR):
            ctx.stream = None
            return None
        ctx.is_running = self.is_running()
        response = self.queue.try_pop()
        ctx.has_more = response is not None
        return response

    def get(self, ctx: StreamContext) -> Optional[OutputResponse]:
        """Next response of a server stream; sets ``ctx.has_more`` and ``ctx.is_running``."""
        return self._next(ctx)

    def sub(self, ctx: StreamContext) -> Optional[OutputResponse]:
        """Next response of a bidirectional stream."""
        return self._next(ctx)

    def shutdown(self) -> None:
        """Stop serving and shut the underlying server down."""
        self._stop.set()
        if self._server_shutdown is not None:
            self._server_shutdown()


def _is_primitive(value: Any) -> bool:
    return value is None or isinstance(value, (str, bool, int, float))


class GrpcOutput(Output):
    """Converts each message to an OutputResponse and queues it."""

    def __init__(
        self,
        logger: Optional[Logger] = None,
        response_queue: Optional[ResponseQueue] = None,
    ) -> None:
        super().__init__(logger)
        self.queue = response_queue if response_queue is not None else _DEFAULT_QUEUE

    def output(self, msg: Message) -> None:
        try:
            priority = Priority(msg.priority)
        except ValueError:
            raise OutputError("Unknown priority passed to GrpcOutput.output()") from None

        fields: dict[str, str] = {}
        for key, value in msg.fields.items():
            if not _is_primitive(value):
                raise OutputError("output_grpc: output fields must be key-value maps")
            fields[key] = value if isinstance(value, str) else json.dumps(value)

        self.queue.push(
            OutputResponse(
                time=msg.ts,
                rule=msg.rule,
                source_deprecated=int(_parse_source(msg.source)),
                priority=priority,
                output=msg.msg,
                output_fields=fields,
                hostname=self.hostname,
                tags=sorted(msg.tags),
                source=msg.source,
            )
        )