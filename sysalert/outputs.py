"""Alert output channels: file, stdout, program, syslog and HTTP."""

from __future__ import annotations

import abc
import enum
import http.client
import socket
import ssl
import subprocess
import sys
import urllib.parse
from dataclasses import dataclass, field
from typing import IO, Any, Optional, TextIO

from .logger import Logger, LogLevel

try:
    import syslog as _syslog
except ImportError:  # pragma: no cover - platforms without syslog
    _syslog = None


class OutputError(Exception):
    """Raised when an output cannot be created, initialised or written."""


class Priority(enum.IntEnum):
    """Alert priorities, numbered like syslog priorities."""

    EMERGENCY = 0
    ALERT = 1
    CRITICAL = 2
    ERROR = 3
    WARNING = 4
    NOTICE = 5
    INFORMATIONAL = 6
    DEBUG = 7


_PRIORITY_ALIASES = {"info": Priority.INFORMATIONAL}


def format_priority(priority: Priority) -> str:
    """Return the display name of a priority, e.g. ``"Warning"``."""
    return Priority(priority).name.capitalize()


def parse_priority(name: str) -> Priority:
    """Parse a priority name case-insensitively; ``info`` is accepted too."""
    key = name.strip().lower()
    if key in _PRIORITY_ALIASES:
        return _PRIORITY_ALIASES[key]
    try:
        return Priority[key.upper()]
    except KeyError:
        raise ValueError(f"Unknown priority {name}") from None


@dataclass
class OutputConfig:
    """Name of an output channel and its string options."""

    name: str
    options: dict[str, str] = field(default_factory=dict)

    def option(self, key: str) -> str:
        return self.options.get(key, "")


@dataclass
class Message:
    """An alert ready to be written to the outputs."""

    ts: int = 0
    priority: Priority = Priority.DEBUG
    source: str = ""
    rule: str = ""
    msg: str = ""
    fields: dict[str, Any] = field(default_factory=dict)
    tags: set[str] = field(default_factory=set)


class Output(abc.ABC):
    """Base class of all output channels."""

    def __init__(self, logger: Optional[Logger] = None) -> None:
        self.logger = logger if logger is not None else Logger()
        self.config = OutputConfig(name="")
        self.buffered = True
        self.hostname = ""
        self.json_output = False

    @property
    def name(self) -> str:
        return self.config.name

    def init(
        self, config: OutputConfig, buffered: bool, hostname: str, json_output: bool
    ) -> None:
        """Configure the output; raises OutputError when that fails."""
        self.config = config
        self.buffered = buffered
        self.hostname = hostname
        self.json_output = json_output

    @abc.abstractmethod
    def output(self, msg: Message) -> None:
        """Write one message."""

    def cleanup(self) -> None:
        """Flush or release resources held by the output."""

    def reopen(self) -> None:
        """Close and reopen any underlying resources."""


class FileOutput(Output):
    """Appends each message as a line to a file."""

    def __init__(self, logger: Optional[Logger] = None) -> None:
        super().__init__(logger)
        self._file: Optional[TextIO] = None

    def _open_file(self) -> None:
        if self._file is not None:
            return
        filename = self.config.option("filename")
        try:
            self._file = open(filename, "a", encoding="utf-8")
        except OSError as exc:
            raise OutputError(f"failed to open output file {filename}") from exc

    def output(self, msg: Message) -> None:
        self._open_file()
        assert self._file is not None
        self._file.write(msg.msg + "\n")
        if not self.buffered:
            self._file.flush()
        if self.config.option("keep_alive") != "true":
            self.cleanup()

    def cleanup(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None

    def reopen(self) -> None:
        self.cleanup()
        self._open_file()


class StdoutOutput(Output):
    """Writes each message as a line to standard output."""

    def __init__(
        self, logger: Optional[Logger] = None, stream: Optional[TextIO] = None
    ) -> None:
        super().__init__(logger)
        self._stream = stream

    @property
    def stream(self) -> TextIO:
        return self._stream if self._stream is not None else sys.stdout

    def output(self, msg: Message) -> None:
        self.stream.write(msg.msg + "\n")
        if not self.buffered:
            self.stream.flush()

    def cleanup(self) -> None:
        self.stream.flush()


class ProgramOutput(Output):
    """Pipes each message as a line to the standard input of a shell command."""

    def __init__(self, logger: Optional[Logger] = None) -> None:
        super().__init__(logger)
        self._process: Optional[subprocess.Popen] = None

    def _open_pipe(self) -> IO[bytes]:
        if self._process is None:
            self._process = subprocess.Popen(
                self.config.option("program"), shell=True, stdin=subprocess.PIPE
            )
        assert self._process.stdin is not None
        return self._process.stdin

    def output(self, msg: Message) -> None:
        pipe = self._open_pipe()
        pipe.write((msg.msg + "\n").encode("utf-8"))
        if not self.buffered:
            pipe.flush()
        if self.config.option("keep_alive") != "true":
            self.cleanup()

    def cleanup(self) -> None:
        if self._process is None:
            return
        process, self._process = self._process, None
        if process.stdin is not None:
            try:
                process.stdin.close()
            except BrokenPipeError:
                pass
        process.wait()

    def reopen(self) -> None:
        self.cleanup()
        self._open_pipe()


class SyslogOutput(Output):
    """Sends each message to syslog at the message's priority."""

    def output(self, msg: Message) -> None:
        if _syslog is None:
            raise OutputError("syslog is not available on this platform")
        _syslog.syslog(int(msg.priority), msg.msg)


_ESCAPES = {
    "b": "\b",
    "f": "\f",
    "n": "\n",
    "r": "\r",
    "t": "\t",
    "\\": "\\",
    '"': '"',
    "'": "'",
    "/": "/",
}


def _unquote(text: str) -> str:
    """Strip matching outer quotes and resolve backslash escapes."""
    chars = iter(text[1:-1])
    out = []
    for ch in chars:
        if ch == "\\":
            nxt = next(chars, "")
            out.append(_ESCAPES.get(nxt, nxt))
        else:
            out.append(ch)
    return "".join(out)


class _KeepAliveMixin:
    keep_alive = False
    sock: Any

    def connect(self) -> None:
        super().connect()  # type: ignore[misc]
        if self.keep_alive:
            self.sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)


class _HTTPConnection(_KeepAliveMixin, http.client.HTTPConnection):
    pass


class _HTTPSConnection(_KeepAliveMixin, http.client.HTTPSConnection):
    pass


class HttpOutput(Output):
    """POSTs each message to a URL."""

    def __init__(
        self, logger: Optional[Logger] = None, echo_stream: Optional[TextIO] = None
    ) -> None:
        super().__init__(logger)
        self._echo_stream = echo_stream
        self._conn: Optional[http.client.HTTPConnection] = None
        self._url = urllib.parse.SplitResult("", "", "", "", "")
        self._headers: dict[str, str] = {}

    def init(
        self, config: OutputConfig, buffered: bool, hostname: str, json_output: bool
    ) -> None:
        super().init(config, buffered, hostname, json_output)
        opt = config.option

        url = opt("url")
        if url and url[0] == url[-1] and url[0] in "\"'":
            url = _unquote(url)
        parsed = urllib.parse.urlsplit(url)
        if parsed.scheme not in ("http", "https") or not parsed.hostname:
            raise OutputError(f"http output: unsupported URL {url!r}")
        self._url = parsed

        self._headers = {
            "Content-Type": "application/json" if json_output else "text/plain"
        }
        if opt("user_agent"):
            self._headers["User-Agent"] = opt("user_agent")
        if opt("compress_uploads") == "true":
            self._headers["TE"] = "gzip"
            self._headers["Connection"] = "TE"

        if parsed.scheme == "https":
            context = self._ssl_context()
            conn: http.client.HTTPConnection = _HTTPSConnection(
                parsed.hostname, parsed.port, context=context
            )
        else:
            conn = _HTTPConnection(parsed.hostname, parsed.port)
        conn.keep_alive = opt("keep_alive") == "true"  # type: ignore[attr-defined]
        self._conn = conn

    def _ssl_context(self) -> ssl.SSLContext:
        opt = self.config.option
        try:
            if opt("ca_cert"):
                context = ssl.create_default_context(cafile=opt("ca_cert"))
            elif opt("ca_bundle"):
                context = ssl.create_default_context(cafile=opt("ca_bundle"))
            elif opt("ca_path"):
                context = ssl.create_default_context(capath=opt("ca_path"))
            else:
                context = ssl.create_default_context()
            if opt("insecure") == "true":
                context.check_hostname = False
                context.verify_mode = ssl.CERT_NONE
            if opt("mtls") == "true":
                context.load_cert_chain(opt("client_cert"), opt("client_key") or None)
        except (OSError, ssl.SSLError) as exc:
            raise OutputError(f"http output: TLS setup failed: {exc}") from exc
        return context

    def output(self, msg: Message) -> None:
        if self._conn is None:
            raise OutputError("http output used before init or after cleanup")
        target = self._url.path or "/"
        if self._url.query:
            target += "?" + self._url.query
        try:
            self._conn.request(
                "POST", target, body=msg.msg.encode("utf-8"), headers=self._headers
            )
            body = self._conn.getresponse().read()
        except (OSError, http.client.HTTPException) as exc:
            self._conn.close()
            self.logger.log(
                LogLevel.ERR, f"http output failed to perform call: {exc}"
            )
            return
        if self.config.option("echo") != "false":
            stream = self._echo_stream if self._echo_stream is not None else sys.stdout
            stream.write(body.decode("utf-8", errors="replace"))

    def cleanup(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None


_OUTPUT_TYPES: dict[str, type[Output]] = {
    "file": FileOutput,
    "stdout": StdoutOutput,
    "http": HttpOutput,
}
if sys.platform != "win32":
    _OUTPUT_TYPES["program"] = ProgramOutput
    _OUTPUT_TYPES["syslog"] = SyslogOutput


def create_output(config: OutputConfig) -> Output:
    """Create an uninitialised output for ``config.name``."""
    try:
        return _OUTPUT_TYPES[config.name]()
    except KeyError:
        raise OutputError(f"Output not supported: {config.name}") from None