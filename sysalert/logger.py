"""Leveled logging to standard error and syslog."""

from __future__ import annotations

import enum
import sys
import time
from datetime import datetime, timezone
from typing import Optional, TextIO

try:
    import syslog as _syslog
except ImportError:  # pragma: no cover - platforms without syslog
    _syslog = None


class LogLevel(enum.IntEnum):
    """Log severities, numbered like syslog priorities."""

    EMERG = 0
    ALERT = 1
    CRIT = 2
    ERR = 3
    WARNING = 4
    NOTICE = 5
    INFO = 6
    DEBUG = 7


_LEVEL_NAMES = {
    "emergency": LogLevel.EMERG,
    "alert": LogLevel.ALERT,
    "critical": LogLevel.CRIT,
    "error": LogLevel.ERR,
    "warning": LogLevel.WARNING,
    "notice": LogLevel.NOTICE,
    "info": LogLevel.INFO,
    "debug": LogLevel.DEBUG,
}


class Logger:
    """Writes messages at or above a threshold to stderr and/or syslog."""

    def __init__(
        self,
        level: LogLevel = LogLevel.INFO,
        *,
        log_stderr: bool = True,
        log_syslog: bool = True,
        time_format_iso_8601: bool = False,
        stream: Optional[TextIO] = None,
    ) -> None:
        self.level = LogLevel(level)
        self.log_stderr = log_stderr
        self.log_syslog = log_syslog
        self.time_format_iso_8601 = time_format_iso_8601
        self.stream = stream

    def set_level(self, level: str) -> None:
        """Set the threshold from its name; unknown names raise ValueError."""
        try:
            self.level = _LEVEL_NAMES[level]
        except KeyError:
            raise ValueError(f"Unknown log level {level}") from None

    def set_time_format_iso_8601(self, value: bool) -> None:
        self.time_format_iso_8601 = bool(value)

    def _timestamp(self) -> str:
        if self.time_format_iso_8601:
            return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S%z")
        try:
            return time.asctime(time.localtime())[:24]
        except (OverflowError, ValueError):
            return "N/A"

    def log(self, priority: LogLevel, msg: str) -> None:
        """Emit ``msg`` unless ``priority`` is less severe than the threshold."""
        if priority > self.level:
            return

        if self.log_syslog and _syslog is not None:
            _syslog.syslog(int(priority), msg[:-1] if msg.endswith("\n") else msg)

        if self.log_stderr:
            line = msg if msg.endswith("\n") else msg + "\n"
            stream = self.stream if self.stream is not None else sys.stderr
            stream.write(f"{self._timestamp()}: {line}")