import io
import re
from datetime import datetime, timedelta, timezone
from unittest import mock

import pytest

from sysalert.logger import Logger, LogLevel


def _quiet_logger(**kwargs):
    stream = io.StringIO()
    return Logger(log_syslog=False, stream=stream, **kwargs), stream


@pytest.mark.parametrize(
    "name, level",
    [
        ("emergency", LogLevel.EMERG),
        ("alert", LogLevel.ALERT),
        ("critical", LogLevel.CRIT),
        ("error", LogLevel.ERR),
        ("warning", LogLevel.WARNING),
        ("notice", LogLevel.NOTICE),
        ("info", LogLevel.INFO),
        ("debug", LogLevel.DEBUG),
    ],
)
def test_set_level_known_names(name, level):
    logger, _ = _quiet_logger()
    logger.set_level(name)
    assert logger.level == level


def test_set_level_unknown_name_raises():
    logger, _ = _quiet_logger()
    with pytest.raises(ValueError, match="Unknown log level verbose"):
        logger.set_level("verbose")


def test_messages_less_severe_than_threshold_are_dropped():
    logger, stream = _quiet_logger(level=LogLevel.WARNING)
    logger.log(LogLevel.INFO, "hidden")
    logger.log(LogLevel.ERR, "shown")
    assert "hidden" not in stream.getvalue()
    assert stream.getvalue().endswith(": shown\n")


def test_trailing_newline_added_once():
    logger, stream = _quiet_logger()
    logger.log(LogLevel.INFO, "one")
    logger.log(LogLevel.INFO, "two\n")
    lines = stream.getvalue().splitlines(keepends=True)
    assert len(lines) == 2
    assert all(line.endswith("\n") for line in lines)


def test_iso_8601_timestamp():
    logger, stream = _quiet_logger()
    logger.set_time_format_iso_8601(True)
    logger.log(LogLevel.INFO, "hello")
    out = stream.getvalue()
    assert out[24:] == ": hello\n"
    assert out[19:24] == "+0000"
    stamp = datetime.strptime(out[:24], "%Y-%m-%dT%H:%M:%S%z")
    assert stamp.utcoffset() == timedelta(0)
    assert abs(stamp - datetime.now(timezone.utc)) < timedelta(minutes=5)


def test_default_timestamp_is_asctime():
    logger, stream = _quiet_logger()
    logger.log(LogLevel.INFO, "hello")
    out = stream.getvalue()
    assert out[24:] == ": hello\n"
    assert re.fullmatch(r"\w{3} \w{3} [ \d]\d \d\d:\d\d:\d\d \d{4}", out[:24])


def test_stderr_disabled_writes_nothing():
    stream = io.StringIO()
    logger = Logger(log_stderr=False, log_syslog=False, stream=stream)
    logger.log(LogLevel.EMERG, "nothing")
    assert stream.getvalue() == ""


def test_syslog_strips_trailing_newline():
    stream = io.StringIO()
    logger = Logger(log_stderr=True, log_syslog=True, stream=stream)
    with mock.patch("syslog.syslog") as fake:
        logger.log(LogLevel.ERR, "boom\n")
    assert stream.getvalue().endswith(": boom\n")
    assert fake.call_count == 1
    assert fake.call_args == mock.call(int(LogLevel.ERR), "boom")