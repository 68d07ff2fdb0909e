import pytest

from sysalert.grpc_outputs import (
    GrpcOutput,
    OutputResponse,
    OutputsService,
    RequestContext,
    ResponseQueue,
    StreamContext,
    StreamStatus,
)
from sysalert.outputs import Message, OutputConfig, OutputError, Priority


def _output(queue, hostname="host-a"):
    out = GrpcOutput(response_queue=queue)
    out.init(OutputConfig(name="grpc"), True, hostname, False)
    return out


def test_prefix_with_session_and_request():
    ctx = RequestContext({"session_id": "s1", "request_id": "r1"})
    assert ctx.prefix == "[sid=s1][rid=r1] "


def test_prefix_with_session_only():
    ctx = RequestContext([("session_id", "abc")])
    assert ctx.prefix == "[sid=abc] "


def test_prefix_empty_without_metadata():
    assert RequestContext().prefix == ""


def test_get_metadata_first_match_and_missing():
    ctx = RequestContext([("k", "one"), ("k", "two")])
    assert ctx.get_metadata("k") == "one"
    assert ctx.get_metadata("absent") == ""


def test_queue_is_fifo():
    q = ResponseQueue()
    first, second = OutputResponse(rule="a"), OutputResponse(rule="b")
    q.push(first)
    q.push(second)
    assert len(q) == 2
    assert q.try_pop() is first
    assert q.try_pop() is second
    assert q.try_pop() is None


def test_get_pops_and_sets_has_more():
    q = ResponseQueue()
    q.push(OutputResponse(rule="r"))
    service = OutputsService(q)
    ctx = StreamContext()
    res = service.get(ctx)
    assert res.rule == "r"
    assert ctx.has_more is True
    assert ctx.is_running is True
    assert service.get(ctx) is None
    assert ctx.has_more is False


@pytest.mark.parametrize("status", [StreamStatus.SUCCESS, StreamStatus.ERROR])
def test_finished_stream_does_not_pop(status):
    q = ResponseQueue()
    q.push(OutputResponse(rule="r"))
    service = OutputsService(q)
    ctx = StreamContext()
    ctx.status = status
    ctx.stream = object()
    assert service.sub(ctx) is None
    assert ctx.stream is None
    assert len(q) == 1


def test_shutdown_stops_and_notifies_server():
    calls = []
    service = OutputsService(ResponseQueue(), server_shutdown=lambda: calls.append(1))
    assert service.is_running() is True
    service.shutdown()
    assert service.is_running() is False
    assert calls == [1]
    ctx = StreamContext()
    service.sub(ctx)
    assert ctx.is_running is False


def test_output_builds_response():
    q = ResponseQueue()
    out = _output(q)
    msg = Message(
        ts=3_000_000_005,
        priority=Priority.WARNING,
        source="syscall",
        rule="rule-x",
        msg="text",
        fields={"name": "value", "count": 12, "flag": True},
        tags={"b", "a"},
    )
    out.output(msg)
    res = q.try_pop()
    assert res.time == msg.ts
    assert res.seconds == 3
    assert res.nanos == 5
    assert res.rule == "rule-x"
    assert res.priority is Priority.WARNING
    assert res.output == "text"
    assert res.hostname == "host-a"
    assert res.source == "syscall"
    assert res.tags == ["a", "b"]
    assert res.output_fields == {"name": "value", "count": "12", "flag": "true"}


@pytest.mark.parametrize(
    "source, expected",
    [("syscall", 0), ("k8s_audit", 1), ("internal", 2), ("some_plugin", 3)],
)
def test_source_deprecated_mapping(source, expected):
    q = ResponseQueue()
    _output(q).output(Message(source=source))
    assert q.try_pop().source_deprecated == expected


def test_non_primitive_field_raises():
    q = ResponseQueue()
    out = _output(q)
    with pytest.raises(OutputError):
        out.output(Message(fields={"nested": {"a": 1}}))
    assert q.try_pop() is None


def test_invalid_priority_raises():
    q = ResponseQueue()
    out = _output(q)
    with pytest.raises(OutputError):
        out.output(Message(priority=42))
    assert len(q) == 0


def test_output_then_service_get_round_trip():
    q = ResponseQueue()
    _output(q).output(Message(rule="rt", msg="hello"))
    res = OutputsService(q).get(StreamContext())
    assert (res.rule, res.output) == ("rt", "hello")