import io

import pytest

from sysalert.event_drops import (
    DROP_RULE,
    ONE_SECOND_IN_NS,
    CaptureStats,
    DropAction,
    SyscallEventDropManager,
    TokenBucket,
)
from sysalert.logger import Logger, LogLevel
from sysalert.outputs import Priority


class RecordingOutputs:
    def __init__(self):
        self.calls = []

    def handle_msg(self, ts, priority, msg, rule, output_fields):
        self.calls.append((ts, priority, msg, rule, output_fields))


def make_stats_source(*samples):
    items = list(samples)

    def provider():
        return items.pop(0) if len(items) > 1 else items[0]

    return provider


def quiet_logger(level=LogLevel.DEBUG):
    stream = io.StringIO()
    return Logger(level, log_syslog=False, stream=stream), stream


def make_manager(samples, actions, threshold=0.0, rate=1.0, max_tokens=10.0, **kw):
    outputs = RecordingOutputs()
    logger, stream = quiet_logger()
    mgr = SyscallEventDropManager(
        make_stats_source(*samples),
        outputs,
        actions,
        threshold,
        rate,
        max_tokens,
        logger=logger,
        **kw,
    )
    return mgr, outputs, stream


def test_capture_stats_subtraction_is_fieldwise():
    a = CaptureStats(n_evts=10, n_drops=4, n_drops_pf=2)
    b = CaptureStats(n_evts=3, n_drops=1, n_drops_pf=2)
    delta = a - b
    assert delta.n_evts == 7
    assert delta.n_drops == 3
    assert delta.n_drops_pf == 0
    assert (a - a) == CaptureStats()


def test_token_bucket_depletes_and_refills():
    bucket = TokenBucket(1, 2, now=0)
    assert bucket.claim(1, 0)
    assert bucket.claim(1, 0)
    assert not bucket.claim(1, 0)
    assert bucket.claim(1, ONE_SECOND_IN_NS)


def test_token_bucket_never_exceeds_max():
    bucket = TokenBucket(100, 2, now=0)
    bucket.claim(0, 10 * ONE_SECOND_IN_NS)
    assert bucket.tokens == 2


def test_first_event_only_schedules_check():
    mgr, outputs, _ = make_manager(
        [CaptureStats(), CaptureStats(n_evts=10, n_drops=5)], [DropAction.ALERT]
    )
    assert mgr.process_event(1) is True
    assert mgr.process_event(ONE_SECOND_IN_NS) is True
    assert outputs.calls == []
    assert mgr.num_syscall_evt_drops == 0


def test_alert_action_sends_fields():
    mgr, outputs, _ = make_manager(
        [CaptureStats(), CaptureStats(n_evts=10, n_drops=5, n_drops_pf=2, n_drops_buffer=3)],
        [DropAction.ALERT],
    )
    mgr.process_event(1)
    ts = 2 * ONE_SECOND_IN_NS
    assert mgr.process_event(ts) is True
    assert len(outputs.calls) == 1
    call_ts, priority, msg, rule, fields = outputs.calls[0]
    assert call_ts == ts
    assert priority == Priority.DEBUG
    assert rule == DROP_RULE
    assert msg == f"{DROP_RULE}. 5 system calls dropped in last second."
    assert fields["n_evts"] == "10"
    assert fields["n_drops"] == "5"
    assert fields["n_drops_buffer_total"] == "3"
    assert fields["n_drops_page_faults"] == "2"
    assert fields["ebpf_enabled"] == "0"
    assert mgr.num_syscall_evt_drops == 1
    assert mgr.num_actions == 1


def test_alert_reports_bpf_enabled():
    mgr, outputs, _ = make_manager(
        [CaptureStats(), CaptureStats(n_evts=10, n_drops=5)],
        [DropAction.ALERT],
        bpf_enabled=True,
    )
    mgr.process_event(1)
    mgr.process_event(2 * ONE_SECOND_IN_NS)
    assert outputs.calls[0][4]["ebpf_enabled"] == "1"


def test_exit_action_stops_processing():
    mgr, _, stream = make_manager(
        [CaptureStats(), CaptureStats(n_evts=10, n_drops=5)], [DropAction.EXIT]
    )
    mgr.process_event(1)
    assert mgr.process_event(2 * ONE_SECOND_IN_NS) is False
    assert "Exiting." in stream.getvalue()


def test_log_action_logs_message():
    mgr, outputs, stream = make_manager(
        [CaptureStats(), CaptureStats(n_evts=10, n_drops=5)], [DropAction.LOG]
    )
    mgr.process_event(1)
    assert mgr.process_event(2 * ONE_SECOND_IN_NS) is True
    assert "5 system calls dropped in last second." in stream.getvalue()
    assert outputs.calls == []


def test_ratio_below_threshold_is_ignored():
    mgr, outputs, _ = make_manager(
        [CaptureStats(), CaptureStats(n_evts=100, n_drops=1)],
        [DropAction.ALERT],
        threshold=0.5,
    )
    mgr.process_event(1)
    assert mgr.process_event(2 * ONE_SECOND_IN_NS) is True
    assert mgr.num_syscall_evt_drops == 0
    assert outputs.calls == []


def test_simulated_drops_trigger_actions_without_real_drops():
    mgr, outputs, stream = make_manager(
        [CaptureStats()], [DropAction.ALERT], threshold=0.9, simulate_drops=True
    )
    assert mgr.threshold == 0
    mgr.process_event(1)
    mgr.process_event(2 * ONE_SECOND_IN_NS)
    assert outputs.calls[0][4]["n_drops"] == "1"
    assert "Simulating syscall event drop" in stream.getvalue()


def test_depleted_bucket_skips_actions():
    mgr, outputs, _ = make_manager(
        [
            CaptureStats(),
            CaptureStats(n_evts=10, n_drops=5),
            CaptureStats(n_evts=20, n_drops=10),
        ],
        [DropAction.ALERT],
        rate=0.0,
        max_tokens=1.0,
    )
    mgr.process_event(1)
    mgr.process_event(2 * ONE_SECOND_IN_NS)
    mgr.process_event(4 * ONE_SECOND_IN_NS)
    assert mgr.num_syscall_evt_drops == 2
    assert mgr.num_actions == 1
    assert len(outputs.calls) == 1


def test_disregard_takes_precedence():
    mgr, outputs, _ = make_manager(
        [CaptureStats(), CaptureStats(n_evts=10, n_drops=5)],
        [DropAction.EXIT, DropAction.DISREGARD],
    )
    mgr.process_event(1)
    assert mgr.process_event(2 * ONE_SECOND_IN_NS) is True
    assert outputs.calls == []


def test_invalid_action_is_rejected():
    with pytest.raises(ValueError):
        make_manager([CaptureStats()], [42])


def test_print_stats():
    mgr, _, _ = make_manager(
        [CaptureStats(), CaptureStats(n_evts=10, n_drops=5)], [DropAction.DISREGARD]
    )
    mgr.process_event(1)
    mgr.process_event(2 * ONE_SECOND_IN_NS)
    out = io.StringIO()
    mgr.print_stats(out)
    assert out.getvalue() == (
        "Syscall event drop monitoring:\n"
        "   - event drop detected: 1 occurrences\n"
        "   - num times actions taken: 1\n"
    )