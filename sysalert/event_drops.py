"""Detection of dropped syscall events and the actions taken on them."""

from __future__ import annotations

import enum
import sys
import time
from dataclasses import dataclass, fields
from typing import Any, Callable, Iterable, Optional, Protocol, TextIO

from .logger import Logger, LogLevel
from .outputs import Priority

ONE_SECOND_IN_NS = 1_000_000_000

DROP_RULE = "sysalert internal: syscall event drop"


class DropAction(enum.IntEnum):
    """What to do when syscall event drops are detected."""

    DISREGARD = 0
    LOG = 1
    ALERT = 2
    EXIT = 3


@dataclass(frozen=True)
class CaptureStats:
    """Counters reported by the capture engine."""

    n_evts: int = 0
    n_drops: int = 0
    n_drops_buffer: int = 0
    n_drops_buffer_clone_fork_enter: int = 0
    n_drops_buffer_clone_fork_exit: int = 0
    n_drops_buffer_execve_enter: int = 0
    n_drops_buffer_execve_exit: int = 0
    n_drops_buffer_connect_enter: int = 0
    n_drops_buffer_connect_exit: int = 0
    n_drops_buffer_open_enter: int = 0
    n_drops_buffer_open_exit: int = 0
    n_drops_buffer_dir_file_enter: int = 0
    n_drops_buffer_dir_file_exit: int = 0
    n_drops_buffer_other_interest_enter: int = 0
    n_drops_buffer_other_interest_exit: int = 0
    n_drops_buffer_close_exit: int = 0
    n_drops_buffer_proc_exit: int = 0
    n_drops_scratch_map: int = 0
    n_drops_pf: int = 0
    n_drops_bug: int = 0
    n_preemptions: int = 0
    n_suppressed: int = 0
    n_tids_suppressed: int = 0

    def __sub__(self, other: "CaptureStats") -> "CaptureStats":
        if not isinstance(other, CaptureStats):
            return NotImplemented
        return CaptureStats(
            **{f.name: getattr(self, f.name) - getattr(other, f.name) for f in fields(self)}
        )


# Output field name for each counter reported in an alert, in report order.
_ALERT_FIELDS = (
    ("n_evts", "n_evts"),
    ("n_drops", "n_drops"),
    ("n_drops_buffer_total", "n_drops_buffer"),
    ("n_drops_buffer_clone_fork_enter", "n_drops_buffer_clone_fork_enter"),
    ("n_drops_buffer_clone_fork_exit", "n_drops_buffer_clone_fork_exit"),
    ("n_drops_buffer_execve_enter", "n_drops_buffer_execve_enter"),
    ("n_drops_buffer_execve_exit", "n_drops_buffer_execve_exit"),
    ("n_drops_buffer_connect_enter", "n_drops_buffer_connect_enter"),
    ("n_drops_buffer_connect_exit", "n_drops_buffer_connect_exit"),
    ("n_drops_buffer_open_enter", "n_drops_buffer_open_enter"),
    ("n_drops_buffer_open_exit", "n_drops_buffer_open_exit"),
    ("n_drops_buffer_dir_file_enter", "n_drops_buffer_dir_file_enter"),
    ("n_drops_buffer_dir_file_exit", "n_drops_buffer_dir_file_exit"),
    ("n_drops_buffer_other_interest_enter", "n_drops_buffer_other_interest_enter"),
    ("n_drops_buffer_other_interest_exit", "n_drops_buffer_other_interest_exit"),
    ("n_drops_buffer_close_exit", "n_drops_buffer_close_exit"),
    ("n_drops_buffer_proc_exit", "n_drops_buffer_proc_exit"),
    ("n_drops_scratch_map", "n_drops_scratch_map"),
    ("n_drops_page_faults", "n_drops_pf"),
    ("n_drops_bug", "n_drops_bug"),
)


class TokenBucket:
    """Rate limiter refilled at ``rate`` tokens per second up to ``max_tokens``."""

    def __init__(self, rate: float, max_tokens: float, now: Optional[int] = None) -> None:
        self.rate = rate
        self.max_tokens = max_tokens
        self.tokens = max_tokens
        self.last_seen = time.time_ns() if now is None else now

    def _add_tokens(self, now: int) -> None:
        elapsed = max(0, now - self.last_seen)
        self.tokens = min(self.max_tokens, self.tokens + self.rate * elapsed / ONE_SECOND_IN_NS)
        self.last_seen = now

    def claim(self, tokens: float, now: int) -> bool:
        """Take ``tokens`` at time ``now`` (ns) if that many are available."""
        self._add_tokens(now)
        if self.tokens < tokens:
            return False
        self.tokens -= tokens
        return True


class _MessageSink(Protocol):
    def handle_msg(
        self, ts: int, priority: Priority, msg: str, rule: str, output_fields: dict[str, Any]
    ) -> None: ...


class SyscallEventDropManager:
    """Checks capture stats once a second and acts when events were dropped."""

    def __init__(
        self,
        capture_stats: Callable[[], CaptureStats],
        outputs: _MessageSink,
        actions: Iterable[DropAction],
        threshold: float,
        rate: float,
        max_tokens: float,
        simulate_drops: bool = False,
        *,
        bpf_enabled: bool = False,
        logger: Optional[Logger] = None,
    ) -> None:
        self._capture_stats = capture_stats
        self._outputs = outputs
        self.actions = {DropAction(a) for a in actions}
        self.bucket = TokenBucket(rate, max_tokens)
        self.simulate_drops = simulate_drops
        self.threshold = 0.0 if simulate_drops else threshold
        self.bpf_enabled = bpf_enabled
        self.logger = logger if logger is not None else Logger()
        self.num_syscall_evt_drops = 0
        self.num_actions = 0
        self._next_check_ts = 0
        self._last_stats = capture_stats()

    def process_event(self, ts: int) -> bool:
        """Account for an event at ``ts`` (ns); False means processing must stop."""
        if self._next_check_ts == 0:
            self._next_check_ts = ts + ONE_SECOND_IN_NS

        if self._next_check_ts >= ts:
            return True

        self._next_check_ts = ts + ONE_SECOND_IN_NS
        stats = self._capture_stats()
        delta = stats - self._last_stats
        self._last_stats = stats

        n_drops = delta.n_drops
        if self.simulate_drops:
            self.logger.log(LogLevel.INFO, "Simulating syscall event drop")
            n_drops += 1
            delta = CaptureStats(
                **{**{f.name: getattr(delta, f.name) for f in fields(delta)}, "n_drops": n_drops}
            )

        if n_drops <= 0:
            return True

        # n_evts always includes n_drops.
        ratio = n_drops / delta.n_evts if delta.n_evts else float("inf")
        if ratio <= self.threshold:
            return True

        self.num_syscall_evt_drops += 1
        if not self.bucket.claim(1, ts):
            self.logger.log(
                LogLevel.DEBUG,
                "Syscall event drop but token bucket depleted, skipping actions",
            )
            return True

        self.num_actions += 1
        return self._perform_actions(ts, delta)

    def _perform_actions(self, now: int, delta: CaptureStats) -> bool:
        msg = f"{DROP_RULE}. {delta.n_drops} system calls dropped in last second."
        for action in sorted(self.actions):
            if action is DropAction.DISREGARD:
                return True
            if action is DropAction.LOG:
                self.logger.log(LogLevel.DEBUG, msg)
                return True
            if action is DropAction.ALERT:
                output_fields = {
                    name: str(getattr(delta, attr)) for name, attr in _ALERT_FIELDS
                }
                output_fields["ebpf_enabled"] = "1" if self.bpf_enabled else "0"
                self._outputs.handle_msg(now, Priority.DEBUG, msg, DROP_RULE, output_fields)
                return True
            if action is DropAction.EXIT:
                self.logger.log(LogLevel.CRIT, msg)
                self.logger.log(LogLevel.CRIT, "Exiting.")
                return False
        return True

    def print_stats(self, file: Optional[TextIO] = None) -> None:
        """Write a summary of detected drops and actions taken."""
        out = file if file is not None else sys.stderr
        out.write("Syscall event drop monitoring:\n")
        out.write(f"   - event drop detected: {self.num_syscall_evt_drops} occurrences\n")
        out.write(f"   - num times actions taken: {self.num_actions}\n")