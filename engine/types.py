"""
Remote Watch — Completion Detection Type Definitions

Phases, completion reasons, the per-tick observation record, the
monitor configuration and the immutable completion result.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any


# ─── Phases & Reasons ───────────────────────────────────────────────

class Phase(str, enum.Enum):
    """Lifecycle of one monitor session. Moves forward only."""
    WAITING = "waiting"
    THINKING = "thinking"
    GENERATING = "generating"
    COMPLETE = "complete"
    TIMEOUT = "timeout"
    QUOTA_REACHED = "quota_reached"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_PHASES

    @property
    def rank(self) -> int:
        return _PHASE_RANK[self]


TERMINAL_PHASES = frozenset({Phase.COMPLETE, Phase.TIMEOUT, Phase.QUOTA_REACHED})

_PHASE_RANK: dict[Phase, int] = {
    Phase.WAITING: 0,
    Phase.THINKING: 1,
    Phase.GENERATING: 2,
    Phase.COMPLETE: 3,
    Phase.TIMEOUT: 3,
    Phase.QUOTA_REACHED: 3,
}


class CompletionReason(str, enum.Enum):
    """Which rule ended the session."""
    STOP_STABLE = "stop_stable"
    POST_STREAM_STABLE = "post_stream_stable"
    ACTIVITY_QUIET = "activity_quiet"
    FALLBACK_STABLE = "fallback_stable"
    NO_SIGNAL = "no_signal"
    HARD_TIMEOUT = "hard_timeout"

    @property
    def is_timeout(self) -> bool:
        return self in (CompletionReason.NO_SIGNAL, CompletionReason.HARD_TIMEOUT)

    @property
    def checks_quota(self) -> bool:
        return self is not CompletionReason.HARD_TIMEOUT


# ─── Observation ────────────────────────────────────────────────────

@dataclass(frozen=True)
class Observation:
    """
    What one tick saw. None means "that query failed or had nothing";
    the engine keeps its previous value for that signal.
    """
    at: float
    active: bool | None = None
    activity: tuple[str, ...] | None = None
    text: str | None = None
    noise_only: bool = False
    noise_lines_dropped: int = 0

    @staticmethod
    def failed(at: float) -> Observation:
        """A tick whose queries produced nothing usable."""
        return Observation(at=at)


# ─── Configuration ──────────────────────────────────────────────────

@dataclass(frozen=True)
class MonitorConfig:
    """
    Timing knobs for completion detection. Durations in seconds.

    One strategy covers both streaming and final-only renders: short
    windows (stop_stable, post_stream_stable) fire when the application
    gives clear signals, long windows (activity_quiet, fallback_stable)
    catch renders that only ever show the final text.
    """
    poll_interval: float = 1.0
    stop_stable: float = 2.5          # active flag gone this long
    stop_gone_ticks: int = 3          # ...or gone this many consecutive ticks
    quiet_floor: float = 1.2          # text must also be unchanged this long
    post_stream_stable: float = 3.0
    activity_quiet: float = 5.0
    fallback_stable: float = 60.0
    no_signal_timeout: float = 30.0
    max_duration: float = 300.0       # 0 disables the hard timeout
    streaming_streak: int = 3         # consecutive growths that confirm streaming
    new_source_ratio: float = 0.5     # shrink below this fraction = new output source
    activity_key_chars: int = 200
    activity_line_chars: int = 300

    @staticmethod
    def from_config(section: dict[str, Any] | None) -> MonitorConfig:
        """Build from the `monitor:` section of watch_config.yaml."""
        section = section or {}
        d = MonitorConfig()
        kwargs: dict[str, Any] = {}
        for name in d.__dataclass_fields__:
            if name in section and section[name] is not None:
                kwargs[name] = type(getattr(d, name))(section[name])
        return MonitorConfig(**kwargs)


# ─── Result ─────────────────────────────────────────────────────────

@dataclass(frozen=True)
class CompletionResult:
    """Immutable terminal value; produced at most once per session."""
    final_text: str
    final_activity_log: tuple[str, ...]
    reason: CompletionReason
    timed_out: bool
    phase: Phase
    elapsed: float = 0.0

    @property
    def quota_reached(self) -> bool:
        return self.phase == Phase.QUOTA_REACHED

    def raise_for_outcome(self) -> CompletionResult:
        """Raise CompletionTimeout / QuotaExceeded; return self on completion."""
        if self.phase == Phase.QUOTA_REACHED:
            raise QuotaExceeded(self)
        if self.timed_out:
            raise CompletionTimeout(self)
        return self

    def to_dict(self) -> dict[str, Any]:
        return {
            "final_text": self.final_text,
            "final_activity_log": list(self.final_activity_log),
            "reason": self.reason.value,
            "timed_out": self.timed_out,
            "phase": self.phase.value,
            "elapsed_s": round(self.elapsed, 2),
        }


class CompletionTimeout(Exception):
    """Terminal, non-fatal: carries the best partial result."""

    def __init__(self, result: CompletionResult):
        self.result = result
        super().__init__(
            f"Completion timed out ({result.reason.value}) with "
            f"{len(result.final_text)} chars captured"
        )


class QuotaExceeded(Exception):
    """Terminal limit condition reported by the application."""

    def __init__(self, result: CompletionResult):
        self.result = result
        super().__init__(f"Quota reached ({len(result.final_text)} chars captured)")


# ─── Events ─────────────────────────────────────────────────────────

@dataclass(frozen=True)
class PhaseChanged:
    phase: Phase
    text: str | None


@dataclass(frozen=True)
class Progress:
    text: str


@dataclass(frozen=True)
class ActivityUpdate:
    lines: tuple[str, ...]


@dataclass(frozen=True)
class Completed:
    result: CompletionResult


@dataclass(frozen=True)
class TimedOut:
    result: CompletionResult


Event = PhaseChanged | Progress | ActivityUpdate | Completed | TimedOut
