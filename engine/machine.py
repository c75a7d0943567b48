"""
Remote Watch — Completion Detection State Machine

Pure logic, no I/O, no timers. The session loop (engine.session) feeds
one Observation per tick into step() and, when step() returns a verdict,
runs the quota side channel and calls conclude().

    state = MonitorState.start(now)
    t = step(state, observation, config)      # → Transition(state, events, verdict)
    if t.verdict:
        quota = await probes.quota()           # side channel, once
        state, events = conclude(t.state, t.verdict, quota)

Per-tick update order:
  1. text      change tracking, growth streak, new-source reset
  2. activity  snapshot change time, deduplicated activity log
  3. flag      ever-seen, gone-since (only after it was seen true once)

Completion rules, first match wins (see _evaluate):
  stop_stable → post_stream_stable → activity_quiet → fallback_stable
  → no_signal → hard_timeout
"""

from __future__ import annotations

from dataclasses import dataclass, replace

from engine.types import (
    ActivityUpdate,
    Completed,
    CompletionReason,
    CompletionResult,
    Event,
    MonitorConfig,
    Observation,
    Phase,
    PhaseChanged,
    Progress,
    TimedOut,
)


class InvalidTransition(Exception):
    """Raised when a phase change would move backwards."""
    pass


@dataclass(frozen=True)
class MonitorState:
    """Everything the engine remembers between ticks."""
    phase: Phase
    started_at: float
    last_text: str | None = None
    last_text_changed_at: float = 0.0
    last_activity_snapshot: tuple[str, ...] = ()
    last_activity_changed_at: float = 0.0
    activity_log: tuple[str, ...] = ()
    activity_ever_seen: bool = False
    active_now: bool = False
    active_flag_ever_seen: bool = False
    active_gone_since: float | None = None
    active_gone_ticks: int = 0
    text_growth_streak: int = 0
    streaming_confirmed: bool = False
    dropped_noise_line_count: int = 0
    baseline_text: str | None = None
    seen_activity_keys: frozenset[str] = frozenset()
    ticks: int = 0
    result: CompletionResult | None = None

    @staticmethod
    def start(
        now: float,
        baseline_text: str | None = None,
        baseline_activity: tuple[str, ...] | list[str] = (),
        passive: bool = False,
        key_chars: int = 200,
    ) -> MonitorState:
        """
        Fresh session state. Baseline text and activity (what was on
        screen before the input was dispatched) are never reported as
        new output. Passive sessions join an operation already running:
        they start in GENERATING and skip baseline suppression.
        """
        keys = frozenset(
            _activity_key(line, key_chars) for line in baseline_activity if line.strip()
        )
        return MonitorState(
            phase=Phase.GENERATING if passive else Phase.WAITING,
            started_at=now,
            last_text_changed_at=now,
            last_activity_changed_at=now,
            baseline_text=None if passive else (baseline_text or None),
            seen_activity_keys=frozenset() if passive else keys,
        )

    @property
    def is_terminal(self) -> bool:
        return self.phase.is_terminal

    @property
    def has_generation_signal(self) -> bool:
        return (
            self.active_flag_ever_seen
            or self.activity_ever_seen
            or bool(self.last_text)
        )


@dataclass(frozen=True)
class Verdict:
    """A completion rule matched; the session must conclude()."""
    reason: CompletionReason
    at: float


@dataclass(frozen=True)
class Transition:
    state: MonitorState
    events: tuple[Event, ...] = ()
    verdict: Verdict | None = None


def _activity_key(line: str, key_chars: int) -> str:
    return line.replace("\r", "").strip()[:key_chars]


def _advance(state: MonitorState, phase: Phase, text: str | None,
             events: list[Event]) -> MonitorState:
    if phase == state.phase:
        return state
    if phase.rank <= state.phase.rank:
        raise InvalidTransition(f"{state.phase.value} → {phase.value} is not allowed")
    events.append(PhaseChanged(phase=phase, text=text))
    return replace(state, phase=phase)


# ═══════════════════════════════════════════════════════════════════
# Update Rules
# ═══════════════════════════════════════════════════════════════════

def _apply_text(state: MonitorState, obs: Observation, config: MonitorConfig,
                events: list[Event]) -> MonitorState:
    dropped = state.dropped_noise_line_count + obs.noise_lines_dropped
    text = None if obs.noise_only else obs.text
    if text is not None:
        text = text.strip() or None
    if (
        text is not None
        and state.last_text is None
        and state.baseline_text is not None
        and text == state.baseline_text
    ):
        text = None

    if text is None or text == state.last_text:
        return replace(state, dropped_noise_line_count=dropped)

    prev_len = len(state.last_text or "")
    streak = state.text_growth_streak
    streaming = state.streaming_confirmed
    if prev_len and len(text) < prev_len * config.new_source_ratio:
        # A different output replaced the one we were following.
        streak = 0
        dropped = obs.noise_lines_dropped
    elif len(text) > prev_len:
        streak += 1
        if streak >= config.streaming_streak:
            streaming = True
    else:
        streak = 0

    state = replace(
        state,
        last_text=text,
        last_text_changed_at=obs.at,
        text_growth_streak=streak,
        streaming_confirmed=streaming,
        dropped_noise_line_count=dropped,
    )
    events.append(Progress(text=text))
    if state.phase in (Phase.WAITING, Phase.THINKING):
        state = _advance(state, Phase.GENERATING, text, events)
    return state


def _apply_activity(state: MonitorState, obs: Observation, config: MonitorConfig,
                    events: list[Event]) -> MonitorState:
    if obs.activity is None:
        return state
    snapshot = tuple(obs.activity)
    if snapshot == state.last_activity_snapshot:
        return state

    seen = set(state.seen_activity_keys)
    fresh: list[str] = []
    for line in snapshot:
        normalized = line.replace("\r", "").strip()
        if not normalized:
            continue
        key = normalized[:config.activity_key_chars]
        if key in seen:
            continue
        seen.add(key)
        fresh.append(normalized[:config.activity_line_chars])

    state = replace(
        state,
        last_activity_snapshot=snapshot,
        last_activity_changed_at=obs.at,
        seen_activity_keys=frozenset(seen),
    )
    if fresh:
        state = replace(
            state,
            activity_log=state.activity_log + tuple(fresh),
            activity_ever_seen=True,
        )
        events.append(ActivityUpdate(lines=tuple(fresh)))
        if state.phase == Phase.WAITING:
            state = _advance(state, Phase.THINKING, None, events)
    return state


def _apply_flag(state: MonitorState, obs: Observation,
                events: list[Event]) -> MonitorState:
    if obs.active is None:
        return state
    if obs.active:
        state = replace(
            state,
            active_now=True,
            active_flag_ever_seen=True,
            active_gone_since=None,
            active_gone_ticks=0,
        )
        if state.phase == Phase.WAITING:
            state = _advance(state, Phase.THINKING, None, events)
        return state

    if not state.active_flag_ever_seen:
        # A flag never seen true must not start the completion clock.
        return replace(state, active_now=False)
    return replace(
        state,
        active_now=False,
        active_gone_since=obs.at if state.active_gone_since is None else state.active_gone_since,
        active_gone_ticks=state.active_gone_ticks + 1,
    )


# ═══════════════════════════════════════════════════════════════════
# Completion Evaluation
# ═══════════════════════════════════════════════════════════════════

def _evaluate(state: MonitorState, now: float, config: MonitorConfig) -> CompletionReason | None:
    elapsed = now - state.started_at
    text_quiet = now - state.last_text_changed_at

    if state.has_generation_signal:
        if state.active_gone_since is not None and text_quiet >= config.quiet_floor:
            gone_for = now - state.active_gone_since
            if gone_for >= config.stop_stable or state.active_gone_ticks >= config.stop_gone_ticks:
                return CompletionReason.STOP_STABLE

        if (
            state.streaming_confirmed
            and not state.active_now
            and text_quiet >= config.post_stream_stable
        ):
            return CompletionReason.POST_STREAM_STABLE

        if (
            not state.active_flag_ever_seen
            and not state.streaming_confirmed
            and now - state.last_activity_changed_at >= config.activity_quiet
            and text_quiet >= config.activity_quiet
        ):
            return CompletionReason.ACTIVITY_QUIET

        if text_quiet >= config.fallback_stable:
            return CompletionReason.FALLBACK_STABLE

    elif elapsed >= config.no_signal_timeout:
        return CompletionReason.NO_SIGNAL

    if config.max_duration > 0 and elapsed >= config.max_duration:
        return CompletionReason.HARD_TIMEOUT
    return None


def step(state: MonitorState, obs: Observation, config: MonitorConfig) -> Transition:
    """Fold one observation into the state. Terminal states are absorbing."""
    if state.is_terminal:
        return Transition(state=state)

    events: list[Event] = []
    state = replace(state, ticks=state.ticks + 1)
    state = _apply_text(state, obs, config, events)
    state = _apply_activity(state, obs, config, events)
    state = _apply_flag(state, obs, events)

    reason = _evaluate(state, obs.at, config)
    verdict = Verdict(reason=reason, at=obs.at) if reason is not None else None
    return Transition(state=state, events=tuple(events), verdict=verdict)


def conclude(
    state: MonitorState,
    verdict: Verdict,
    quota_reached: bool = False,
) -> tuple[MonitorState, tuple[Event, ...]]:
    """
    Turn a verdict into the terminal phase and the single completion
    event. quota_reached is only honoured for reasons that check quota.
    """
    if state.is_terminal:
        return state, ()

    reason = verdict.reason
    quota = quota_reached and reason.checks_quota
    if quota:
        phase = Phase.QUOTA_REACHED
    elif reason.is_timeout:
        phase = Phase.TIMEOUT
    else:
        phase = Phase.COMPLETE

    if reason == CompletionReason.NO_SIGNAL:
        final_text = ""
    else:
        final_text = state.last_text or ""

    result = CompletionResult(
        final_text=final_text,
        final_activity_log=state.activity_log,
        reason=reason,
        timed_out=reason.is_timeout and not quota,
        phase=phase,
        elapsed=verdict.at - state.started_at,
    )

    events: list[Event] = []
    state = _advance(state, phase, final_text, events)
    state = replace(state, result=result)
    events.append(TimedOut(result) if phase == Phase.TIMEOUT else Completed(result))
    return state, tuple(events)
