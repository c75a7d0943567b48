"""
Remote Watch — Monitor Session

The async shell around engine.machine. One session per dispatched input:

    session = MonitorSession(probes, config, callbacks, session_id="ws-main")
    await session.prepare()          # baseline: what was on screen before
    ... inject the input ...
    session.start()
    result = await session.wait()    # CompletionResult (None if stopped)

Tick loop (one asyncio task, ticks never overlap):
  observe (three probes concurrently) → step() → deliver events
  → on verdict: quota side channel (once) → conclude() → terminal event
  → otherwise sleep poll_interval and repeat

A failed tick is logged and folded in as an empty Observation, so the
time-based rules keep running. stop() cancels this session's task only;
the connection and other sessions are untouched.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from engine.logging import StructuredLogger
from engine.machine import MonitorState, Transition, conclude, step
from engine.probes import Probes
from engine.types import (
    ActivityUpdate,
    Completed,
    CompletionResult,
    Event,
    MonitorConfig,
    Observation,
    Phase,
    PhaseChanged,
    Progress,
    TimedOut,
)

logger = logging.getLogger("remote_watch.session")


@dataclass
class SessionCallbacks:
    """
    Optional listeners. Each may be a plain function or a coroutine
    function; exceptions are logged and never end the session.
    """
    on_phase_change: Callable[[Phase, str | None], Any] | None = None
    on_progress: Callable[[str], Any] | None = None
    on_activity: Callable[[tuple[str, ...]], Any] | None = None
    on_complete: Callable[[CompletionResult], Any] | None = None
    on_timeout: Callable[[str], Any] | None = None


class MonitorSession:
    """
    Tracks one dispatched input until a terminal phase.

    Args:
        probes:     observation source (engine.probes.Probes or a fake)
        config:     MonitorConfig timing knobs
        callbacks:  SessionCallbacks
        clock:      monotonic seconds; defaults to the event loop clock
        sleep:      async sleep between ticks (injectable for testing)
        session_id: label carried on every structured log line
        slog:       StructuredLogger (one is created if omitted)
    """

    def __init__(
        self,
        probes: Probes,
        config: MonitorConfig | None = None,
        callbacks: SessionCallbacks | None = None,
        clock: Callable[[], float] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        session_id: str = "",
        slog: StructuredLogger | None = None,
    ):
        self.probes = probes
        self.config = config or MonitorConfig()
        self.callbacks = callbacks or SessionCallbacks()
        self.session_id = session_id
        self.slog = slog or StructuredLogger(session=session_id)
        self._clock = clock
        self._sleep = sleep

        self._baseline_text: str | None = None
        self._baseline_activity: tuple[str, ...] = ()
        self._state: MonitorState | None = None
        self._task: asyncio.Task | None = None
        self._stopped = False

    # ── Introspection ───────────────────────────────────────────

    @property
    def trace_id(self) -> str:
        return self.slog.trace_id

    @property
    def state(self) -> MonitorState | None:
        return self._state

    @property
    def phase(self) -> Phase:
        return self._state.phase if self._state is not None else Phase.WAITING

    @property
    def last_text(self) -> str | None:
        return self._state.last_text if self._state is not None else None

    @property
    def result(self) -> CompletionResult | None:
        return self._state.result if self._state is not None else None

    @property
    def is_active(self) -> bool:
        return self._task is not None and not self._task.done()

    # ── Lifecycle ───────────────────────────────────────────────

    async def prepare(self) -> None:
        """Capture the baseline. Call before the input is injected."""
        self._baseline_text, self._baseline_activity = await self.probes.baseline()
        logger.debug(
            "[%s] Baseline captured: %d chars, %d activity lines",
            self.session_id, len(self._baseline_text or ""), len(self._baseline_activity),
        )

    def start(self, passive: bool = False) -> MonitorSession:
        """
        Begin ticking. Passive sessions join an operation that is already
        running: they start in GENERATING and ignore the baseline.
        """
        if self._task is not None:
            raise RuntimeError(f"Session {self.session_id!r} already started")
        if self._clock is None:
            self._clock = asyncio.get_running_loop().time

        self._state = MonitorState.start(
            self._clock(),
            baseline_text=self._baseline_text,
            baseline_activity=self._baseline_activity,
            passive=passive,
            key_chars=self.config.activity_key_chars,
        )
        self.slog.on_session_start(
            passive=passive,
            poll_interval=self.config.poll_interval,
            max_duration=self.config.max_duration,
            baseline_chars=len(self._baseline_text or ""),
        )
        self._task = asyncio.ensure_future(self._run())
        return self

    async def stop(self) -> None:
        """Cancel this session. Idempotent; no events are emitted afterwards."""
        if self._stopped:
            return
        self._stopped = True
        task = self._task
        if task is None or task.done():
            return
        self.slog.on_stopped(self.phase.value)
        if task is asyncio.current_task():
            # Called from inside a callback; the loop exits on its own.
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def wait(self) -> CompletionResult | None:
        """
        Wait for the terminal result. Returns None if the session was
        stopped first. Cancelling the waiter does not cancel the session.
        """
        if self._task is None:
            raise RuntimeError(f"Session {self.session_id!r} was never started")
        try:
            await asyncio.shield(self._task)
        except asyncio.CancelledError:
            if not self._task.cancelled():
                raise
        return self.result

    async def interrupt(self) -> bool:
        """Press the application's stop control, then stop monitoring."""
        clicked = await self.probes.click_stop()
        await self.stop()
        return clicked

    # ── Tick loop ───────────────────────────────────────────────

    async def _run(self) -> None:
        tick = 0
        while not self._stopped:
            tick += 1
            now = self._clock()
            try:
                obs = await self.probes.observe(now)
            except Exception as e:
                self.slog.on_tick_failed(tick, f"{type(e).__name__}: {e}")
                obs = Observation.failed(now)

            transition = step(self._state, obs, self.config)
            self._state = transition.state
            self.slog.on_tick(
                tick, obs.active,
                len(self._state.last_text or ""),
                len(self._state.activity_log),
            )
            await self._deliver(transition.events)

            if transition.verdict is not None and not self._stopped:
                await self._finish(transition)
                return
            await self._sleep(self.config.poll_interval)

    async def _finish(self, transition: Transition) -> None:
        verdict = transition.verdict
        quota = False
        if verdict.reason.checks_quota:
            try:
                quota = bool(await self.probes.quota())
            except Exception as e:
                logger.warning("[%s] Quota check failed: %s", self.session_id, e)
            self.slog.on_quota_check(verdict.reason.value, quota)

        self._state, events = conclude(self._state, verdict, quota)
        result = self._state.result
        self.slog.on_completion(
            phase=result.phase.value,
            reason=result.reason.value,
            text_chars=len(result.final_text),
            timed_out=result.timed_out,
            elapsed_s=result.elapsed,
        )
        await self._deliver(events)

    async def _deliver(self, events: tuple[Event, ...]) -> None:
        cb = self.callbacks
        for event in events:
            if self._stopped:
                return
            if isinstance(event, PhaseChanged):
                self.slog.on_phase_change(event.phase.value, len(event.text or ""))
                await self._invoke("on_phase_change", cb.on_phase_change, event.phase, event.text)
            elif isinstance(event, Progress):
                await self._invoke("on_progress", cb.on_progress, event.text)
            elif isinstance(event, ActivityUpdate):
                await self._invoke("on_activity", cb.on_activity, event.lines)
            elif isinstance(event, Completed):
                await self._invoke("on_complete", cb.on_complete, event.result)
            elif isinstance(event, TimedOut):
                await self._invoke("on_timeout", cb.on_timeout, event.result.final_text)

    async def _invoke(self, name: str, fn: Callable[..., Any] | None, *args: Any) -> None:
        if fn is None:
            return
        try:
            result = fn(*args)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.exception("[%s] %s callback failed", self.session_id, name)
            self.slog.on_callback_error(name, f"{type(e).__name__}: {e}")
