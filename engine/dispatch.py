"""
Remote Watch — Input Dispatch

Delivers one input to the target and hands back the MonitorSession that
tracks it:

    dispatcher = Dispatcher(conn, MonitorConfig.from_config(cfg.get("monitor")))
    session = await dispatcher.dispatch("summarise the open file", callbacks)
    result = await session.wait()

Order matters: the baseline is captured before injection so text that
was already on screen is never reported as the new output.

Injection tries the preferred contexts (primary, then secondary) first
and every remaining context after that; the first context whose script
reports {"ok": true} wins.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

from channel.connection import Connection
from channel.errors import ChannelClosed, ChannelError, DispatchFailed, QueryFailure
from channel.query import StateQuery
from engine.logging import StructuredLogger, generate_trace_id
from engine.noise import NoiseClassifier
from engine.probes import Probes, ProbeSet
from engine.session import MonitorSession, SessionCallbacks
from engine.types import MonitorConfig

logger = logging.getLogger("remote_watch.dispatch")


class Dispatcher:
    """
    Owns the probes for one connection and creates sessions on it.

    Args:
        connection:    the channel (passed explicitly, never global)
        config:        MonitorConfig for sessions created here
        probe_set:     expressions; defaults to ProbeSet()
        classifier:    noise classifier for candidate text
        query_timeout: per-query deadline (default: the connection's)
        clock, sleep:  forwarded to sessions (injectable for testing)
    """

    def __init__(
        self,
        connection: Connection,
        config: MonitorConfig | None = None,
        probe_set: ProbeSet | None = None,
        classifier: NoiseClassifier | None = None,
        query_timeout: float | None = None,
        clock: Callable[[], float] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.connection = connection
        self.config = config or MonitorConfig()
        self.query = StateQuery(connection, timeout=query_timeout)
        self.probes = Probes(self.query, probe_set, classifier, self.config)
        self._clock = clock
        self._sleep = sleep
        self._sessions: list[MonitorSession] = []

    @property
    def active_sessions(self) -> list[MonitorSession]:
        self._sessions = [s for s in self._sessions if s.is_active]
        return list(self._sessions)

    def _injection_order(self) -> list[Any]:
        contexts = self.connection.contexts
        if not contexts:
            return [None]
        priority = self.connection.options.priority
        preferred = priority.preferred(contexts)
        rest = [c for c in priority.order(contexts) if c not in preferred]
        return [c.id for c in preferred + rest]

    async def inject(self, payload: str) -> dict[str, Any]:
        """
        Type payload into the application's input and submit it.

        Returns the script's result plus the context_id that accepted it.

        Raises:
            DispatchFailed: no context accepted the input
        """
        expression = self.probes.probe_set.inject_expression(payload)
        order = self._injection_order()
        last_error = ""
        for context_id in order:
            try:
                value = await self.query.evaluate(expression, context_id=context_id)
            except (ChannelError, QueryFailure) as e:
                last_error = str(e)
                logger.debug("Injection failed in context %s: %s", context_id, e)
                continue
            if isinstance(value, dict) and value.get("ok"):
                logger.info("Input injected via context %s (%s)",
                            context_id, value.get("method", "?"))
                return {**value, "context_id": context_id}
            if isinstance(value, dict):
                last_error = str(value.get("error", ""))
        raise DispatchFailed(len(order), detail=last_error)

    def new_session(
        self,
        callbacks: SessionCallbacks | None = None,
        session_id: str | None = None,
    ) -> MonitorSession:
        session_id = session_id or f"{self.connection.name}-{generate_trace_id()[:8]}"
        session = MonitorSession(
            self.probes,
            config=self.config,
            callbacks=callbacks,
            clock=self._clock,
            sleep=self._sleep,
            session_id=session_id,
            slog=StructuredLogger(session=session_id),
        )
        self._sessions.append(session)
        return session

    async def dispatch(
        self,
        payload: str,
        callbacks: SessionCallbacks | None = None,
        session_id: str | None = None,
    ) -> MonitorSession:
        """
        Baseline, inject, start monitoring. Returns the running session.

        Raises:
            ChannelClosed:  the connection is not up
            DispatchFailed: the input was not accepted (the session is stopped)
        """
        if not self.connection.is_connected:
            raise ChannelClosed(f"Cannot dispatch: {self.connection.name} is not connected")

        session = self.new_session(callbacks, session_id)
        await session.prepare()
        try:
            await self.inject(payload)
        except DispatchFailed:
            await session.stop()
            raise
        return session.start()

    async def watch(
        self,
        callbacks: SessionCallbacks | None = None,
        session_id: str | None = None,
    ) -> MonitorSession:
        """Join an operation already running in the target (passive mode)."""
        session = self.new_session(callbacks, session_id)
        return session.start(passive=True)

    async def stop_all(self) -> None:
        for session in list(self._sessions):
            await session.stop()
        self._sessions = []
