"""
Remote Watch — Remote Control Channel

One duplex websocket to one debuggable target, with request/response
correlation, out-of-band lifecycle events and bounded reconnection.

Wire format (JSON text frames):
  request   {"id": 7, "method": "Runtime.evaluate", "params": {...}}
  response  {"id": 7, "result": {...}}   or   {"id": 7, "error": {...}}
  event     {"method": "Runtime.executionContextCreated", "params": {...}}

Invariants:
  - every pending call settles exactly once (result, RemoteError,
    CallTimeout, ChannelClosed, or caller cancellation)
  - after any disconnect the pending table is empty; a response arriving
    after the clear finds no entry and is dropped
  - reconnection is single-flight and bounded; exhaustion emits
    reconnect_failed once and stops

Events (Connection.on):
  disconnected          ()
  reconnected           ()
  reconnect_failed      (ReconnectExhausted)
  context_created       (ExecutionContext)
  context_destroyed     (ExecutionContext)
  event                 (method, params)   every other notification

Usage:
    conn = Connection(ChannelOptions(call_timeout=10))
    conn.on("reconnect_failed", lambda err: alert(err))
    await conn.connect()
    result = await conn.call("Runtime.evaluate", {"expression": "1+1"})
    await conn.disconnect()
"""

from __future__ import annotations

import asyncio
import enum
import functools
import inspect
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

import websockets
from websockets.exceptions import ConnectionClosed

from channel.contexts import ContextPriority, ExecutionContext
from channel.discovery import (
    DEFAULT_HOST,
    DEFAULT_PORTS,
    TargetInfo,
    TargetRules,
    discover_target,
)
from channel.errors import (
    CallTimeout,
    ChannelClosed,
    ReconnectExhausted,
    RemoteError,
    TargetNotFound,
)

logger = logging.getLogger("remote_watch.channel")


class ConnectionState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


@dataclass
class ChannelOptions:
    """Knobs for one connection. Durations in seconds."""
    ports: tuple[int, ...] = DEFAULT_PORTS
    host: str = DEFAULT_HOST
    call_timeout: float = 30.0
    max_reconnect_attempts: int = 3     # 0 disables auto-reconnect
    reconnect_delay: float = 2.0        # fixed delay before each attempt
    discovery_timeout: float = 2.0      # per-port HTTP timeout
    open_timeout: float = 10.0          # websocket handshake
    enable_method: str = "Runtime.enable"
    rules: TargetRules = field(default_factory=TargetRules)
    priority: ContextPriority = field(default_factory=ContextPriority)

    @staticmethod
    def from_config(section: dict[str, Any] | None) -> ChannelOptions:
        """Build from the `channel:` section of watch_config.yaml."""
        section = section or {}
        d = ChannelOptions()
        return ChannelOptions(
            ports=tuple(int(p) for p in section.get("ports", d.ports)),
            host=str(section.get("host", d.host)),
            call_timeout=float(section.get("call_timeout", d.call_timeout)),
            max_reconnect_attempts=int(
                section.get("max_reconnect_attempts", d.max_reconnect_attempts)),
            reconnect_delay=float(section.get("reconnect_delay", d.reconnect_delay)),
            discovery_timeout=float(section.get("discovery_timeout", d.discovery_timeout)),
            open_timeout=float(section.get("open_timeout", d.open_timeout)),
            enable_method=str(section.get("enable_method", d.enable_method)),
            rules=TargetRules.from_config(section.get("targets")),
            priority=ContextPriority.from_config(section.get("contexts")),
        )


@dataclass
class _PendingCall:
    method: str
    future: asyncio.Future
    timer: asyncio.TimerHandle | None


async def _open_websocket(url: str, open_timeout: float = 10.0) -> Any:
    return await websockets.connect(
        url,
        max_size=None,
        ping_interval=None,
        open_timeout=open_timeout,
    )


Connector = Callable[[str], Awaitable[Any]]
Listener = Callable[..., Any]


class Connection:
    """
    Correlated RPC client over a single websocket.

    Args:
        options:         ChannelOptions (defaults if omitted)
        target:          pin a specific target; skips discovery
        preferred_title: rank targets whose title contains this first
        connector:       async url -> websocket (injectable for testing)
        discover:        async **kwargs -> TargetInfo (injectable for testing)
        sleep:           async sleep used between reconnect attempts
        name:            label for log lines (e.g. workspace name)
    """

    def __init__(
        self,
        options: ChannelOptions | None = None,
        target: TargetInfo | None = None,
        preferred_title: str | None = None,
        connector: Connector | None = None,
        discover: Callable[..., Awaitable[TargetInfo]] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        name: str = "",
    ):
        self.options = options or ChannelOptions()
        self.preferred_title = preferred_title
        self.name = name or preferred_title or "default"
        self.target: TargetInfo | None = target
        self.last_error: BaseException | None = None

        self._pinned_target = target
        self._connector = connector or functools.partial(
            _open_websocket, open_timeout=self.options.open_timeout)
        self._discover = discover or discover_target
        self._sleep = sleep

        self._ws: Any = None
        self._reader_task: asyncio.Task | None = None
        self._state = ConnectionState.DISCONNECTED
        self._next_id = 1
        self._pending: dict[int, _PendingCall] = {}
        self._contexts: dict[Any, ExecutionContext] = {}
        self._listeners: dict[str, list[Listener]] = {}

        self._auto_reconnect = self.options.max_reconnect_attempts > 0
        self._reconnecting = False
        self._reconnect_attempts = 0
        self._reconnect_task: asyncio.Task | None = None
        self._connect_task: asyncio.Task | None = None
        self._listener_tasks: set[asyncio.Future] = set()

    # ── Introspection ───────────────────────────────────────────

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED and self._ws is not None

    @property
    def contexts(self) -> list[ExecutionContext]:
        return list(self._contexts.values())

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def is_reconnecting(self) -> bool:
        return self._reconnecting

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    def ordered_contexts(self) -> list[ExecutionContext]:
        return self.options.priority.order(self.contexts)

    def primary_context_id(self) -> Any:
        ctx = self.options.priority.pick(self.contexts)
        return ctx.id if ctx is not None else None

    # ── Events ──────────────────────────────────────────────────

    def on(self, event: str, listener: Listener) -> None:
        self._listeners.setdefault(event, []).append(listener)

    def off(self, event: str, listener: Listener) -> None:
        listeners = self._listeners.get(event, [])
        if listener in listeners:
            listeners.remove(listener)

    def _emit(self, event: str, *args: Any) -> None:
        for listener in list(self._listeners.get(event, ())):
            try:
                result = listener(*args)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._listener_tasks.add(task)
                    task.add_done_callback(functools.partial(self._listener_done, event))
            except Exception:
                logger.exception("[%s] %s listener failed", self.name, event)

    def _listener_done(self, event: str, task: asyncio.Future) -> None:
        self._listener_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("[%s] async %s listener failed: %s", self.name, event, exc)

    # ── Lifecycle ───────────────────────────────────────────────

    async def connect(self) -> None:
        """
        Discover (unless pinned), open the websocket, then run the
        capability-enable call. Raises on any failure and leaves the
        connection DISCONNECTED.

        Single-flight: overlapping callers (a caller racing the reconnect
        loop, two pool users) await the same attempt and share one socket.

        Raises:
            ChannelClosed: disconnect() aborted the attempt
        """
        if self.is_connected:
            return
        task = self._connect_task
        if task is None or task.done():
            task = asyncio.ensure_future(self._open())
            self._connect_task = task
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            if not task.cancelled():
                raise
            raise ChannelClosed(f"[{self.name}] connect aborted by disconnect()") from None

    async def _open(self) -> None:
        self._state = ConnectionState.CONNECTING
        try:
            target = self._pinned_target or await self._discover(
                ports=self.options.ports,
                host=self.options.host,
                rules=self.options.rules,
                preferred_title=self.preferred_title,
                timeout=self.options.discovery_timeout,
            )
            if not target.websocket_url:
                raise TargetNotFound(self.options.ports, detail="target has no websocket url")
            ws = await self._connector(target.websocket_url)
        except BaseException:
            self._state = ConnectionState.DISCONNECTED
            raise

        self.target = target
        self._ws = ws
        self._contexts.clear()
        self._reader_task = asyncio.ensure_future(self._read_loop(ws))

        try:
            await self.call(self.options.enable_method, {})
        except BaseException:
            await self._abandon(ws, "capability enable failed")
            raise

        self._state = ConnectionState.CONNECTED
        logger.info(
            "[%s] Connected to %s (%d contexts)",
            self.name, target.title or target.websocket_url, len(self._contexts),
        )

    async def disconnect(self) -> None:
        """Terminal close. Disables auto-reconnect for this connection."""
        self._auto_reconnect = False
        for task in (self._reconnect_task, self._connect_task):
            if task is not None and not task.done() and task is not asyncio.current_task():
                task.cancel()
        await self._teardown("disconnect() called")

    async def retarget(
        self,
        preferred_title: str | None = None,
        target: TargetInfo | None = None,
    ) -> None:
        """
        Switch to another target on purpose. The current socket is closed
        without triggering reconnection, then connect() runs again.
        """
        if preferred_title is not None:
            self.preferred_title = preferred_title
        if target is not None:
            self._pinned_target = target
        await self._teardown("retarget")
        if self._pinned_target is None:
            self.target = None
        await self.connect()

    async def __aenter__(self) -> Connection:
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.disconnect()

    # ── Calls ───────────────────────────────────────────────────

    async def call(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        context_id: Any = None,
        timeout: float | None = None,
    ) -> Any:
        """
        Send one request and await its response.

        Raises:
            ChannelClosed: not connected, send failed, or closed while pending
            CallTimeout:   no response within timeout (default options.call_timeout)
            RemoteError:   the target answered with an error
        """
        ws = self._ws
        if ws is None:
            raise ChannelClosed(f"Not connected (calling {method})")

        payload = dict(params or {})
        if context_id is not None:
            payload["contextId"] = context_id

        call_id = self._next_id
        self._next_id += 1

        loop = asyncio.get_running_loop()
        future = loop.create_future()
        deadline = self.options.call_timeout if timeout is None else timeout
        timer = None
        if deadline and deadline > 0:
            timer = loop.call_later(deadline, self._expire, call_id, deadline)
        self._pending[call_id] = _PendingCall(method=method, future=future, timer=timer)
        future.add_done_callback(functools.partial(self._discard, call_id))

        try:
            await ws.send(json.dumps({"id": call_id, "method": method, "params": payload}))
        except Exception as e:
            self._settle(call_id, error=ChannelClosed(f"Send failed for {method}: {e}"))

        return await future

    def _settle(self, call_id: int, result: Any = None, error: BaseException | None = None) -> None:
        entry = self._pending.pop(call_id, None)
        if entry is None:
            return
        if entry.timer is not None:
            entry.timer.cancel()
        if entry.future.done():
            return
        if error is not None:
            entry.future.set_exception(error)
        else:
            entry.future.set_result(result)

    def _expire(self, call_id: int, deadline: float) -> None:
        entry = self._pending.get(call_id)
        if entry is None:
            return
        logger.warning("[%s] %s timed out after %.1fs (id=%d)",
                       self.name, entry.method, deadline, call_id)
        self._settle(call_id, error=CallTimeout(entry.method, deadline))

    def _discard(self, call_id: int, future: asyncio.Future) -> None:
        # Caller cancelled its await: drop the entry and its timer.
        entry = self._pending.get(call_id)
        if entry is not None and entry.future is future:
            del self._pending[call_id]
            if entry.timer is not None:
                entry.timer.cancel()

    def _reject_all(self, reason: str) -> int:
        """Reject and clear every pending call in one synchronous step."""
        pending, self._pending = self._pending, {}
        for entry in pending.values():
            if entry.timer is not None:
                entry.timer.cancel()
            if not entry.future.done():
                entry.future.set_exception(ChannelClosed(f"{reason} ({entry.method})"))
        return len(pending)

    # ── Inbound frames ──────────────────────────────────────────

    async def _read_loop(self, ws: Any) -> None:
        try:
            async for raw in ws:
                self._on_frame(raw)
        except ConnectionClosed as e:
            logger.warning("[%s] Websocket closed: %s", self.name, e)
        except OSError as e:
            logger.warning("[%s] Websocket transport error: %s", self.name, e)
        finally:
            if ws is self._ws:
                self._handle_close()

    def _on_frame(self, raw: Any) -> None:
        try:
            if isinstance(raw, (bytes, bytearray)):
                raw = raw.decode("utf-8")
            frame = json.loads(raw)
        except (ValueError, UnicodeDecodeError) as e:
            logger.debug("[%s] Dropping unparseable frame: %s", self.name, e)
            return
        if not isinstance(frame, dict):
            return
        try:
            self._dispatch_frame(frame)
        except (AttributeError, TypeError, KeyError, ValueError) as e:
            logger.debug("[%s] Dropping malformed frame %.200r: %s", self.name, frame, e)

    def _dispatch_frame(self, frame: dict[str, Any]) -> None:
        if "id" in frame:
            call_id = frame.get("id")
            entry = self._pending.get(call_id)
            if entry is None:
                logger.debug("[%s] Late or unknown response id=%s dropped", self.name, call_id)
                return
            if frame.get("error") is not None:
                self._settle(call_id, error=RemoteError(entry.method, frame["error"]))
            else:
                self._settle(call_id, result=frame.get("result"))
            return

        method = frame.get("method")
        if method:
            self._on_event(method, frame.get("params") or {})

    def _on_event(self, method: str, params: dict[str, Any]) -> None:
        if method == "Runtime.executionContextCreated":
            ctx = ExecutionContext.from_event(params)
            self._contexts[ctx.id] = ctx
            self._emit("context_created", ctx)
        elif method == "Runtime.executionContextDestroyed":
            ctx = self._contexts.pop(params.get("executionContextId"), None)
            if ctx is not None:
                self._emit("context_destroyed", ctx)
        elif method == "Runtime.executionContextsCleared":
            for ctx in list(self._contexts.values()):
                self._emit("context_destroyed", ctx)
            self._contexts.clear()
        else:
            self._emit("event", method, params)

    # ── Close handling & reconnection ───────────────────────────

    def _handle_close(self) -> None:
        """Unexpected close: reject, clear, notify, maybe reconnect."""
        was_connected = self._state == ConnectionState.CONNECTED
        self._ws = None
        self._state = ConnectionState.DISCONNECTED
        rejected = self._reject_all("Connection closed")
        self._contexts.clear()
        if self._pinned_target is None:
            self.target = None
        logger.warning("[%s] Disconnected (%d pending calls rejected)", self.name, rejected)
        self._emit("disconnected")

        if was_connected and self._auto_reconnect:
            self._start_reconnect()

    async def _teardown(self, reason: str) -> None:
        ws, reader = self._ws, self._reader_task
        was_open = ws is not None
        self._ws = None
        self._reader_task = None
        self._state = ConnectionState.DISCONNECTED
        self._reject_all(reason)
        self._contexts.clear()
        if ws is not None:
            try:
                await ws.close()
            except Exception as e:
                logger.debug("[%s] Error while closing websocket: %s", self.name, e)
        if reader is not None and not reader.done() and reader is not asyncio.current_task():
            reader.cancel()
        if was_open:
            logger.info("[%s] Closed: %s", self.name, reason)
            self._emit("disconnected")

    async def _abandon(self, ws: Any, reason: str) -> None:
        """Drop a socket that never finished connect()."""
        if self._ws is ws:
            self._ws = None
        self._state = ConnectionState.DISCONNECTED
        self._reject_all(reason)
        self._contexts.clear()
        try:
            await ws.close()
        except Exception as e:
            logger.debug("[%s] Error while closing abandoned websocket: %s", self.name, e)
        reader = self._reader_task
        self._reader_task = None
        if reader is not None and not reader.done():
            reader.cancel()

    def _start_reconnect(self) -> None:
        if self._reconnecting:
            return
        self._reconnecting = True
        self._reconnect_task = asyncio.ensure_future(self._reconnect_loop())

    async def _reconnect_loop(self) -> None:
        max_attempts = self.options.max_reconnect_attempts
        self._reconnect_attempts = 0
        last_error: BaseException | None = None
        try:
            while self._reconnect_attempts < max_attempts:
                self._reconnect_attempts += 1
                logger.warning(
                    "[%s] Reconnect attempt %d/%d in %.1fs",
                    self.name, self._reconnect_attempts, max_attempts,
                    self.options.reconnect_delay,
                )
                await self._sleep(self.options.reconnect_delay)
                if not self._auto_reconnect:
                    return
                try:
                    await self.connect()
                except Exception as e:
                    if not self._auto_reconnect:
                        return
                    last_error = e
                    logger.warning("[%s] Reconnect attempt %d failed: %s",
                                   self.name, self._reconnect_attempts, e)
                    continue

                logger.info("[%s] Reconnected", self.name)
                self._reconnect_attempts = 0
                self._reconnecting = False
                self._emit("reconnected")
                return

            error = ReconnectExhausted(max_attempts, last_error)
            self.last_error = error
            logger.error("[%s] %s. Manual restart required.", self.name, error)
            self._reconnecting = False
            self._emit("reconnect_failed", error)
        finally:
            self._reconnecting = False
