"""
In-memory stand-ins for the websocket, the connector and the clock.

FakeSocket speaks the same JSON frames as a real target: it answers
Runtime.enable (announcing its contexts first), routes Runtime.evaluate
to an `evaluate(expression, context_id)` callable, and can be closed
from the "remote" side with drop().
"""

import asyncio
import json

from channel.connection import ChannelOptions, Connection
from channel.discovery import TargetInfo

_CLOSE = object()

TARGET = TargetInfo(
    id="T1",
    type="page",
    title="my-app - Antigravity",
    url="vscode-file://vscode-app/workbench.html",
    websocket_url="ws://127.0.0.1:9222/devtools/page/T1",
    port=9222,
)

PANEL_CTX = {"id": 1, "name": "", "url": "vscode-webview://abc/cascade-panel.html", "origin": ""}
EXTENSION_CTX = {"id": 2, "name": "Extension Host", "url": "", "origin": ""}
PAGE_CTX = {"id": 3, "name": "", "url": "vscode-file://vscode-app/workbench.html", "origin": ""}


def value(v):
    return {"result": {"result": {"type": type(v).__name__, "value": v}}}


def thrown(message="ReferenceError: panel is not defined"):
    return {"result": {"result": {"type": "object", "subtype": "error"},
                       "exceptionDetails": {"text": message}}}


def remote_error(code=-32000, message="Cannot find context with specified id"):
    return {"error": {"code": code, "message": message}}


class FakeSocket:

    def __init__(self, contexts=(), evaluate=None, silent=()):
        self.contexts = list(contexts)
        self.evaluate = evaluate
        self.silent = set(silent)
        self.sent = []
        self.closed = False
        self._inbox = asyncio.Queue()

    async def send(self, data):
        if self.closed:
            raise ConnectionError("socket closed")
        frame = json.loads(data)
        self.sent.append(frame)
        method = frame["method"]
        if method in self.silent:
            return
        if method == "Runtime.enable":
            for ctx in self.contexts:
                self.push_event("Runtime.executionContextCreated", {"context": ctx})
            self.reply(frame["id"], {})
        elif method == "Runtime.evaluate" and self.evaluate is not None:
            params = frame["params"]
            body = self.evaluate(params["expression"], params.get("contextId"))
            if body is not None:
                self.push({"id": frame["id"], **body})
        else:
            self.reply(frame["id"], {})

    def methods(self):
        return [f["method"] for f in self.sent]

    def reply(self, call_id, result):
        self.push({"id": call_id, "result": result})

    def push(self, frame):
        self._inbox.put_nowait(json.dumps(frame))

    def push_event(self, method, params):
        self.push({"method": method, "params": params})

    def drop(self):
        """The remote end went away."""
        self.closed = True
        self._inbox.put_nowait(_CLOSE)

    async def close(self):
        self.closed = True
        self._inbox.put_nowait(_CLOSE)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._inbox.get()
        if item is _CLOSE:
            raise StopAsyncIteration
        return item


class FakeConnector:
    """Hands out queued sockets; an exception in the queue is raised instead."""

    def __init__(self, *items):
        self.queue = list(items)
        self.urls = []

    @property
    def calls(self):
        return len(self.urls)

    async def __call__(self, url):
        self.urls.append(url)
        if not self.queue:
            raise ConnectionRefusedError("connection refused")
        item = self.queue.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item


class RecordingSleep:

    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)
        await asyncio.sleep(0)


class FakeClock:
    """Monotonic clock advanced only by the paired sleep()."""

    def __init__(self, start=0.0):
        self.now = start
        self.sleeps = []

    def __call__(self):
        return self.now

    async def sleep(self, delay):
        self.sleeps.append(delay)
        self.now += delay
        await asyncio.sleep(0)


def make_connection(*sockets, **option_overrides):
    options = ChannelOptions(**option_overrides)
    connector = FakeConnector(*sockets)
    sleep = RecordingSleep()
    conn = Connection(options, target=TARGET, connector=connector, sleep=sleep, name="test")
    return conn, connector, sleep


async def settle(rounds=10):
    """Let queued frames and callbacks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)
