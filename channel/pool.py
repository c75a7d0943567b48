"""
Remote Watch — Connection Pool

One Connection per workspace, so switching to workspace B while a
session for workspace A is polling never tears down A's socket.

  - get_or_connect is single-flight per workspace: concurrent callers
    await the same connect task
  - a connection whose reconnection is exhausted is dropped from the pool
  - the pool is an explicit object handed to whoever needs it
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import PurePath
from typing import Any, Callable

from channel.connection import ChannelOptions, Connection

logger = logging.getLogger("remote_watch.pool")


def workspace_key(workspace_path: str) -> str:
    """Last path component of a workspace path ("/src/my-app/" → "my-app")."""
    name = PurePath(workspace_path.rstrip("/\\") or workspace_path).name
    return name or workspace_path


class ConnectionPool:

    def __init__(
        self,
        options: ChannelOptions | None = None,
        factory: Callable[..., Connection] | None = None,
    ):
        self.options = options or ChannelOptions()
        self._factory = factory or Connection
        self._connections: dict[str, Connection] = {}
        self._connecting: dict[str, asyncio.Task] = {}

    async def get_or_connect(self, workspace_path: str) -> Connection:
        key = workspace_key(workspace_path)

        existing = self._connections.get(key)
        if existing is not None and existing.is_connected:
            return existing

        pending = self._connecting.get(key)
        if pending is not None:
            return await asyncio.shield(pending)

        task = asyncio.ensure_future(self._create_and_connect(key))
        self._connecting[key] = task
        try:
            return await asyncio.shield(task)
        finally:
            if self._connecting.get(key) is task and task.done():
                del self._connecting[key]

    async def _create_and_connect(self, key: str) -> Connection:
        old = self._connections.pop(key, None)
        if old is not None:
            try:
                await old.disconnect()
            except Exception as e:
                logger.debug("Error while replacing connection for %s: %s", key, e)

        conn = self._factory(options=self.options, preferred_title=key, name=key)

        def _on_disconnected() -> None:
            logger.warning("Workspace %r disconnected", key)

        def _on_reconnect_failed(error: Any) -> None:
            logger.error("Reconnection failed for workspace %r, removing from pool: %s",
                         key, error)
            if self._connections.get(key) is conn:
                del self._connections[key]

        conn.on("disconnected", _on_disconnected)
        conn.on("reconnect_failed", _on_reconnect_failed)

        try:
            await conn.connect()
        finally:
            self._connecting.pop(key, None)
        self._connections[key] = conn
        return conn

    def get_connected(self, workspace: str) -> Connection | None:
        conn = self._connections.get(workspace_key(workspace))
        if conn is not None and conn.is_connected:
            return conn
        return None

    async def disconnect_workspace(self, workspace: str) -> None:
        key = workspace_key(workspace)
        conn = self._connections.pop(key, None)
        if conn is None:
            return
        try:
            await conn.disconnect()
        except Exception as e:
            logger.error("Error while disconnecting %s: %s", key, e)

    async def disconnect_all(self) -> None:
        for key in list(self._connections):
            await self.disconnect_workspace(key)

    def active_workspace_names(self) -> list[str]:
        return [k for k, c in self._connections.items() if c.is_connected]
