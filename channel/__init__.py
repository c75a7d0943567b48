"""
Remote Watch — Remote Control Channel

Durable, session-correlated duplex RPC to a debuggable target:

  - channel.discovery:  find the target's websocket url over HTTP
  - channel.connection: Connection (correlated calls, events, reconnection)
  - channel.contexts:   ExecutionContext + priority selection
  - channel.query:      StateQuery (tolerant typed reads)
  - channel.pool:       ConnectionPool (one connection per workspace)
  - channel.errors:     error taxonomy

Usage:
    from channel import Connection, StateQuery

    conn = Connection()
    await conn.connect()
    title = await StateQuery(conn).ask("document.title", fallback="")
"""

from channel.errors import (
    ChannelError,
    RemoteError,
    CallTimeout,
    ChannelClosed,
    TargetNotFound,
    ReconnectExhausted,
    DispatchFailed,
)
from channel.discovery import TargetInfo, TargetRules, discover_target, select_target
from channel.contexts import ExecutionContext, ContextPriority
from channel.connection import ChannelOptions, Connection, ConnectionState
from channel.query import StateQuery
from channel.pool import ConnectionPool

__all__ = [
    "ChannelError",
    "RemoteError",
    "CallTimeout",
    "ChannelClosed",
    "TargetNotFound",
    "ReconnectExhausted",
    "DispatchFailed",
    "TargetInfo",
    "TargetRules",
    "discover_target",
    "select_target",
    "ExecutionContext",
    "ContextPriority",
    "ChannelOptions",
    "Connection",
    "ConnectionState",
    "StateQuery",
    "ConnectionPool",
]
