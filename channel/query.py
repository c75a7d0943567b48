"""
Remote Watch — State Query

"Ask one typed question, get one typed answer, tolerate failure."

Every query evaluates a read-only expression with Runtime.evaluate and
unwraps result.result.value. Anything that goes wrong (not connected,
remote error, timeout, the expression threw, value of the wrong type)
becomes the caller's fallback. Queries are non-fatal by contract; the
only place a QueryFailure exists is inside this module.

Patterns:
  ask                     one context (priority-picked unless pinned)
  ask_any_context         first accepted answer in priority order
  ask_each                every context's answer, failures as None
  ask_all_contexts_merged union of list-of-string answers, discovery order
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable

from channel.connection import Connection
from channel.errors import ChannelError, QueryFailure

logger = logging.getLogger("remote_watch.query")

_PRIMARY = object()


def unwrap_evaluation(response: Any) -> Any:
    """
    Extract the by-value result of a Runtime.evaluate response.

    Raises:
        QueryFailure: malformed response or the expression threw
    """
    if not isinstance(response, dict):
        raise QueryFailure(f"Malformed evaluate response: {type(response).__name__}")
    details = response.get("exceptionDetails")
    if details:
        text = details.get("text") if isinstance(details, dict) else str(details)
        raise QueryFailure(f"Expression threw: {str(text)[:200]}")
    remote = response.get("result")
    if not isinstance(remote, dict):
        raise QueryFailure("Evaluate response has no result object")
    if remote.get("subtype") == "error":
        raise QueryFailure(f"Expression returned an error: {remote.get('description', '')[:200]}")
    return remote.get("value")


class StateQuery:
    """
    Tolerant read-only evaluation over a Connection.

    Args:
        connection: the channel to query through (passed explicitly)
        timeout:    per-query deadline; defaults to the connection's call timeout
    """

    def __init__(self, connection: Connection, timeout: float | None = None):
        self.connection = connection
        self.timeout = timeout

    def _params(self, expression: str) -> dict[str, Any]:
        return {
            "expression": expression,
            "returnByValue": True,
            "awaitPromise": True,
        }

    async def evaluate(self, expression: str, context_id: Any = None) -> Any:
        """
        Strict variant: raises ChannelError or QueryFailure instead of
        falling back. Used for writes such as input injection.
        """
        response = await self.connection.call(
            "Runtime.evaluate",
            self._params(expression),
            context_id=context_id,
            timeout=self.timeout,
        )
        return unwrap_evaluation(response)

    async def ask(
        self,
        expression: str,
        context_id: Any = _PRIMARY,
        fallback: Any = None,
        expect: type | tuple[type, ...] | None = None,
    ) -> Any:
        """
        Evaluate in one context. Without context_id the priority-selected
        context is used (or the target's default context if none is known).
        Returns fallback on any failure.
        """
        if context_id is _PRIMARY:
            context_id = self.connection.primary_context_id()
        try:
            value = await self.evaluate(expression, context_id=context_id)
        except (ChannelError, QueryFailure) as e:
            logger.debug("Query failed in context %s: %s", context_id, e)
            return fallback
        if value is None:
            return fallback
        if expect is not None and not isinstance(value, expect):
            logger.debug("Query in context %s returned %s, expected %s",
                         context_id, type(value).__name__, expect)
            return fallback
        return value

    def _context_ids(self) -> list[Any]:
        ordered = self.connection.ordered_contexts()
        if not ordered:
            return [None]
        return [c.id for c in ordered]

    async def ask_any_context(
        self,
        expression: str,
        fallback: Any = None,
        expect: type | tuple[type, ...] | None = None,
        accept: Callable[[Any], bool] | None = None,
    ) -> Any:
        """First accepted answer, trying contexts in priority order."""
        if accept is None:
            def accept(v: Any) -> bool:
                return v is not None and v != fallback

        for context_id in self._context_ids():
            value = await self.ask(expression, context_id, fallback=fallback, expect=expect)
            if accept(value):
                return value
        return fallback

    async def ask_each(
        self,
        expression: str,
        expect: type | tuple[type, ...] | None = None,
    ) -> list[Any]:
        """Every context's answer concurrently, priority order, failures as None."""
        ids = self._context_ids()
        return list(await asyncio.gather(
            *(self.ask(expression, cid, fallback=None, expect=expect) for cid in ids)
        ))

    async def ask_all_contexts_merged(self, expression: str) -> list[str]:
        """
        Merge list-of-string answers from every context. Entries are
        stripped, empty ones dropped, duplicates removed; order follows
        context priority, then each list's own order.
        """
        merged: list[str] = []
        seen: set[str] = set()
        for value in await self.ask_each(expression, expect=list):
            for item in value or ():
                if not isinstance(item, str):
                    continue
                line = item.replace("\r", "").strip()
                if line and line not in seen:
                    seen.add(line)
                    merged.append(line)
        return merged
