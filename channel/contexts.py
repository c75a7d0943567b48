"""
Remote Watch — Execution Contexts & Priority Selection

An execution context is an evaluation scope inside the target (a frame,
a webview, an extension host). The target announces them with
Runtime.executionContextCreated / Destroyed events; the connection keeps
the live set and this module decides which one a query should go to.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class ExecutionContext:
    """Opaque id plus the locator strings used for ranking."""
    id: int | str
    name: str = ""
    url: str = ""
    origin: str = ""

    @staticmethod
    def from_event(params: dict[str, Any]) -> ExecutionContext:
        ctx = params.get("context", params)
        return ExecutionContext(
            id=ctx.get("id"),
            name=str(ctx.get("name") or ""),
            url=str(ctx.get("url") or ctx.get("origin") or ""),
            origin=str(ctx.get("origin") or ""),
        )

    @property
    def locator(self) -> str:
        return f"{self.name} {self.url}".strip()


@dataclass(frozen=True)
class ContextPriority:
    """
    Primary contexts match primary_patterns against the url, secondary
    contexts match secondary_patterns against the name. Everything else
    keeps discovery order behind them.
    """
    primary_patterns: tuple[str, ...] = (r"cascade-panel",)
    secondary_patterns: tuple[str, ...] = (r"Extension",)
    _compiled: tuple = field(default=(), init=False, repr=False, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "_compiled", (
            [re.compile(p) for p in self.primary_patterns],
            [re.compile(p) for p in self.secondary_patterns],
        ))

    def is_primary(self, ctx: ExecutionContext) -> bool:
        return bool(ctx.url) and any(p.search(ctx.url) for p in self._compiled[0])

    def is_secondary(self, ctx: ExecutionContext) -> bool:
        return bool(ctx.name) and any(p.search(ctx.name) for p in self._compiled[1])

    def rank(self, ctx: ExecutionContext) -> int:
        if self.is_primary(ctx):
            return 0
        if self.is_secondary(ctx):
            return 1
        return 2

    def order(self, contexts: list[ExecutionContext]) -> list[ExecutionContext]:
        """Stable sort: primary, secondary, rest."""
        return sorted(contexts, key=self.rank)

    def preferred(self, contexts: list[ExecutionContext]) -> list[ExecutionContext]:
        """Primary and secondary contexts only, ranked."""
        return [c for c in self.order(contexts) if self.rank(c) < 2]

    def pick(self, contexts: list[ExecutionContext]) -> ExecutionContext | None:
        ordered = self.order(contexts)
        return ordered[0] if ordered else None

    @staticmethod
    def from_config(section: dict[str, Any] | None) -> ContextPriority:
        if not section:
            return ContextPriority()
        default = ContextPriority()
        return ContextPriority(
            primary_patterns=tuple(section.get("primary_patterns", default.primary_patterns)),
            secondary_patterns=tuple(section.get("secondary_patterns", default.secondary_patterns)),
        )
