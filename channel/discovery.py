"""
Remote Watch — Target Discovery

The controlled application exposes a remote-debugging HTTP endpoint on
one of several well-known ports. GET /json/list returns the addressable
targets; we pick the one that looks like the application's main window
and hand its webSocketDebuggerUrl to the connection.

Selection is tiered (first non-empty tier wins):
  0. preferred title (workspace name) + tier-1 rules, if a title is given
  1. type == "page", matches app keywords, not excluded by title or url
  2. any type, matches app keywords, not excluded by title
  3. any type, matches app keywords or a launcher title

Usage:
    from channel.discovery import discover_target, TargetRules

    target = await discover_target(ports=(9222, 9223), rules=TargetRules())
    print(target.websocket_url)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import httpx

from channel.errors import TargetNotFound

logger = logging.getLogger("remote_watch.discovery")

DEFAULT_PORTS: tuple[int, ...] = (9222, 9223, 9333, 9444, 9555, 9666)
DEFAULT_HOST = "127.0.0.1"


@dataclass(frozen=True)
class TargetInfo:
    """One entry from /json/list."""
    id: str
    type: str
    title: str
    url: str
    websocket_url: str | None
    port: int = 0

    @staticmethod
    def from_json(entry: dict[str, Any], port: int = 0) -> TargetInfo:
        return TargetInfo(
            id=str(entry.get("id", "")),
            type=str(entry.get("type", "")),
            title=str(entry.get("title") or ""),
            url=str(entry.get("url") or ""),
            websocket_url=entry.get("webSocketDebuggerUrl") or None,
            port=port,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "title": self.title,
            "url": self.url,
            "websocket_url": self.websocket_url,
            "port": self.port,
        }


@dataclass(frozen=True)
class TargetRules:
    """Keyword rules that recognise the application's main window."""
    url_keywords: tuple[str, ...] = ("workbench",)
    title_keywords: tuple[str, ...] = ("Antigravity", "Cascade")
    launcher_titles: tuple[str, ...] = ("Launchpad",)
    excluded_url_keywords: tuple[str, ...] = ("workbench-jetski-agent",)

    def matches_app(self, t: TargetInfo) -> bool:
        return (
            any(k in t.url for k in self.url_keywords)
            or any(k in t.title for k in self.title_keywords)
        )

    def is_launcher(self, t: TargetInfo) -> bool:
        return any(k in t.title for k in self.launcher_titles)

    def is_excluded_url(self, t: TargetInfo) -> bool:
        return any(k in t.url for k in self.excluded_url_keywords)

    @staticmethod
    def from_config(section: dict[str, Any] | None) -> TargetRules:
        if not section:
            return TargetRules()
        default = TargetRules()
        return TargetRules(
            url_keywords=tuple(section.get("url_keywords", default.url_keywords)),
            title_keywords=tuple(section.get("title_keywords", default.title_keywords)),
            launcher_titles=tuple(section.get("launcher_titles", default.launcher_titles)),
            excluded_url_keywords=tuple(
                section.get("excluded_url_keywords", default.excluded_url_keywords)),
        )


def select_target(
    targets: list[TargetInfo],
    rules: TargetRules | None = None,
    preferred_title: str | None = None,
) -> TargetInfo | None:
    """Apply the tiered selection to one port's target list."""
    rules = rules or TargetRules()
    usable = [t for t in targets if t.websocket_url]

    def tier1(t: TargetInfo) -> bool:
        return (
            t.type == "page"
            and not rules.is_launcher(t)
            and not rules.is_excluded_url(t)
            and rules.matches_app(t)
        )

    if preferred_title:
        for t in usable:
            if preferred_title in t.title and tier1(t):
                return t

    for t in usable:
        if tier1(t):
            return t
    for t in usable:
        if rules.matches_app(t) and not rules.is_launcher(t):
            return t
    for t in usable:
        if rules.matches_app(t) or rules.is_launcher(t):
            return t
    return None


async def fetch_targets(
    port: int,
    host: str = DEFAULT_HOST,
    timeout: float = 2.0,
    client: httpx.AsyncClient | None = None,
) -> list[TargetInfo]:
    """GET /json/list on one port. Raises httpx errors / ValueError on failure."""
    url = f"http://{host}:{port}/json/list"
    if client is None:
        async with httpx.AsyncClient(timeout=timeout) as own_client:
            response = await own_client.get(url)
    else:
        response = await client.get(url, timeout=timeout)
    response.raise_for_status()
    payload = response.json()
    if not isinstance(payload, list):
        raise ValueError(f"{url} returned {type(payload).__name__}, expected list")
    return [TargetInfo.from_json(e, port=port) for e in payload if isinstance(e, dict)]


async def list_all_targets(
    ports: tuple[int, ...] | list[int] = DEFAULT_PORTS,
    host: str = DEFAULT_HOST,
    timeout: float = 2.0,
    client: httpx.AsyncClient | None = None,
) -> list[TargetInfo]:
    """Every target on every reachable port. Unreachable ports are skipped."""
    found: list[TargetInfo] = []
    for port in ports:
        try:
            found.extend(await fetch_targets(port, host=host, timeout=timeout, client=client))
        except (httpx.HTTPError, ValueError) as e:
            logger.debug("Port %d not answering: %s", port, e)
    return found


async def discover_target(
    ports: tuple[int, ...] | list[int] = DEFAULT_PORTS,
    host: str = DEFAULT_HOST,
    rules: TargetRules | None = None,
    preferred_title: str | None = None,
    timeout: float = 2.0,
    client: httpx.AsyncClient | None = None,
) -> TargetInfo:
    """
    Scan candidate ports in order and return the first selectable target.

    Raises:
        TargetNotFound: no port answered with a usable target
    """
    errors: list[str] = []
    for port in ports:
        try:
            targets = await fetch_targets(port, host=host, timeout=timeout, client=client)
        except (httpx.HTTPError, ValueError) as e:
            errors.append(f"{port}: {type(e).__name__}")
            continue
        target = select_target(targets, rules=rules, preferred_title=preferred_title)
        if target is not None:
            logger.info(
                "Discovered target on port %d: %s (%s)",
                port, target.title or target.id, target.type,
            )
            return target
        logger.debug("Port %d answered with %d targets, none selectable", port, len(targets))
    raise TargetNotFound(ports, detail=", ".join(errors))
