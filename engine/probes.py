"""
Remote Watch — Probe Set

A probe is a read-only expression evaluated in the target through
StateQuery. The engine never parses markup itself: each probe returns a
plain value (bool, list of strings, string) and the Python side decides
what it means.

Probes per tick (gathered concurrently):
  active    is the application's stop control visible         → bool
  activity  short-lived process narration lines               → list[str]
  text      newest candidate output, noise-filtered in Python → str

Side channel, checked once when a completion rule fires:
  quota     exhaustion / rate-limit banner visible            → bool

Actions (strict, not probes):
  click_stop   press the stop control
  inject       type a payload into the input box and submit

Expressions can be replaced from the `probes:` config section; the
defaults target a chat panel whose stop control carries a cancel
tooltip or a "Stop"/"Stop generating" label.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, fields
from typing import Any

from channel.query import StateQuery
from engine.noise import NoiseClassifier, PatternNoiseClassifier, filter_candidate
from engine.types import MonitorConfig, Observation

logger = logging.getLogger("remote_watch.probes")


# ═══════════════════════════════════════════════════════════════════
# Default Expressions
# ═══════════════════════════════════════════════════════════════════

_SCOPES = """
        const panel = document.querySelector('.antigravity-agent-side-panel');
        const scopes = [panel, document].filter(Boolean);"""

_STOP_LOOKUP = """
        const normalize = (v) => (v || '').toLowerCase().replace(/\\s+/g, ' ').trim();
        const STOP = [/^stop$/, /^stop generating$/, /^stop response$/];
        const isStop = (btn) => [
            btn.textContent || '',
            btn.getAttribute('aria-label') || '',
            btn.getAttribute('title') || '',
        ].some((v) => STOP.some((re) => re.test(normalize(v))));
        const findStop = () => {
            for (const scope of scopes) {
                const el = scope.querySelector('[data-tooltip-id="input-send-button-cancel-tooltip"]');
                if (el) return el;
            }
            for (const scope of scopes) {
                const btn = Array.from(scope.querySelectorAll('button, [role="button"]')).find(isStop);
                if (btn) return btn;
            }
            return null;
        };"""

_CANDIDATES = """
        const SELECTOR = [
            '.rendered-markdown', '.leading-relaxed.select-text',
            '[data-message-author-role="assistant"]', '[data-message-role="assistant"]',
            '[class*="assistant-message"]', '[class*="message-content"]',
            '[class*="markdown-body"]', '.prose',
        ].join(', ');
        const excluded = (node) => !!node.closest(
            'details, [class*="feedback"], footer, .notify-user-container, [role="dialog"]');
        const textOf = (node) => (node.innerText || node.textContent || '').replace(/\\r/g, '').trim();"""

DEFAULT_ACTIVE = f"""(() => {{{_SCOPES}{_STOP_LOOKUP}
        return findStop() !== null;
    }})()"""

DEFAULT_ACTIVITY = f"""(() => {{{_SCOPES}{_CANDIDATES}
        const ACTIVITY = /^(?:analy[sz]ing|reading|writing|running|searching|planning|thinking|processing|executing|fetching|creating|updating|checking|initiating|thought for)\\b/i;
        const out = [];
        const seen = new Set();
        for (const scope of scopes) {{
            for (const node of scope.querySelectorAll(SELECTOR)) {{
                if (seen.has(node)) continue;
                seen.add(node);
                const text = textOf(node);
                if (text.length < 4) continue;
                if (ACTIVITY.test(text) || excluded(node)) out.push(text.slice(0, 300));
            }}
        }}
        return out;
    }})()"""

DEFAULT_TEXT = f"""(() => {{{_SCOPES}{_CANDIDATES}
        const seen = new Set();
        for (const scope of scopes) {{
            const nodes = scope.querySelectorAll(SELECTOR);
            for (let i = nodes.length - 1; i >= 0; i--) {{
                const node = nodes[i];
                if (seen.has(node) || excluded(node)) continue;
                seen.add(node);
                const text = textOf(node);
                if (text.length >= 2) return text;
            }}
        }}
        return null;
    }})()"""

DEFAULT_QUOTA = f"""(() => {{{_SCOPES}
        const KEYWORDS = ['model quota reached', 'rate limit', 'quota exceeded',
                          'exhausted your quota', 'exhausted quota'];
        const inResponse = (el) => !!el.closest(
            '.rendered-markdown, .prose, pre, code, [data-message-author-role="assistant"], [class*="message-content"]');
        const scope = scopes[0];
        const nodes = scope.querySelectorAll(
            'h3, h3 span, span, [role="alert"], [class*="error"], [class*="toast"], [class*="quota"], [class*="rate-limit"]');
        for (const el of nodes) {{
            if (inResponse(el)) continue;
            const text = (el.textContent || '').trim().toLowerCase();
            if (KEYWORDS.some((kw) => text.includes(kw))) return true;
        }}
        return false;
    }})()"""

DEFAULT_CLICK_STOP = f"""(() => {{{_SCOPES}{_STOP_LOOKUP}
        const btn = findStop();
        if (!btn || typeof btn.click !== 'function') return {{ ok: false, error: 'Stop control not found' }};
        btn.click();
        return {{ ok: true }};
    }})()"""

# {payload} is replaced with a JSON string literal.
DEFAULT_INJECT = """(async () => {
        const payload = {payload};
        const editors = Array.from(document.querySelectorAll(
            'div[role="textbox"]:not(.xterm-helper-textarea)')).filter((el) => el.offsetParent !== null);
        const editor = editors[editors.length - 1];
        if (!editor) return { ok: false, error: 'No editor found in this context' };
        editor.focus();
        if (!document.execCommand('insertText', false, payload)) {
            editor.textContent = payload;
            editor.dispatchEvent(new InputEvent('input', { bubbles: true, inputType: 'insertText', data: payload }));
        }
        editor.dispatchEvent(new Event('input', { bubbles: true }));
        await new Promise((r) => setTimeout(r, 200));
        const SEND_ICONS = ['lucide-arrow-right', 'lucide-arrow-up', 'lucide-send'];
        const submit = Array.from(document.querySelectorAll('button')).find((btn) => {
            if (btn.disabled || btn.offsetWidth === 0) return false;
            const svg = btn.querySelector('svg');
            const cls = (svg ? svg.getAttribute('class') || '' : '') + ' ' + (btn.getAttribute('class') || '');
            if (SEND_ICONS.some((c) => cls.includes(c))) return true;
            return ['send', 'run'].includes((btn.innerText || '').trim().toLowerCase());
        });
        if (submit) {
            submit.click();
            return { ok: true, method: 'click' };
        }
        editor.dispatchEvent(new KeyboardEvent('keydown', { bubbles: true, key: 'Enter', code: 'Enter' }));
        return { ok: true, method: 'enter' };
    })()"""


@dataclass(frozen=True)
class ProbeSet:
    """The expressions used to observe and drive one kind of application."""
    active: str = DEFAULT_ACTIVE
    activity: str = DEFAULT_ACTIVITY
    text: str = DEFAULT_TEXT
    quota: str = DEFAULT_QUOTA
    click_stop: str = DEFAULT_CLICK_STOP
    inject: str = DEFAULT_INJECT

    def inject_expression(self, payload: str) -> str:
        return self.inject.replace("{payload}", json.dumps(payload))

    @staticmethod
    def from_config(section: dict[str, Any] | None) -> ProbeSet:
        """Override any expression by name from the `probes:` config section."""
        section = section or {}
        known = {f.name for f in fields(ProbeSet)}
        unknown = set(section) - known
        if unknown:
            logger.warning("Ignoring unknown probe names: %s", sorted(unknown))
        return ProbeSet(**{k: v for k, v in section.items() if k in known and v})


# ═══════════════════════════════════════════════════════════════════
# Probes
# ═══════════════════════════════════════════════════════════════════

class Probes:
    """
    Binds a ProbeSet to a StateQuery. Every read is tolerant: a failed
    query yields None (unknown) and never raises.
    """

    def __init__(
        self,
        query: StateQuery,
        probe_set: ProbeSet | None = None,
        classifier: NoiseClassifier | None = None,
        config: MonitorConfig | None = None,
    ):
        self.query = query
        self.probe_set = probe_set or ProbeSet()
        self.classifier = classifier or PatternNoiseClassifier()
        self.config = config or MonitorConfig()

    async def active(self) -> bool | None:
        """True if any context shows the stop control; None if none answered."""
        answers = await self.query.ask_each(self.probe_set.active, expect=bool)
        if any(a is True for a in answers):
            return True
        if any(a is False for a in answers):
            return False
        return None

    async def activity(self) -> tuple[str, ...] | None:
        """Merged narration lines; None when nothing is visible or nothing answered."""
        lines = await self.query.ask_all_contexts_merged(self.probe_set.activity)
        return tuple(lines) or None

    async def text(self) -> str | None:
        return await self.query.ask_any_context(
            self.probe_set.text,
            fallback=None,
            expect=str,
            accept=lambda v: isinstance(v, str) and bool(v.strip()),
        )

    async def quota(self) -> bool:
        return await self.query.ask_any_context(
            self.probe_set.quota,
            fallback=False,
            expect=bool,
            accept=lambda v: v is True,
        )

    async def observe(self, now: float) -> Observation:
        """One tick: the three probes concurrently, text noise-filtered."""
        active, activity, raw = await asyncio.gather(
            self.active(), self.activity(), self.text(),
        )
        filtered = filter_candidate(raw, self.classifier)
        return Observation(
            at=now,
            active=active,
            activity=activity,
            text=filtered.text,
            noise_only=filtered.noise_only,
            noise_lines_dropped=filtered.dropped,
        )

    async def baseline(self) -> tuple[str | None, tuple[str, ...]]:
        """Text and activity already on screen, captured before dispatch."""
        raw, activity = await asyncio.gather(self.text(), self.activity())
        filtered = filter_candidate(raw, self.classifier)
        return filtered.text, activity or ()

    async def click_stop(self) -> bool:
        result = await self.query.ask_any_context(
            self.probe_set.click_stop,
            fallback=None,
            expect=dict,
            accept=lambda v: isinstance(v, dict) and bool(v.get("ok")),
        )
        if result is None:
            logger.info("Stop control not found in any context")
            return False
        return True
