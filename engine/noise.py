"""
Remote Watch — Noise Classification

The candidate output read from the target is polluted with process
narration ("Analyzing foo.py", "Thought for 3s"), tool-output headers,
feedback footers and quota popups. A classifier decides, line by line,
what is noise; filter_candidate() drops those lines and reports whether
the whole candidate was noise.

The classifier is pluggable: anything with is_noise(line) -> bool works.
PatternNoiseClassifier is the default and can be built from config.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Iterable, Protocol


class NoiseClassifier(Protocol):
    def is_noise(self, line: str) -> bool: ...


@dataclass(frozen=True)
class NoiseRule:
    """A regex plus an optional length ceiling (longer lines are kept)."""
    pattern: str
    max_length: int | None = None
    name: str = ""


_ACTIVITY_VERBS = (
    "analy[sz]ing|reading|writing|running|searching|planning|thinking|processing|"
    "loading|executing|testing|debugging|fetching|connecting|creating|updating|"
    "deleting|installing|building|compiling|deploying|checking|scanning|parsing|"
    "resolving|downloading|uploading|analyzed|read|wrote|ran|created|updated|"
    "deleted|fetched|built|compiled|installed|resolved|downloaded|connected"
)

_LANGUAGE_LABELS = (
    "json|javascript|typescript|python|bash|sh|html|css|xml|yaml|yml|toml|sql|"
    "graphql|markdown|text|plaintext|log|ruby|go|rust|java|c|cpp|csharp|php|"
    "swift|kotlin"
)

DEFAULT_RULES: tuple[NoiseRule, ...] = (
    NoiseRule(rf"^(?:{_ACTIVITY_VERBS})\b", 220, "activity"),
    NoiseRule(r"^initiating\s", 500, "activity"),
    NoiseRule(r"^thought for\s", 500, "activity"),
    NoiseRule(r"^(?=\S*[._-])[a-z0-9._-]+\s*/\s*[a-z0-9._-]+$", None, "tool-output"),
    NoiseRule(r"^full output written to\b", None, "tool-output"),
    NoiseRule(r"^output\.[a-z0-9._-]+(?:#l\d+(?:-\d+)?)?$", None, "tool-output"),
    NoiseRule(rf"^(?:{_LANGUAGE_LABELS})$", None, "code-label"),
    NoiseRule(r"^(?:good bad|good|bad)$", None, "feedback-footer"),
    NoiseRule(r"exhausted (?:your )?quota", None, "quota-popup"),
)


class PatternNoiseClassifier:
    """Case-insensitive regex rules applied to a stripped line."""

    def __init__(self, rules: Iterable[NoiseRule] = DEFAULT_RULES):
        self.rules = tuple(rules)
        self._compiled = [
            (re.compile(r.pattern, re.IGNORECASE), r.max_length, r.name)
            for r in self.rules
        ]

    def classify(self, line: str) -> str | None:
        """Name of the first matching rule, or None for real output."""
        normalized = " ".join(line.split())
        if not normalized:
            return None
        for regex, max_length, name in self._compiled:
            if max_length is not None and len(normalized) > max_length:
                continue
            if regex.search(normalized):
                return name or regex.pattern
        return None

    def is_noise(self, line: str) -> bool:
        return self.classify(line) is not None

    @staticmethod
    def from_config(section: dict[str, Any] | None) -> PatternNoiseClassifier:
        """
        Config format:
            noise:
              include_defaults: true
              rules:
                - {pattern: "^step \\d+ of \\d+$", name: progress}
        """
        section = section or {}
        rules: list[NoiseRule] = []
        if section.get("include_defaults", True):
            rules.extend(DEFAULT_RULES)
        for raw in section.get("rules", []) or []:
            if isinstance(raw, str):
                rules.append(NoiseRule(raw))
            elif isinstance(raw, dict) and raw.get("pattern"):
                rules.append(NoiseRule(
                    pattern=raw["pattern"],
                    max_length=raw.get("max_length"),
                    name=raw.get("name", ""),
                ))
        return PatternNoiseClassifier(rules)


@dataclass(frozen=True)
class FilteredText:
    text: str | None
    dropped: int
    noise_only: bool


def filter_candidate(text: str | None, classifier: NoiseClassifier) -> FilteredText:
    """
    Drop noise lines from a candidate output string.

    noise_only is True when the candidate had content but every
    non-blank line was noise; the engine then keeps its previous text.
    """
    if text is None:
        return FilteredText(text=None, dropped=0, noise_only=False)

    kept: list[str] = []
    dropped = 0
    content_lines = 0
    for line in text.replace("\r", "").split("\n"):
        if not line.strip():
            kept.append("")
            continue
        content_lines += 1
        if classifier.is_noise(line.strip()):
            dropped += 1
            continue
        kept.append(line.rstrip())

    if content_lines == 0:
        return FilteredText(text=None, dropped=0, noise_only=False)
    if dropped == content_lines:
        return FilteredText(text=None, dropped=dropped, noise_only=True)

    cleaned = re.sub(r"\n{3,}", "\n\n", "\n".join(kept)).strip()
    return FilteredText(text=cleaned or None, dropped=dropped, noise_only=False)
