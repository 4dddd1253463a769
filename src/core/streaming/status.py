"""
Agent status updates carried next to the answer text.

While it works, the engine reports progress ("Fetching the data...") in the
``event``/``events`` part of its payloads, and sometimes echoes those lines at
the start of the answer itself. This module recognizes such lines, turns
them into `StreamEvent` status events and removes them from visible text.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any, Literal

from src.core.streaming.interpreter import MAX_DEPTH, extract_content_text

MAX_STATUS_LENGTH = 180

STATUS_TEXT_KEYS = (
    "status",
    "statusMessage",
    "status_message",
    "message",
    "text",
    "title",
    "description",
    "detail",
)
STATUS_NESTED_KEYS = (
    "event",
    "events",
    "payload",
    "data",
    "result",
    "message",
    "content",
    "parts",
)

_WHITESPACE = re.compile(r"\s+")
_HEADING = re.compile(r"^#{1,6}\s")
_LIST_ITEM = re.compile(r"^[-*]\s")
_TERMINAL_PUNCTUATION = re.compile(r"[.!?…]$")
# e.g. "(sql_agent)" tags printed before a status line
_AGENT_TAG = re.compile(r"^\s*\([^)]+_agent\)\s*\.{0,3}\s*", re.IGNORECASE)


@dataclass(frozen=True)
class StreamEvent:
    """One item of a streamed turn: an agent status or a visible text delta."""

    kind: Literal["status", "text"]
    value: str

    @classmethod
    def status(cls, value: str) -> StreamEvent:
        return cls("status", value)

    @classmethod
    def text(cls, value: str) -> StreamEvent:
        return cls("text", value)


def normalize_status_text(text: str) -> str:
    return _WHITESPACE.sub(" ", text).strip()


def ensure_status_suffix(text: str) -> str:
    normalized = normalize_status_text(text)
    if not normalized or _TERMINAL_PUNCTUATION.search(normalized):
        return normalized
    return f"{normalized}..."


def is_likely_status_text(text: str) -> bool:
    """Short single statements only; answers with markdown structure are not statuses."""
    if not text or len(text) > MAX_STATUS_LENGTH:
        return False
    if "```" in text:
        return False
    return not (_HEADING.match(text) or _LIST_ITEM.match(text))


def collect_status_candidates(node: Any, depth: int = 0) -> list[str]:
    if not node or depth > MAX_DEPTH:
        return []
    if isinstance(node, str):
        normalized = normalize_status_text(node)
        return [normalized] if normalized else []
    if isinstance(node, list):
        return [
            candidate
            for item in node
            for candidate in collect_status_candidates(item, depth + 1)
        ]
    if not isinstance(node, dict):
        return []

    candidates: list[str] = []
    for key in STATUS_TEXT_KEYS:
        value = node.get(key)
        if isinstance(value, str):
            normalized = normalize_status_text(value)
            if normalized:
                candidates.append(normalized)

    content_text = extract_content_text(node.get("content"))
    if content_text:
        normalized = normalize_status_text(content_text)
        if normalized:
            candidates.append(normalized)

    for key in STATUS_NESTED_KEYS:
        if key in node:
            candidates.extend(collect_status_candidates(node[key], depth + 1))
    return candidates


def extract_status_updates(payload: Any, *, exclude: str | None = None) -> list[str]:
    """Return the latest status announced by ``payload`` (zero or one item).

    ``exclude`` is the answer text of the same payload; a candidate equal to
    it is answer content, not a status.
    """
    if not isinstance(payload, dict):
        return []
    excluded = normalize_status_text(exclude) if exclude else None

    sources: list[Any] = [payload.get("event"), payload.get("events")]
    for wrapper in ("response", "output"):
        nested = payload.get(wrapper)
        if isinstance(nested, dict):
            sources.extend([nested.get("event"), nested.get("events")])

    latest: str | None = None
    for source in sources:
        for candidate in collect_status_candidates(source):
            if candidate != excluded and is_likely_status_text(candidate):
                latest = ensure_status_suffix(candidate)
    return [latest] if latest else []


class StatusTracker:
    """Per-turn record of reported statuses.

    Each status is reported once per turn; the history is also used to strip
    echoed statuses from the start of the visible text.
    """

    def __init__(self, prefixes: Iterable[str] = ()) -> None:
        self._prefixes = [p for p in prefixes if p and p.strip()]
        self._seen: set[str] = set()
        self.history: list[str] = []

    def collect(self, candidates: Iterable[str]) -> list[str]:
        """Record ``candidates`` and return the ones not reported yet."""
        fresh: list[str] = []
        for candidate in candidates:
            status = normalize_status_text(candidate)
            if not status or status in self._seen:
                continue
            self._seen.add(status)
            self.history.append(status)
            fresh.append(status)
        return fresh

    def strip_leading(self, text: str) -> str:
        """Remove known status lines (and agent tags) from the start of ``text``."""
        if not text:
            return text

        candidates = {
            normalize_status_text(status)
            for status in [*self.history, *(ensure_status_suffix(p) for p in self._prefixes)]
        }
        candidates.discard("")
        result = _strip_agent_tags(text)
        if not candidates:
            return result

        alternatives = "|".join(
            re.escape(c) for c in sorted(candidates, key=len, reverse=True)
        )
        leading = re.compile(rf"^(?:\s*(?:{alternatives})\s*)+", re.IGNORECASE)
        while True:
            stripped = _strip_agent_tags(leading.sub("", result, count=1))
            if stripped == result:
                return result
            result = stripped


def _strip_agent_tags(text: str) -> str:
    while True:
        stripped = _AGENT_TAG.sub("", text, count=1)
        if stripped == text:
            return text
        text = stripped
