"""
Interpretation of decoded engine payloads.

Payload shapes vary between engine versions and between events in one
stream, so text is looked up with an ordered tuple of extraction strategies
applied at every nesting level, and termination is detected from a fixed set
of signal keys. Both walks are bounded by `MAX_DEPTH`.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

MAX_DEPTH = 6

ROLE_KEYS = ("role", "author")
USER_ROLE = "user"

WRAPPER_KEYS = ("response", "output", "event", "events", "payload", "data", "result")

TERMINAL_SIGNAL_KEYS = (
    "done",
    "isDone",
    "is_done",
    "completed",
    "finish",
    "finished",
    "status",
    "state",
    "event",
    "type",
    "turn_complete",
    "turnComplete",
)
TERMINAL_VALUES = frozenset(
    {"done", "completed", "complete", "finished", "ended", "succeeded", "success"}
)


@dataclass(frozen=True)
class Interpretation:
    """Text carried by one payload and whether it ends the turn."""

    text: str | None
    is_terminal: bool


def extract_content_text(content: Any) -> str | None:
    """Text of a content value: a string, ``{text}``, ``{parts}`` or a list."""
    if not content:
        return None
    if isinstance(content, str):
        return content if content.strip() else None
    if isinstance(content, list):
        texts = [t for t in (extract_content_text(item) for item in content) if t]
        return "".join(texts) if texts else None
    if not isinstance(content, dict):
        return None

    text = content.get("text")
    if isinstance(text, str) and text.strip():
        return text

    parts = content.get("parts")
    if isinstance(parts, list):
        texts = [
            part["text"]
            for part in parts
            if isinstance(part, dict) and isinstance(part.get("text"), str) and part["text"]
        ]
        if texts:
            return "".join(texts)
    return None


def _message_role(message: dict[str, Any]) -> str | None:
    for key in ROLE_KEYS:
        value = message.get(key)
        if isinstance(value, str):
            return value
    content = message.get("content")
    if isinstance(content, dict) and isinstance(content.get("role"), str):
        return content["role"]
    return None


def _entry_text(entry: dict[str, Any]) -> str | None:
    return (
        extract_content_text(entry.get("content"))
        or extract_content_text(entry.get("message"))
        or extract_content_text(entry)
    )


def from_messages(node: dict[str, Any]) -> str | None:
    """Most recent non-user message in ``messages``."""
    messages = node.get("messages")
    if not isinstance(messages, list):
        return None
    latest = None
    for message in messages:
        if not isinstance(message, dict) or _message_role(message) == USER_ROLE:
            continue
        text = _entry_text(message)
        if text:
            latest = text
    return latest


def from_candidates(node: dict[str, Any]) -> str | None:
    """First candidate in ``candidates`` that has text."""
    candidates = node.get("candidates")
    if not isinstance(candidates, list):
        return None
    for candidate in candidates:
        if isinstance(candidate, dict):
            text = _entry_text(candidate)
            if text:
                return text
    return None


def from_direct_content(node: dict[str, Any]) -> str | None:
    return _entry_text(node)


TEXT_STRATEGIES: tuple[Callable[[dict[str, Any]], str | None], ...] = (
    from_messages,
    from_candidates,
    from_direct_content,
)


def extract_text(node: Any, depth: int = 0) -> str | None:
    """Find the text in ``node``, or None when it carries none."""
    if not node or depth > MAX_DEPTH:
        return None
    if isinstance(node, str):
        return node if node.strip() else None
    if isinstance(node, list):
        latest = None
        for item in node:
            found = extract_text(item, depth + 1)
            if found:
                latest = found
        return latest
    if not isinstance(node, dict):
        return None

    for strategy in TEXT_STRATEGIES:
        text = strategy(node)
        if text:
            return text

    for key in WRAPPER_KEYS:
        if key in node:
            found = extract_text(node[key], depth + 1)
            if found:
                return found
    return None


def _is_terminal_value(value: Any) -> bool:
    if value is True:
        return True
    if isinstance(value, str):
        return value.strip().lower() in TERMINAL_VALUES
    return False


def detect_terminal(node: Any, depth: int = 0) -> bool:
    """True when ``node`` (or a wrapped payload inside it) ends the turn."""
    if depth > MAX_DEPTH:
        return False
    if isinstance(node, list):
        return any(detect_terminal(item, depth + 1) for item in node)
    if not isinstance(node, dict):
        return False

    if any(_is_terminal_value(node.get(key)) for key in TERMINAL_SIGNAL_KEYS):
        return True
    return any(
        isinstance(node.get(key), dict | list) and detect_terminal(node[key], depth + 1)
        for key in WRAPPER_KEYS
    )


class EventInterpreter:
    """Map one decoded payload to its text and terminal flag."""

    def interpret(self, payload: Any) -> Interpretation:
        return Interpretation(
            text=extract_text(payload), is_terminal=detect_terminal(payload)
        )

    def is_terminal(self, payload: Any) -> bool:
        return detect_terminal(payload)
