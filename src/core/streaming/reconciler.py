"""
Reconstruction of visible answer text from engine text updates.

The engine may send each update either as the full text so far (snapshot) or
as only the new part (delta), and it does not say which. `TextReconciler`
keeps the accumulated raw text, derives the visible text from it by removing
context markup, and hands back only the characters the caller has not seen.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from src.core.streaming.status import StatusTracker

CONTEXT_TAGS = ("BQ_CONTEXT", "CHART_CONTEXT")
FUNCTION_CALL_MARKER = "<has_function_call>"


def _open_tag(name: str) -> str:
    return rf"\[\s*{name}\s*\]"


def _close_tag(name: str) -> str:
    return rf"\[\s*/\s*{name}\s*\]"


_MARKUP_RULES: list[re.Pattern[str]] = []
for _name in CONTEXT_TAGS:
    _MARKUP_RULES.extend(
        [
            # closed block
            re.compile(rf"{_open_tag(_name)}.*?{_close_tag(_name)}", re.DOTALL | re.IGNORECASE),
            # block whose close tag has not arrived yet
            re.compile(rf"{_open_tag(_name)}.*\Z", re.DOTALL | re.IGNORECASE),
            # stray close tag
            re.compile(_close_tag(_name), re.IGNORECASE),
        ]
    )

_TAG_LITERALS = tuple(
    literal for name in CONTEXT_TAGS for literal in (f"[{name}]", f"[/{name}]")
)
_WHITESPACE = re.compile(r"\s+")


def _trailing_tag_prefix_length(text: str) -> int:
    # Tags contain a single "[", so only the tail from the last one can grow into a tag.
    start = text.rfind("[")
    if start == -1:
        return 0
    tail = _WHITESPACE.sub("", text[start:]).upper()
    if any(len(tail) < len(tag) and tag.startswith(tail) for tag in _TAG_LITERALS):
        return len(text) - start
    return 0


def strip_context_markup(text: str, *, final: bool = False) -> str:
    """Remove context blocks and markers from ``text``.

    A trailing fragment that could still grow into a tag (``"[bq_con"``) is
    held back, so nothing inside a context block is ever shown even when the
    block arrives over several updates. With ``final`` the text is complete
    and such a fragment is kept as literal text.
    """
    if not text:
        return text
    for rule in _MARKUP_RULES:
        text = rule.sub("", text)
    text = text.replace(FUNCTION_CALL_MARKER, "")
    if final:
        return text
    cut = _trailing_tag_prefix_length(text)
    return text[: len(text) - cut] if cut else text


@dataclass
class ReconciliationState:
    """Text accumulated over one query."""

    accumulated_raw_text: str = ""
    accumulated_visible_text: str = ""


def merge_raw_text(accumulated: str, incoming: str) -> str:
    """Fold one text update into the raw text accumulated so far."""
    if not incoming:
        return accumulated
    if incoming.startswith(accumulated):
        # snapshot
        return incoming
    if accumulated.startswith(incoming):
        # replay of an earlier snapshot
        return accumulated
    return accumulated + incoming


class TextReconciler:
    """Turn a sequence of text updates into visible deltas."""

    def __init__(
        self,
        state: ReconciliationState | None = None,
        *,
        status_tracker: StatusTracker | None = None,
    ) -> None:
        self.state = state or ReconciliationState()
        self._status_tracker = status_tracker

    @property
    def visible_text(self) -> str:
        return self.state.accumulated_visible_text

    @property
    def raw_text(self) -> str:
        return self.state.accumulated_raw_text

    def render(self, raw_text: str, *, final: bool = False) -> str:
        """Visible form of ``raw_text``."""
        visible = strip_context_markup(raw_text, final=final)
        if self._status_tracker is not None:
            stripped = self._status_tracker.strip_leading(visible)
            # Text already shown is never taken back.
            if stripped.startswith(self.state.accumulated_visible_text):
                visible = stripped
        return visible

    def reconcile(self, text: str) -> str:
        """Absorb ``text`` and return the newly visible part ('' if none)."""
        state = self.state
        raw = merge_raw_text(state.accumulated_raw_text, text)
        if raw == state.accumulated_raw_text and not text:
            return ""

        visible = self.render(raw)
        previous = state.accumulated_visible_text
        state.accumulated_raw_text = raw
        state.accumulated_visible_text = visible

        if visible.startswith(previous):
            return visible[len(previous) :]
        # Visible text was rewritten; resend it in full.
        return visible

    def finish(self) -> str:
        """Release text held back as a possible tag start; call at end of stream."""
        state = self.state
        visible = self.render(state.accumulated_raw_text, final=True)
        previous = state.accumulated_visible_text
        if len(visible) <= len(previous) or not visible.startswith(previous):
            return ""
        state.accumulated_visible_text = visible
        return visible[len(previous) :]
