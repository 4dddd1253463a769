"""
Framing of reasoning-engine response bodies into JSON payloads.

The engine may answer with Server-Sent Events, newline-delimited JSON, a
single JSON document or a bare JSON string, and the framing is only known
once bytes arrive. `StreamFramer` accepts any of them:

- ``data:`` lines accumulate until a blank line and are parsed as one event;
  ``:`` lines are comments; ``data: [DONE]`` ends the stream.
- Lines that start with ``{`` or ``[`` are parsed on their own (NDJSON);
  header-like lines such as ``event: message`` are framing noise.
- `parse_body` handles a fully buffered body: one JSON document when it
  parses, otherwise the line rules above.

Top-level JSON arrays are flattened into their object items. Lines that fail
to parse are skipped.
"""

from __future__ import annotations

import codecs
import json
import logging
from collections.abc import AsyncIterator, Callable
from typing import Any

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"
MAX_RAW_SAMPLES = 3
RAW_SAMPLE_LENGTH = 2000


class StreamFramer:
    """Incremental parser that turns body bytes into decoded payloads.

    Instances are single-use: once `done` is set (end token seen or
    `close` called), further input is ignored.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._data_lines: list[str] = []
        self.done = False
        self.parsed_count = 0
        self.skipped_count = 0
        self.raw_samples: list[str] = []

    def feed(self, chunk: bytes | str) -> list[Any]:
        """Consume one chunk and return the payloads it completed."""
        if self.done or not chunk:
            return []
        if isinstance(chunk, bytes):
            self._buffer += self._decoder.decode(chunk)
        else:
            self._buffer += chunk

        payloads: list[Any] = []
        while not self.done:
            newline_index = self._buffer.find("\n")
            if newline_index == -1:
                break
            line = self._buffer[:newline_index]
            self._buffer = self._buffer[newline_index + 1 :]
            payloads.extend(self._process_line(line))
        return payloads

    def close(self) -> list[Any]:
        """Flush buffered bytes and any pending event at end of stream."""
        if self.done:
            return []
        self._buffer += self._decoder.decode(b"", final=True)
        payloads: list[Any] = []
        tail, self._buffer = self._buffer, ""
        for line in tail.split("\n"):
            if self.done:
                break
            payloads.extend(self._process_line(line))
        if not self.done:
            payloads.extend(self._flush_event())
        self.done = True

        if (
            self.parsed_count == 0
            and self.raw_samples
            and logger.isEnabledFor(logging.WARNING)
        ):
            logger.warning(
                f"Stream ended without any JSON payload; raw samples: {self.raw_samples}"
            )
        return payloads

    def parse_body(self, text: str) -> list[Any]:
        """Parse a complete body delivered in one piece."""
        stripped = text.strip()
        if stripped:
            try:
                parsed = json.loads(stripped)
            except json.JSONDecodeError:
                pass
            else:
                payloads = self._flatten(parsed, allow_string=True)
                self.parsed_count += len(payloads)
                self.done = True
                return payloads

        return self.feed(text) + self.close()

    async def frame(
        self,
        byte_stream: AsyncIterator[bytes],
        is_terminal: Callable[[Any], bool] | None = None,
    ) -> AsyncIterator[Any]:
        """Yield payloads from ``byte_stream`` until it ends or terminates.

        Framing stops at the end token or right after a payload for which
        ``is_terminal`` returns true; the byte stream is closed at that point
        rather than drained.
        """
        try:
            async for chunk in byte_stream:
                for payload in self.feed(chunk):
                    yield payload
                    if is_terminal is not None and is_terminal(payload):
                        self.done = True
                        return
                if self.done:
                    return

            for payload in self.close():
                yield payload
                if is_terminal is not None and is_terminal(payload):
                    return
        finally:
            aclose = getattr(byte_stream, "aclose", None)
            if aclose is not None:
                await aclose()

    def _process_line(self, raw_line: str) -> list[Any]:
        line = raw_line.rstrip("\r")
        stripped = line.strip()

        if not stripped:
            return self._flush_event()

        if stripped.startswith(":"):
            # SSE comment / heartbeat
            return []

        if stripped.startswith("data:"):
            value = stripped[len("data:") :]
            if value.startswith(" "):
                value = value[1:]
            self._data_lines.append(value)
            return []

        if stripped == DONE_SENTINEL:
            payloads = self._flush_event()
            self.done = True
            return payloads

        if stripped[0] in "{[":
            # Bare JSON line; emit anything buffered first to keep order.
            payloads = self._flush_event()
            payloads.extend(self._parse_payload(stripped))
            return payloads

        # event:, id:, retry: and other header-like noise
        return []

    def _flush_event(self) -> list[Any]:
        if not self._data_lines:
            return []
        lines, self._data_lines = self._data_lines, []
        body = "\n".join(lines).strip()

        if body == DONE_SENTINEL:
            self.done = True
            return []
        if not body:
            return []

        try:
            parsed = json.loads(body)
        except json.JSONDecodeError:
            if len(lines) == 1:
                self._record_skip(body)
                return []
        else:
            payloads = self._flatten(parsed, allow_string=True)
            self.parsed_count += len(payloads)
            return payloads

        # Several data lines that only parse one by one.
        payloads = []
        for line in lines:
            if line.strip() == DONE_SENTINEL:
                self.done = True
                break
            payloads.extend(self._parse_payload(line.strip()))
        return payloads

    def _parse_payload(self, text: str) -> list[Any]:
        if not text:
            return []
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError:
            self._record_skip(text)
            return []
        payloads = self._flatten(parsed, allow_string=False)
        self.parsed_count += len(payloads)
        return payloads

    def _record_skip(self, text: str) -> None:
        self.skipped_count += 1
        if len(self.raw_samples) < MAX_RAW_SAMPLES:
            self.raw_samples.append(text[:RAW_SAMPLE_LENGTH])
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(f"Skipping unparseable stream payload: {text[:200]!r}")

    @staticmethod
    def _flatten(parsed: Any, *, allow_string: bool) -> list[Any]:
        if isinstance(parsed, list):
            return [item for item in parsed if isinstance(item, dict)]
        if isinstance(parsed, dict):
            return [parsed]
        if allow_string and isinstance(parsed, str) and parsed.strip():
            return [parsed]
        return []
