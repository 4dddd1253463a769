"""
Serializable description of a failed Agent Engine turn.

An envelope is a single string, ``AGENT_ENGINE_ERROR::{json}``, that can
travel through channels that only carry text (stream error parts, logs) and
be parsed back on the other side. The message is redacted and length capped
before it is embedded.
"""

from __future__ import annotations

import json
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import Field, ValidationError

from src.core.common.logging_utils import redact_text
from src.core.interfaces.model_bases import DomainModel

ENVELOPE_PREFIX = "AGENT_ENGINE_ERROR::"
ENVELOPE_PROVIDER = "google-agent-engine"
MAX_MESSAGE_LENGTH = 1200

INVALID_SESSION_STATE_MARKERS = (
    "invalid session",
    "session invalid",
    "session expired",
    "session not found",
    "session does not exist",
    "unknown session",
    "invalid_argument",
    "not_found",
    "failed_precondition",
)
# "session" subsumes the more specific spellings (session_id, "session").
INVALID_SESSION_SCOPE_MARKER = "session"

_CREDENTIAL_ASSIGNMENT = re.compile(
    r"(\"?(?:access_token|refresh_token|api[_-]?key|authorization|assertion)\"?\s*[:=]\s*\"?)[^\",\s}]+",
    re.IGNORECASE,
)
_GOOGLE_API_KEY = re.compile(r"AIza[0-9A-Za-z_-]{20,}")
_WHITESPACE = re.compile(r"\s+")


class ReasonCode(str, Enum):
    EMPTY_RESPONSE = "empty_vertex_response"
    HTTP_ERROR = "vertex_http_error"
    CONNECT_ERROR = "vertex_connect_error"
    INVALID_SESSION = "vertex_invalid_session"
    STREAM_PARSE_ERROR = "stream_parse_error"
    UNKNOWN = "unknown_agent_engine_error"


class ErrorStage(str, Enum):
    REQUEST_SETUP = "request_setup"
    STREAM_OPEN = "stream_open"
    STREAM_RUNTIME = "stream_runtime"
    POST_STREAM_EMPTY = "post_stream_empty"
    SESSION_RECOVERY = "session_recovery"
    UNKNOWN = "unknown"


REASON_LABELS: dict[ReasonCode, str] = {
    ReasonCode.EMPTY_RESPONSE: "Agent Engine returned an empty response",
    ReasonCode.HTTP_ERROR: "Agent Engine returned an HTTP error",
    ReasonCode.CONNECT_ERROR: "Agent Engine could not be reached",
    ReasonCode.INVALID_SESSION: "Agent Engine session is invalid or expired",
    ReasonCode.STREAM_PARSE_ERROR: "Agent Engine stream could not be parsed",
    ReasonCode.UNKNOWN: "Unknown Agent Engine error",
}


class AgentEngineErrorEnvelope(DomainModel):
    """Wire form of a turn failure; field names are camelCase on the wire."""

    model_config = {"populate_by_name": True}

    provider: str = ENVELOPE_PROVIDER
    request_id: str = Field(alias="requestId")
    reason_code: ReasonCode = Field(alias="reasonCode")
    reason_label: str = Field(alias="reasonLabel")
    message: str
    model_id: str = Field(alias="modelId")
    session_id: str | None = Field(None, alias="sessionId")
    stage: ErrorStage
    timestamp: str

    def to_wire(self) -> str:
        body = self.model_dump(mode="json", by_alias=True)
        return f"{ENVELOPE_PREFIX}{json.dumps(body, ensure_ascii=False)}"


def error_text(error: Any) -> str:
    """Best-effort text of an exception, string or JSON-able object."""
    if isinstance(error, BaseException):
        return str(error)
    if isinstance(error, str):
        return error
    if not error:
        return ""
    try:
        return json.dumps(error)
    except (TypeError, ValueError):
        return ""


def sanitize_error_message(raw_message: str, max_length: int = MAX_MESSAGE_LENGTH) -> str:
    """Redact credentials, collapse whitespace and cap the length."""
    redacted = redact_text(raw_message, "[REDACTED]")
    redacted = _GOOGLE_API_KEY.sub("[REDACTED]", redacted)
    redacted = _CREDENTIAL_ASSIGNMENT.sub(r"\1[REDACTED]", redacted)
    normalized = _WHITESPACE.sub(" ", redacted).strip()
    if not normalized:
        return "Unidentified Agent Engine error."
    if len(normalized) <= max_length:
        return normalized
    return f"{normalized[: max_length - 3]}..."


def mentions_invalid_session(text: str) -> bool:
    normalized = text.lower()
    return INVALID_SESSION_SCOPE_MARKER in normalized and any(
        marker in normalized for marker in INVALID_SESSION_STATE_MARKERS
    )


def infer_reason(text: str) -> tuple[ReasonCode, ErrorStage]:
    normalized = text.lower()

    if mentions_invalid_session(normalized):
        return ReasonCode.INVALID_SESSION, ErrorStage.SESSION_RECOVERY

    if "returned an empty response" in normalized or "produced no text" in normalized:
        return ReasonCode.EMPTY_RESPONSE, ErrorStage.POST_STREAM_EMPTY

    if any(
        marker in normalized
        for marker in (
            "agent engine error:",
            "failed to create session:",
            '"code":400',
            '"code":404',
        )
    ):
        return ReasonCode.HTTP_ERROR, ErrorStage.STREAM_RUNTIME

    if any(
        marker in normalized
        for marker in ("failed to reach", "connection", "network", "timed out", "timeout")
    ):
        return ReasonCode.CONNECT_ERROR, ErrorStage.STREAM_OPEN

    if "malformed" in normalized or "parse" in normalized:
        return ReasonCode.STREAM_PARSE_ERROR, ErrorStage.STREAM_RUNTIME

    return ReasonCode.UNKNOWN, ErrorStage.UNKNOWN


def build_error_envelope(
    error: Any,
    *,
    request_id: str,
    model_id: str,
    session_id: str | None = None,
    stage: ErrorStage | str | None = None,
) -> str:
    """Describe ``error`` as an ``AGENT_ENGINE_ERROR::`` string.

    An explicit ``stage`` wins over the inferred one, except for empty
    responses, which are always reported at ``post_stream_empty``.
    """
    raw_text = error_text(error)
    reason_code, inferred_stage = infer_reason(raw_text)

    resolved_stage = inferred_stage
    if stage is not None:
        preferred = ErrorStage(stage)
        if preferred is not ErrorStage.UNKNOWN and inferred_stage is not ErrorStage.POST_STREAM_EMPTY:
            resolved_stage = preferred

    envelope = AgentEngineErrorEnvelope(
        request_id=request_id.strip() or "unknown-request-id",
        reason_code=reason_code,
        reason_label=REASON_LABELS[reason_code],
        message=sanitize_error_message(raw_text),
        model_id=model_id.strip() or "unknown-model",
        session_id=(session_id or "").strip() or None,
        stage=resolved_stage,
        timestamp=datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z"),
    )
    return envelope.to_wire()


def parse_error_envelope(value: Any) -> AgentEngineErrorEnvelope | None:
    """Parse an envelope string; None for anything that is not a valid one."""
    if isinstance(value, BaseException):
        return parse_error_envelope(str(value)) or parse_error_envelope(
            value.__cause__
        )
    if not isinstance(value, str) or not value.startswith(ENVELOPE_PREFIX):
        return None

    payload = value[len(ENVELOPE_PREFIX) :].strip()
    if not payload:
        return None
    try:
        data = json.loads(payload)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict) or data.get("provider") != ENVELOPE_PROVIDER:
        return None
    try:
        return AgentEngineErrorEnvelope.model_validate(data)
    except ValidationError:
        return None
