"""
Vertex AI Agent Engine connector.

Talks to a deployed reasoning engine over its ``:query`` and
``:streamQuery`` methods and turns the streamed events into visible text
deltas. Every byte of the response goes through the same pipeline:

    bytes -> StreamFramer -> EventInterpreter -> TextReconciler -> caller

`AgentEngineTurn` wraps one user turn end to end: it obtains a token from the
shared cache, creates or reuses a session, streams the answer and rotates to
a fresh session when the engine rejects the old one.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import AsyncIterator, Coroutine
from enum import Enum
from typing import Any, TypeVar

import httpx

from src.core.agent_engine.error_envelope import error_text, mentions_invalid_session
from src.core.auth.token_cache import AccessTokenCache
from src.core.common.exceptions import (
    BackendError,
    CancellationError,
    EmptyResponseError,
    SessionError,
    TransportError,
)
from src.core.common.logging_utils import get_logger
from src.core.config.app_config import AgentEngineConfig, AppConfig
from src.core.streaming.framer import StreamFramer
from src.core.streaming.interpreter import EventInterpreter
from src.core.streaming.reconciler import TextReconciler
from src.core.streaming.status import StatusTracker, StreamEvent, extract_status_updates

logger = logging.getLogger(__name__)
turn_logger = get_logger("agent_engine.turn")

BACKEND_NAME = "agent-engine"

T = TypeVar("T")

_INVALID_SESSION_STATUS_MARKERS = (
    "agent engine error: 400",
    "agent engine error: 404",
    '"code":400',
    '"code": 400',
    '"code":404',
    '"code": 404',
    'status": "invalid_argument"',
    'status": "not_found"',
    'status": "failed_precondition"',
)


class TurnState(str, Enum):
    IDLE = "idle"
    SESSION_CREATING = "session_creating"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"


def is_invalid_session_error(error: Any) -> bool:
    """True when ``error`` says the engine rejected the session id.

    The error must mention a session, an invalid state and a 400/404
    outcome.
    """
    text = error_text(error).lower()
    if not text or not mentions_invalid_session(text):
        return False
    if getattr(error, "status_code", None) in (400, 404) and isinstance(
        error, BackendError | SessionError
    ):
        return True
    return any(marker in text for marker in _INVALID_SESSION_STATUS_MARKERS)


async def _await_unless_cancelled(
    awaitable: Coroutine[Any, Any, T], cancel_event: asyncio.Event | None
) -> T:
    """Await ``awaitable``, abandoning it as soon as ``cancel_event`` is set."""
    if cancel_event is None:
        return await awaitable
    if cancel_event.is_set():
        awaitable.close()
        raise CancellationError()

    work = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(cancel_event.wait())
    try:
        await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        work.cancel()
        waiter.cancel()
        raise

    if work.done():
        waiter.cancel()
        return work.result()

    work.cancel()
    # Let the abandoned read unwind before the response is closed.
    await asyncio.gather(work, return_exceptions=True)
    raise CancellationError()


class AgentEngineClient:
    """Client for one configured reasoning engine."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        config: AgentEngineConfig,
        token_cache: AccessTokenCache | None = None,
        *,
        interpreter: EventInterpreter | None = None,
    ) -> None:
        self.client = client
        self.config = config
        self.token_cache = token_cache
        self.interpreter = interpreter or EventInterpreter()

    def _timeout(self) -> httpx.Timeout:
        return httpx.Timeout(self.config.read_timeout, connect=self.config.connect_timeout)

    @staticmethod
    def _headers(access_token: str, *, streaming: bool = False) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
        }
        if streaming:
            headers["Accept"] = "text/event-stream"
        return headers

    async def create_session(self, access_token: str, user_id: str) -> str:
        """Create a provider session for ``user_id`` and return its id.

        Raises:
            ConfigurationError: If project or engine id is missing.
            TransportError: If the engine cannot be reached.
            SessionError: On a non-2xx answer or an answer without an id.
        """
        url = f"{self.config.base_url()}:query"
        payload = {"class_method": "create_session", "input": {"user_id": user_id}}

        try:
            response = await self.client.post(
                url,
                json=payload,
                headers=self._headers(access_token),
                timeout=self._timeout(),
            )
        except httpx.RequestError as exc:
            raise TransportError(
                f"Failed to reach Agent Engine create_session ({url}): {exc!s}"
            ) from exc

        if not response.is_success:
            raise SessionError(
                f"Failed to create session: {response.status_code} - {response.text}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise SessionError("Agent Engine create_session returned invalid JSON") from e

        output = data.get("output") if isinstance(data, dict) else None
        session_id = output.get("id") if isinstance(output, dict) else None
        if not session_id:
            raise SessionError("No session ID returned from Agent Engine")

        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(f"Created Agent Engine session {session_id} for user {user_id}")
        return str(session_id)

    async def stream_query(
        self,
        access_token: str,
        session_id: str,
        user_id: str,
        message: str | dict[str, Any],
        cancel_event: asyncio.Event | None = None,
    ) -> AsyncIterator[str]:
        """Stream the visible answer to ``message`` as text deltas."""
        events = self.stream_events(
            access_token, session_id, user_id, message, cancel_event
        )
        try:
            async for event in events:
                if event.kind == "text":
                    yield event.value
        finally:
            await events.aclose()

    async def stream_events(
        self,
        access_token: str,
        session_id: str,
        user_id: str,
        message: str | dict[str, Any],
        cancel_event: asyncio.Event | None = None,
        *,
        request_id: str | None = None,
        status_tracker: StatusTracker | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Stream status and text events for one query.

        Raises:
            ConfigurationError: If project or engine id is missing.
            TransportError: If the stream cannot be opened or read.
            BackendError: If the engine answers with a non-2xx status.
            EmptyResponseError: If no visible text was produced.
            CancellationError: If ``cancel_event`` was set.
        """
        url = f"{self.config.base_url()}:streamQuery?alt=sse"
        payload = {
            "class_method": "stream_query",
            "input": {
                "user_id": user_id,
                "session_id": session_id,
                "message": message,
                "run_config": {"streaming_mode": "sse"},
            },
        }
        log = turn_logger.bind(
            request_id=request_id or uuid.uuid4().hex,
            session_id=session_id,
            user_id=user_id,
        )

        request = self.client.build_request(
            "POST",
            url,
            json=payload,
            headers=self._headers(access_token, streaming=True),
            timeout=self._timeout(),
        )
        try:
            response = await _await_unless_cancelled(
                self.client.send(request, stream=True), cancel_event
            )
        except httpx.RequestError as exc:
            raise TransportError(
                f"Failed to reach Agent Engine stream_query ({url}): {exc!s}"
            ) from exc

        payloads: AsyncIterator[Any] | None = None
        try:
            if not response.is_success:
                body = (await response.aread()).decode("utf-8", errors="replace")
                raise BackendError(
                    f"Agent Engine error: {response.status_code} - {body}",
                    backend_name=BACKEND_NAME,
                    status_code=response.status_code,
                )

            log.info("stream_opened", status_code=response.status_code)
            started = time.monotonic()
            tracker = status_tracker or StatusTracker(self.config.status_prefixes)
            reconciler = TextReconciler(status_tracker=tracker)
            framer = StreamFramer()

            if self._is_buffered(response):
                try:
                    await _await_unless_cancelled(response.aread(), cancel_event)
                except httpx.RequestError as exc:
                    raise TransportError(
                        f"Agent Engine response from {url} could not be read: {exc!s}"
                    ) from exc
                payloads = self._iter_buffered(framer, response.text)
            else:
                payloads = framer.frame(
                    self._read_chunks(response, cancel_event, url),
                    is_terminal=self.interpreter.is_terminal,
                )

            emitted_text = False
            async for item in payloads:
                interpretation = self.interpreter.interpret(item)
                for status in tracker.collect(
                    extract_status_updates(item, exclude=interpretation.text)
                ):
                    yield StreamEvent.status(status)

                if interpretation.text:
                    delta = reconciler.reconcile(interpretation.text)
                    if delta:
                        if not emitted_text:
                            emitted_text = True
                            log.info(
                                "first_delta",
                                elapsed_ms=round((time.monotonic() - started) * 1000),
                            )
                        yield StreamEvent.text(delta)

            # Text held back as a possible tag start is literal once the stream ends.
            tail = reconciler.finish()
            if tail:
                yield StreamEvent.text(tail)

            visible = reconciler.visible_text
            log.info(
                "stream_finished",
                payloads=framer.parsed_count,
                skipped=framer.skipped_count,
                visible_chars=len(visible),
            )
            if not visible.strip():
                if framer.raw_samples and logger.isEnabledFor(logging.WARNING):
                    logger.warning(
                        f"Agent Engine stream produced no text; raw samples: {framer.raw_samples}"
                    )
                raise EmptyResponseError(
                    details={
                        "payloads": framer.parsed_count,
                        "skipped": framer.skipped_count,
                    }
                )
        finally:
            if payloads is not None:
                await payloads.aclose()  # type: ignore[attr-defined]
            await response.aclose()

    @staticmethod
    def _is_buffered(response: httpx.Response) -> bool:
        """True for bodies that should be parsed in one pass."""
        if response.is_stream_consumed:
            return True
        content_type = response.headers.get("content-type", "").lower()
        return "json" in content_type and "event-stream" not in content_type

    async def _iter_buffered(
        self, framer: StreamFramer, body: str
    ) -> AsyncIterator[Any]:
        for item in framer.parse_body(body):
            yield item
            if self.interpreter.is_terminal(item):
                return

    async def _read_chunks(
        self,
        response: httpx.Response,
        cancel_event: asyncio.Event | None,
        url: str,
    ) -> AsyncIterator[bytes]:
        chunks = response.aiter_bytes()

        async def next_chunk() -> bytes | None:
            try:
                return await chunks.__anext__()
            except StopAsyncIteration:
                return None

        try:
            while True:
                try:
                    chunk = await _await_unless_cancelled(next_chunk(), cancel_event)
                except httpx.RequestError as exc:
                    raise TransportError(
                        f"Agent Engine stream from {url} was interrupted: {exc!s}"
                    ) from exc
                if chunk is None:
                    return
                yield chunk
        finally:
            await chunks.aclose()

    def run_turn(
        self,
        user_id: str,
        message: str | dict[str, Any],
        session_id: str | None = None,
        *,
        cancel_event: asyncio.Event | None = None,
        request_id: str | None = None,
    ) -> AgentEngineTurn:
        """Prepare one user turn; iterate the result to run it."""
        if self.token_cache is None:
            raise ValueError("run_turn requires a token cache")
        return AgentEngineTurn(
            self,
            user_id,
            message,
            session_id,
            cancel_event=cancel_event,
            request_id=request_id,
        )


class AgentEngineTurn:
    """One user turn: session resolution, streaming and session recovery.

    Iterate it once to run the turn; `state`, `session_id`, `text` and
    `statuses` reflect progress while iterating and the outcome afterwards.
    """

    def __init__(
        self,
        client: AgentEngineClient,
        user_id: str,
        message: str | dict[str, Any],
        session_id: str | None = None,
        *,
        cancel_event: asyncio.Event | None = None,
        request_id: str | None = None,
    ) -> None:
        self._client = client
        self.user_id = user_id
        self.message = message
        self.session_id = session_id
        self.cancel_event = cancel_event
        self.request_id = request_id or uuid.uuid4().hex
        self.state = TurnState.IDLE
        self.statuses: list[str] = []
        self.error: BaseException | None = None
        self._chunks: list[str] = []
        self._started = False

    @property
    def text(self) -> str:
        return "".join(self._chunks)

    def __aiter__(self) -> AsyncIterator[StreamEvent]:
        if self._started:
            raise RuntimeError("An AgentEngineTurn can only be iterated once")
        self._started = True
        return self._run()

    async def collect(self) -> str:
        """Run the turn to completion and return the full visible text."""
        async for _ in self:
            pass
        return self.text

    async def _run(self) -> AsyncIterator[StreamEvent]:
        client = self._client
        token_cache = client.token_cache
        if token_cache is None:
            raise ValueError("run_turn requires a token cache")
        log = turn_logger.bind(request_id=self.request_id, user_id=self.user_id)
        recoveries_left = client.config.session_recovery_attempts

        try:
            self.state = TurnState.SESSION_CREATING
            access_token = await token_cache.get_access_token()
            created = not self.session_id
            if created:
                self.session_id = await client.create_session(access_token, self.user_id)
            log.info(
                "provider_session_resolved", session_id=self.session_id, created=created
            )

            while True:
                self.state = TurnState.STREAMING
                produced_text = False
                events = client.stream_events(
                    access_token,
                    self.session_id,
                    self.user_id,
                    self.message,
                    self.cancel_event,
                    request_id=self.request_id,
                )
                try:
                    async for event in events:
                        if event.kind == "text":
                            produced_text = True
                            self._chunks.append(event.value)
                        else:
                            self.statuses.append(event.value)
                        yield event
                except (BackendError, EmptyResponseError) as e:
                    if isinstance(e, BackendError) and e.status_code == 401:
                        token_cache.invalidate()
                    recoverable = (
                        not produced_text
                        and recoveries_left > 0
                        and (
                            isinstance(e, EmptyResponseError)
                            or is_invalid_session_error(e)
                        )
                    )
                    if not recoverable:
                        raise
                    recoveries_left -= 1
                    previous_session = self.session_id
                    self.state = TurnState.SESSION_CREATING
                    access_token = await token_cache.get_access_token()
                    self.session_id = await client.create_session(
                        access_token, self.user_id
                    )
                    log.warning(
                        "session_rotated",
                        previous_session_id=previous_session,
                        session_id=self.session_id,
                        reason=type(e).__name__,
                    )
                    continue
                finally:
                    await events.aclose()
                break

            self.state = TurnState.COMPLETED
        except (Exception, asyncio.CancelledError) as e:
            self.state = TurnState.FAILED
            self.error = e
            log.error(
                "stream_failed",
                session_id=self.session_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise


def build_agent_engine_client(
    config: AppConfig, client: httpx.AsyncClient | None = None
) -> AgentEngineClient:
    """Wire a client and its process-wide token cache from ``config``."""
    config.agent_engine.require_ready()
    http_client = client or httpx.AsyncClient()
    token_cache = AccessTokenCache.from_config(http_client, config.service_account)
    return AgentEngineClient(http_client, config.agent_engine, token_cache)
