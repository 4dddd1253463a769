"""Tests for AgentEngineClient session creation and streaming."""

import asyncio
import json
from collections.abc import Callable
from typing import Any

import httpx
import pytest
from pytest_httpx import HTTPXMock
from src.connectors.agent_engine import AgentEngineClient, is_invalid_session_error
from src.core.common.exceptions import (
    BackendError,
    CancellationError,
    ConfigurationError,
    EmptyResponseError,
    SessionError,
    TransportError,
)
from src.core.config.app_config import AgentEngineConfig
from src.core.streaming.status import StreamEvent

TEST_API_BASE_URL = "https://agent-engine.example.test/v1"
ENGINE_BASE = (
    f"{TEST_API_BASE_URL}/projects/demo-project/locations/us-central1/reasoningEngines/4242"
)
QUERY_URL = f"{ENGINE_BASE}:query"
STREAM_URL = f"{ENGINE_BASE}:streamQuery?alt=sse"

SSE_HEADERS = {"content-type": "text/event-stream"}


def _mock_client(handler: Callable[[httpx.Request], Any]) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


async def _collect(events: Any) -> list[StreamEvent]:
    return [event async for event in events]


# --- create_session ---------------------------------------------------------


@pytest.mark.asyncio
async def test_create_session_returns_id(
    httpx_mock: HTTPXMock, agent_engine_config: AgentEngineConfig
) -> None:
    httpx_mock.add_response(
        url=QUERY_URL, method="POST", json={"output": {"id": "session-123"}}
    )

    async with httpx.AsyncClient() as client:
        session_id = await AgentEngineClient(client, agent_engine_config).create_session(
            "tok", "user-1"
        )

    assert session_id == "session-123"
    request = httpx_mock.get_request()
    assert request is not None
    assert request.headers["Authorization"] == "Bearer tok"
    assert json.loads(request.content) == {
        "class_method": "create_session",
        "input": {"user_id": "user-1"},
    }


@pytest.mark.asyncio
async def test_create_session_non_2xx_raises_session_error(
    httpx_mock: HTTPXMock, agent_engine_config: AgentEngineConfig
) -> None:
    httpx_mock.add_response(url=QUERY_URL, method="POST", status_code=500, text="boom")

    async with httpx.AsyncClient() as client:
        with pytest.raises(SessionError) as exc_info:
            await AgentEngineClient(client, agent_engine_config).create_session("tok", "u")

    assert exc_info.value.message == "Failed to create session: 500 - boom"
    assert exc_info.value.status_code == 500


@pytest.mark.asyncio
async def test_create_session_without_id_raises(
    httpx_mock: HTTPXMock, agent_engine_config: AgentEngineConfig
) -> None:
    httpx_mock.add_response(url=QUERY_URL, method="POST", json={"output": {}})

    async with httpx.AsyncClient() as client:
        with pytest.raises(SessionError, match="No session ID returned"):
            await AgentEngineClient(client, agent_engine_config).create_session("tok", "u")


@pytest.mark.asyncio
async def test_create_session_connect_error_raises_transport_error(
    httpx_mock: HTTPXMock, agent_engine_config: AgentEngineConfig
) -> None:
    httpx_mock.add_exception(httpx.ConnectError("refused"), url=QUERY_URL)

    async with httpx.AsyncClient() as client:
        with pytest.raises(TransportError, match="refused"):
            await AgentEngineClient(client, agent_engine_config).create_session("tok", "u")


@pytest.mark.asyncio
async def test_missing_identifiers_fail_before_any_request() -> None:
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={"output": {"id": "s"}})

    config = AgentEngineConfig(project_id="demo-project")
    async with _mock_client(handler) as client:
        with pytest.raises(ConfigurationError):
            await AgentEngineClient(client, config).create_session("tok", "u")

    assert calls == []


# --- stream_query -----------------------------------------------------------


@pytest.mark.asyncio
async def test_stream_query_yields_deltas(
    agent_engine_config: AgentEngineConfig,
    scripted_stream,
    sse_chunks,
    make_text_payload,
) -> None:
    requests: list[httpx.Request] = []
    body = scripted_stream(
        sse_chunks(
            make_text_payload("Hello"),
            make_text_payload(" world"),
            make_text_payload("!"),
        )
    )

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, headers=SSE_HEADERS, stream=body)

    async with _mock_client(handler) as client:
        engine = AgentEngineClient(client, agent_engine_config)
        deltas = [d async for d in engine.stream_query("tok", "s-1", "u-1", "hi")]

    assert deltas == ["Hello", " world", "!"]
    assert body.closed

    request = requests[0]
    assert str(request.url) == STREAM_URL
    assert request.headers["Accept"] == "text/event-stream"
    assert request.headers["Authorization"] == "Bearer tok"
    assert json.loads(request.content) == {
        "class_method": "stream_query",
        "input": {
            "user_id": "u-1",
            "session_id": "s-1",
            "message": "hi",
            "run_config": {"streaming_mode": "sse"},
        },
    }


@pytest.mark.asyncio
async def test_snapshots_are_reduced_to_deltas(
    agent_engine_config: AgentEngineConfig,
    scripted_stream,
    sse_chunks,
    make_text_payload,
) -> None:
    body = scripted_stream(
        sse_chunks(
            make_text_payload("The answer"),
            make_text_payload("The answer is 42"),
            make_text_payload("The answer is 42"),
        )
    )

    async with _mock_client(
        lambda request: httpx.Response(200, headers=SSE_HEADERS, stream=body)
    ) as client:
        engine = AgentEngineClient(client, agent_engine_config)
        deltas = [d async for d in engine.stream_query("tok", "s", "u", "q")]

    assert deltas == ["The answer", " is 42"]


@pytest.mark.asyncio
async def test_terminal_payload_stops_open_stream(
    agent_engine_config: AgentEngineConfig,
    scripted_stream,
    sse_chunks,
    make_text_payload,
) -> None:
    body = scripted_stream(
        sse_chunks(make_text_payload("Done."), {"done": True}, done=False),
        hold_open=True,
    )

    async with _mock_client(
        lambda request: httpx.Response(200, headers=SSE_HEADERS, stream=body)
    ) as client:
        engine = AgentEngineClient(client, agent_engine_config)
        deltas = await asyncio.wait_for(
            _collect(engine.stream_query("tok", "s", "u", "q")), timeout=5
        )

    assert deltas == ["Done."]
    assert body.closed


@pytest.mark.asyncio
async def test_json_body_is_parsed_in_one_pass(
    httpx_mock: HTTPXMock, agent_engine_config: AgentEngineConfig
) -> None:
    httpx_mock.add_response(
        url=STREAM_URL,
        method="POST",
        json=[
            {"content": {"role": "model", "parts": [{"text": "Buffered"}]}},
            {"content": {"role": "model", "parts": [{"text": "Buffered answer"}]}},
        ],
    )

    async with httpx.AsyncClient() as client:
        engine = AgentEngineClient(client, agent_engine_config)
        deltas = [d async for d in engine.stream_query("tok", "s", "u", "q")]

    assert deltas == ["Buffered", " answer"]


@pytest.mark.asyncio
async def test_unread_json_body_is_read_before_parsing(
    agent_engine_config: AgentEngineConfig, scripted_stream
) -> None:
    body = scripted_stream(
        [
            '[{"content": {"parts": [{"text": "Read "}]}},',
            ' {"content": {"parts": [{"text": "Read in full"}]}}]',
        ]
    )

    async with _mock_client(
        lambda request: httpx.Response(
            200, headers={"content-type": "application/json"}, stream=body
        )
    ) as client:
        engine = AgentEngineClient(client, agent_engine_config)
        deltas = [d async for d in engine.stream_query("tok", "s", "u", "q")]

    assert deltas == ["Read ", "in full"]
    assert body.chunks_read == 2
    assert body.closed


@pytest.mark.asyncio
async def test_failed_json_body_read_raises_transport_error(
    agent_engine_config: AgentEngineConfig,
) -> None:
    class BrokenBody(httpx.AsyncByteStream):
        async def __aiter__(self):
            yield b"[{\"content\": "
            raise httpx.ReadError("connection reset")

    async with _mock_client(
        lambda request: httpx.Response(
            200, headers={"content-type": "application/json"}, stream=BrokenBody()
        )
    ) as client:
        engine = AgentEngineClient(client, agent_engine_config)
        with pytest.raises(TransportError, match="could not be read"):
            await _collect(engine.stream_query("tok", "s", "u", "q"))


@pytest.mark.asyncio
async def test_held_back_bracket_is_released_at_end_of_stream(
    agent_engine_config: AgentEngineConfig,
    scripted_stream,
    sse_chunks,
    make_text_payload,
) -> None:
    body = scripted_stream(sse_chunks(make_text_payload("Options: [")))

    async with _mock_client(
        lambda request: httpx.Response(200, headers=SSE_HEADERS, stream=body)
    ) as client:
        engine = AgentEngineClient(client, agent_engine_config)
        deltas = [d async for d in engine.stream_query("tok", "s", "u", "q")]

    assert deltas == ["Options: ", "["]


@pytest.mark.asyncio
async def test_non_2xx_stream_raises_backend_error(
    agent_engine_config: AgentEngineConfig,
) -> None:
    async with _mock_client(
        lambda request: httpx.Response(404, text='{"error": "Session not found"}')
    ) as client:
        engine = AgentEngineClient(client, agent_engine_config)
        with pytest.raises(BackendError) as exc_info:
            await _collect(engine.stream_query("tok", "s", "u", "q"))

    error = exc_info.value
    assert error.status_code == 404
    assert error.message == 'Agent Engine error: 404 - {"error": "Session not found"}'
    assert error.backend_name == "agent-engine"


@pytest.mark.asyncio
async def test_stream_without_text_raises_empty_response(
    agent_engine_config: AgentEngineConfig, scripted_stream, sse_chunks
) -> None:
    body = scripted_stream(["data: not json\n\n", *sse_chunks({"usage": {"tokens": 3}})])

    async with _mock_client(
        lambda request: httpx.Response(200, headers=SSE_HEADERS, stream=body)
    ) as client:
        engine = AgentEngineClient(client, agent_engine_config)
        with pytest.raises(EmptyResponseError) as exc_info:
            await _collect(engine.stream_query("tok", "s", "u", "q"))

    assert exc_info.value.details == {"payloads": 1, "skipped": 1}
    assert body.closed


@pytest.mark.asyncio
async def test_cancel_event_aborts_pending_read(
    agent_engine_config: AgentEngineConfig,
    scripted_stream,
    sse_chunks,
    make_text_payload,
) -> None:
    body = scripted_stream(
        sse_chunks(make_text_payload("partial"), done=False), hold_open=True
    )
    cancel_event = asyncio.Event()
    received: list[str] = []

    async with _mock_client(
        lambda request: httpx.Response(200, headers=SSE_HEADERS, stream=body)
    ) as client:
        engine = AgentEngineClient(client, agent_engine_config)

        async def consume() -> None:
            async for delta in engine.stream_query("tok", "s", "u", "q", cancel_event):
                received.append(delta)
                cancel_event.set()

        with pytest.raises(CancellationError):
            await asyncio.wait_for(consume(), timeout=5)

    assert received == ["partial"]
    assert body.closed


@pytest.mark.asyncio
async def test_cancel_event_set_before_start(
    agent_engine_config: AgentEngineConfig,
) -> None:
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200)

    cancel_event = asyncio.Event()
    cancel_event.set()
    async with _mock_client(handler) as client:
        engine = AgentEngineClient(client, agent_engine_config)
        with pytest.raises(CancellationError):
            await _collect(engine.stream_query("tok", "s", "u", "q", cancel_event))

    assert calls == []


@pytest.mark.asyncio
async def test_consumer_break_closes_stream(
    agent_engine_config: AgentEngineConfig,
    scripted_stream,
    sse_chunks,
    make_text_payload,
) -> None:
    body = scripted_stream(
        sse_chunks(make_text_payload("first"), make_text_payload(" second"), done=False),
        hold_open=True,
    )

    async with _mock_client(
        lambda request: httpx.Response(200, headers=SSE_HEADERS, stream=body)
    ) as client:
        engine = AgentEngineClient(client, agent_engine_config)
        deltas = engine.stream_query("tok", "s", "u", "q")
        first = await asyncio.wait_for(deltas.__anext__(), timeout=5)
        await deltas.aclose()

    assert first == "first"
    assert body.closed


@pytest.mark.asyncio
async def test_stream_events_report_statuses(
    agent_engine_config: AgentEngineConfig,
    scripted_stream,
    sse_chunks,
    make_text_payload,
) -> None:
    body = scripted_stream(
        sse_chunks(
            {"event": {"status": "Fetching the data"}},
            {"event": {"status": "Fetching the data"}},
            make_text_payload("Here it is"),
        )
    )

    async with _mock_client(
        lambda request: httpx.Response(200, headers=SSE_HEADERS, stream=body)
    ) as client:
        engine = AgentEngineClient(client, agent_engine_config)
        events = await _collect(engine.stream_events("tok", "s", "u", "q"))

    assert [event.kind for event in events] == ["status", "text"]
    assert events[0].value.startswith("Fetching the data")
    assert events[1] == StreamEvent.text("Here it is")


@pytest.mark.asyncio
async def test_connect_error_on_stream_raises_transport_error(
    agent_engine_config: AgentEngineConfig,
) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async with _mock_client(handler) as client:
        engine = AgentEngineClient(client, agent_engine_config)
        with pytest.raises(TransportError, match="Failed to reach Agent Engine"):
            await _collect(engine.stream_query("tok", "s", "u", "q"))


# --- invalid session classification ----------------------------------------


@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (BackendError("Agent Engine error: 404 - Session not found", status_code=404), True),
        (
            BackendError(
                'Agent Engine error: 400 - {"error": {"code": 400, "message": '
                '"Invalid session_id", "status": "INVALID_ARGUMENT"}}',
                status_code=400,
            ),
            True,
        ),
        ('Agent Engine error: 404 - {"message": "session expired"}', True),
        (BackendError("Agent Engine error: 500 - Session not found", status_code=500), False),
        (BackendError("Agent Engine error: 404 - model not found", status_code=404), False),
        (EmptyResponseError(), False),
        (None, False),
    ],
)
def test_is_invalid_session_error(error: Any, expected: bool) -> None:
    assert is_invalid_session_error(error) is expected
