import asyncio
import json
import logging
from collections.abc import AsyncIterator, Iterable
from typing import Any

import httpx
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from src.core.config.app_config import AgentEngineConfig, ServiceAccountConfig

TEST_TOKEN_URI = "https://oauth2.example.test/token"
TEST_API_BASE_URL = "https://agent-engine.example.test/v1"
TEST_ENGINE_BASE = (
    f"{TEST_API_BASE_URL}/projects/demo-project/locations/us-central1/reasoningEngines/4242"
)


@pytest.fixture(autouse=True)
def _configure_logging_for_tests() -> None:
    """
    Automatically configure logging for all unit tests to ensure
    consistent output and proper environment tagging.
    """
    from src.core.common.logging_utils import (
        configure_logging_with_environment_tagging,
    )

    configure_logging_with_environment_tagging(level=logging.INFO)


@pytest.fixture(scope="session")
def rsa_private_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def rsa_private_key_pem(rsa_private_key: rsa.RSAPrivateKey) -> str:
    return rsa_private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")


@pytest.fixture
def service_account_info(rsa_private_key_pem: str) -> dict[str, str]:
    return {
        "type": "service_account",
        "client_email": "agent-client@demo-project.iam.gserviceaccount.com",
        "private_key": rsa_private_key_pem,
        "private_key_id": "key-1",
        "token_uri": TEST_TOKEN_URI,
    }


@pytest.fixture
def service_account_config(service_account_info: dict[str, str]) -> ServiceAccountConfig:
    return ServiceAccountConfig(credentials=json.dumps(service_account_info))


@pytest.fixture
def agent_engine_config() -> AgentEngineConfig:
    return AgentEngineConfig(
        project_id="demo-project",
        reasoning_engine="4242",
        api_base_url=TEST_API_BASE_URL,
    )


class ScriptedStream(httpx.AsyncByteStream):
    """Response body that yields fixed chunks and records being closed.

    With ``hold_open`` the body never ends after the last chunk, like a
    server that keeps the connection open.
    """

    def __init__(self, chunks: Iterable[bytes | str], *, hold_open: bool = False) -> None:
        self.chunks = [c.encode("utf-8") if isinstance(c, str) else c for c in chunks]
        self.hold_open = hold_open
        self.closed = False
        self.chunks_read = 0

    async def __aiter__(self) -> AsyncIterator[bytes]:
        for chunk in self.chunks:
            self.chunks_read += 1
            yield chunk
        if self.hold_open:
            await asyncio.Event().wait()

    async def aclose(self) -> None:
        self.closed = True


def sse(*payloads: Any, done: bool = True) -> list[str]:
    """SSE chunks for ``payloads``, optionally followed by ``[DONE]``."""
    chunks = [f"data: {json.dumps(p)}\n\n" for p in payloads]
    if done:
        chunks.append("data: [DONE]\n\n")
    return chunks


def text_payload(text: str) -> dict[str, Any]:
    return {"content": {"role": "model", "parts": [{"text": text}]}}


@pytest.fixture
def scripted_stream():
    return ScriptedStream


@pytest.fixture
def sse_chunks():
    return sse


@pytest.fixture
def make_text_payload():
    return text_payload
