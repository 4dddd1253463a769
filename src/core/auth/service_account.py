"""
Service-account access token issuance.

The issuer loads a service-account key (file path or inline JSON), signs a
short-lived RS256 assertion with google-auth and exchanges it at the OAuth2
token endpoint using the JWT-bearer grant. Transient failures (network
errors, timeouts, HTTP 408/429/5xx) are retried with exponential backoff and
jitter; everything else fails on the first attempt.
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import httpx
from google.auth import crypt, jwt

from src.core.common.exceptions import AuthenticationError
from src.core.config.app_config import DEFAULT_TOKEN_URI, ServiceAccountConfig
from src.core.interfaces.model_bases import InternalDTO

JWT_BEARER_GRANT_TYPE = "urn:ietf:params:oauth:grant-type:jwt-bearer"

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ServiceAccountCredential(InternalDTO):
    """Identity and signing key of a service account."""

    client_email: str
    private_key: str
    token_uri: str = DEFAULT_TOKEN_URI
    private_key_id: str | None = None


@dataclass(frozen=True)
class CachedToken(InternalDTO):
    """A bearer token and the epoch second at which it expires."""

    value: str
    expires_at: float

    def is_fresh(self, now: float, refresh_buffer: float) -> bool:
        """True while more than ``refresh_buffer`` seconds remain."""
        return now < self.expires_at - refresh_buffer

    def is_valid(self, now: float) -> bool:
        return now < self.expires_at


def normalize_private_key(private_key: str) -> str:
    """Turn escaped ``\\n`` sequences (common in env vars) into newlines."""
    if not private_key:
        return private_key
    return private_key.replace("\\n", "\n") if "\\n" in private_key else private_key


def parse_service_account_key(raw_content: str) -> ServiceAccountCredential:
    """Parse service-account key JSON into a credential.

    Raises:
        AuthenticationError: If the JSON is malformed or required fields are
            missing. Never retryable.
    """
    try:
        data = json.loads(raw_content)
    except json.JSONDecodeError as e:
        raise AuthenticationError(f"Service account key is not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise AuthenticationError("Service account key must be a JSON object.")

    client_email = data.get("client_email")
    private_key = data.get("private_key")
    if not client_email or not private_key:
        raise AuthenticationError(
            "Service account key is missing client_email or private_key."
        )

    return ServiceAccountCredential(
        client_email=str(client_email),
        private_key=normalize_private_key(str(private_key)),
        token_uri=str(data.get("token_uri") or DEFAULT_TOKEN_URI),
        private_key_id=data.get("private_key_id"),
    )


def load_service_account_credential(
    source: str, *, base_dir: Path | None = None
) -> ServiceAccountCredential:
    """Load a credential from inline JSON or from a key file.

    A source that starts with ``{`` and ends with ``}`` is treated as inline
    JSON; anything else is a path, resolved against ``base_dir`` (default:
    the working directory) when relative.
    """
    configured = source.strip()
    if configured.startswith("{") and configured.endswith("}"):
        return parse_service_account_key(configured)

    path = Path(configured)
    if not path.is_absolute():
        path = (base_dir or Path.cwd()) / path

    try:
        with open(path, encoding="utf-8") as f:
            raw_content = f.read()
    except OSError as e:
        raise AuthenticationError(
            f"Unable to read service account key file {path}: {e}"
        ) from e

    return parse_service_account_key(raw_content)


def build_signed_assertion(
    credential: ServiceAccountCredential,
    *,
    scope: str,
    issued_at: float,
    lifetime: int = 3600,
) -> str:
    """Sign a fresh JWT-bearer assertion for ``credential``."""
    iat = int(issued_at)
    payload: dict[str, Any] = {
        "iss": credential.client_email,
        "scope": scope,
        "aud": credential.token_uri,
        "iat": iat,
        "exp": iat + lifetime,
    }
    try:
        signer = crypt.RSASigner.from_service_account_info(
            {
                "private_key": credential.private_key,
                "private_key_id": credential.private_key_id,
            }
        )
    except (ValueError, TypeError) as e:
        raise AuthenticationError(
            f"Service account private key could not be loaded: {e}"
        ) from e

    return jwt.encode(signer, payload).decode("utf-8")


def is_retryable_status(status_code: int) -> bool:
    return status_code in (408, 429) or status_code >= 500


def is_retryable_transport_error(error: httpx.RequestError) -> bool:
    return isinstance(
        error, httpx.TimeoutException | httpx.NetworkError | httpx.RemoteProtocolError
    )


class ServiceAccountTokenIssuer:
    """Exchange signed service-account assertions for access tokens."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        config: ServiceAccountConfig,
        *,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        jitter: Callable[[float, float], float] = random.uniform,
        base_dir: Path | None = None,
    ) -> None:
        self.client = client
        self.config = config
        self._clock = clock
        self._sleep = sleep
        self._jitter = jitter
        self._base_dir = base_dir

    def compute_backoff_delay(self, attempt: int) -> float:
        """Delay in seconds before the attempt following ``attempt``."""
        base = self.config.base_delay
        exponential = base * 2 ** (attempt - 1)
        return min(exponential + self._jitter(0.0, base), self.config.max_delay)

    async def issue(self) -> CachedToken:
        """Request a new access token, retrying transient failures.

        Raises:
            ConfigurationError: If no credential source is configured.
            AuthenticationError: If every attempt failed or the failure is not
                retryable.
        """
        max_attempts = self.config.max_attempts
        attempt = 0
        while True:
            attempt += 1
            try:
                return await self._request_once()
            except AuthenticationError as e:
                if not e.retryable or attempt >= max_attempts:
                    if logger.isEnabledFor(logging.ERROR):
                        logger.error(
                            f"Service-account token request failed after {attempt} attempt(s): {e.message}"
                        )
                    raise
                delay = self.compute_backoff_delay(attempt)
                if logger.isEnabledFor(logging.WARNING):
                    logger.warning(
                        f"Token request attempt {attempt}/{max_attempts} failed ({e.message}); "
                        f"retrying in {delay:.2f}s"
                    )
                await self._sleep(delay)

    async def _request_once(self) -> CachedToken:
        credential = load_service_account_credential(
            self.config.require_credentials(), base_dir=self._base_dir
        )
        assertion = build_signed_assertion(
            credential,
            scope=self.config.scope,
            issued_at=self._clock(),
            lifetime=self.config.assertion_lifetime,
        )

        try:
            response = await self.client.post(
                credential.token_uri,
                data={"grant_type": JWT_BEARER_GRANT_TYPE, "assertion": assertion},
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                timeout=self.config.request_timeout,
            )
        except httpx.RequestError as exc:
            raise AuthenticationError(
                f"Failed to reach service-account token endpoint ({credential.token_uri}): {exc!s}",
                retryable=is_retryable_transport_error(exc),
            ) from exc

        if not response.is_success:
            raise AuthenticationError(
                f"Failed to fetch service-account access token: {response.status_code} - {response.text}",
                retryable=is_retryable_status(response.status_code),
                upstream_status=response.status_code,
            )

        try:
            token_response = response.json()
        except ValueError as e:
            raise AuthenticationError(
                "Service-account token response is not valid JSON."
            ) from e

        access_token = (
            token_response.get("access_token")
            if isinstance(token_response, dict)
            else None
        )
        expires_in = (
            token_response.get("expires_in")
            if isinstance(token_response, dict)
            else None
        )
        if not access_token or not isinstance(expires_in, int | float) or expires_in <= 0:
            raise AuthenticationError(
                "Service-account token response is missing access_token or expires_in."
            )

        if logger.isEnabledFor(logging.INFO):
            logger.info(
                f"Obtained service-account access token for {credential.client_email} "
                f"(expires in {expires_in}s)"
            )
        return CachedToken(
            value=str(access_token), expires_at=self._clock() + float(expires_in)
        )
