"""
Process-wide access token cache with single-flight refresh.

One `AccessTokenCache` is created per process and injected wherever a
bearer token is needed. A cached token is served without I/O until it gets
within the refresh buffer of its expiry; at that point exactly one refresh
task is started and every concurrent caller awaits that same task.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable

import httpx

from src.core.auth.service_account import CachedToken, ServiceAccountTokenIssuer
from src.core.common.exceptions import AgentEngineClientError
from src.core.config.app_config import ServiceAccountConfig

logger = logging.getLogger(__name__)


class AccessTokenCache:
    """Serve a valid access token, refreshing it at most once at a time."""

    def __init__(
        self,
        issuer: ServiceAccountTokenIssuer,
        *,
        refresh_buffer_seconds: float = 60.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._issuer = issuer
        self._refresh_buffer = refresh_buffer_seconds
        self._clock = clock
        self._cached: CachedToken | None = None
        self._pending: asyncio.Task[str] | None = None

    @classmethod
    def from_config(
        cls, client: httpx.AsyncClient, config: ServiceAccountConfig
    ) -> AccessTokenCache:
        issuer = ServiceAccountTokenIssuer(client, config)
        return cls(issuer, refresh_buffer_seconds=config.refresh_buffer_seconds)

    @property
    def cached_token(self) -> CachedToken | None:
        return self._cached

    @property
    def refresh_in_flight(self) -> bool:
        return self._pending is not None and not self._pending.done()

    def invalidate(self) -> None:
        """Forget the cached token so the next call refreshes."""
        self._cached = None

    async def get_access_token(self) -> str:
        """Return a bearer token, refreshing it when close to expiry.

        Raises:
            AuthenticationError: If the refresh failed and no unexpired
                previous token is available.
        """
        cached = self._cached
        if cached is not None and cached.is_fresh(self._clock(), self._refresh_buffer):
            return cached.value

        pending = self._pending
        if pending is None:
            pending = asyncio.get_running_loop().create_task(self._refresh(cached))
            pending.add_done_callback(self._clear_pending)
            self._pending = pending

        # A cancelled caller must not cancel the refresh the others await.
        return await asyncio.shield(pending)

    def _clear_pending(self, task: asyncio.Task[str]) -> None:
        if self._pending is task:
            self._pending = None
        if not task.cancelled():
            # Mark the exception retrieved even if every waiter went away.
            task.exception()

    async def _refresh(self, previous: CachedToken | None) -> str:
        if logger.isEnabledFor(logging.INFO):
            logger.info("Access token missing or near expiry, requesting a new one")
        try:
            fresh = await self._issuer.issue()
        except AgentEngineClientError as e:
            if previous is not None and previous.is_valid(self._clock()):
                if logger.isEnabledFor(logging.WARNING):
                    logger.warning(
                        f"Token refresh failed ({e.message}); continuing with the "
                        f"previous token for {previous.expires_at - self._clock():.0f}s"
                    )
                return previous.value
            raise

        self._cached = fresh
        return fresh.value
