"""App access token cache.

One instance is owned by ``TwitchAPIClient`` and shared by every app-scoped
request. Concurrent callers that find the token expired wait on the same lock,
so only the first one performs the credential exchange and the others reuse
its result.
"""

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager

from streamnotify.core.errors import ConcurrencyError
from streamnotify.models.twitch import AccessToken

logger = logging.getLogger(__name__)

TokenFetcher = Callable[[], Awaitable[AccessToken]]


class AppTokenCache:
    """Holds the app access token and refreshes it on demand."""

    def __init__(
        self,
        fetch: TokenFetcher,
        *,
        lock_timeout: float = 15.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._fetch = fetch
        self._lock_timeout = lock_timeout
        self._clock = clock
        self._token = AccessToken(value="", expires_at=0)
        self._lock = asyncio.Lock()

    @property
    def token(self) -> AccessToken:
        return self._token

    @asynccontextmanager
    async def _locked(self) -> AsyncIterator[None]:
        try:
            await asyncio.wait_for(self._lock.acquire(), timeout=self._lock_timeout)
        except TimeoutError as e:
            raise ConcurrencyError(
                f"App token lock not acquired within {self._lock_timeout}s",
                operation="app_token",
            ) from e
        try:
            yield
        finally:
            self._lock.release()

    async def get_valid_token(self) -> str:
        """Return a cached app access token, refreshing only when expired."""
        token = self._token
        if token.is_valid(self._clock()):
            return token.value

        async with self._locked():
            # Another waiter may have refreshed while we were queued
            token = self._token
            if token.is_valid(self._clock()):
                return token.value
            return await self._refresh_locked()

    async def refresh(self) -> str:
        """Unconditionally exchange credentials for a new token."""
        async with self._locked():
            return await self._refresh_locked()

    def invalidate(self) -> None:
        """Forget the cached token; the next caller refreshes."""
        self._token = AccessToken(value="", expires_at=0)

    async def _refresh_locked(self) -> str:
        new_token = await self._fetch()
        # Single assignment: readers see either the old or the new token
        self._token = new_token
        logger.debug(f"App access token refreshed, expires_at={new_token.expires_at}")
        return new_token.value
