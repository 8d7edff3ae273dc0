"""Downstream delivery of live notifications to the bot.

Delivery is a plain GET with the stream fields as query parameters. It is
best-effort: no retry, failures are only logged, and it runs detached from
the webhook request that triggered it.
"""

import asyncio
import logging
from collections.abc import Coroutine
from typing import Any

import httpx

from streamnotify.models.twitch import StreamSnapshot

logger = logging.getLogger(__name__)


class BotNotifier:
    """Sends stream-online notifications to the configured bot URL."""

    def __init__(self, bot_url: str, *, timeout: float = 10.0, http: httpx.AsyncClient | None = None):
        self.bot_url = bot_url
        self._http = http or httpx.AsyncClient(timeout=timeout)
        # Strong references so pending deliveries are not garbage-collected
        self._tasks: set[asyncio.Task] = set()

    async def close(self) -> None:
        """Wait for pending deliveries, then close the HTTP client."""
        await self.drain()
        await self._http.aclose()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def spawn(self, job: Coroutine[Any, Any, None], *, name: str | None = None) -> asyncio.Task:
        """Run *job* in the background without blocking the caller."""
        task = asyncio.create_task(job, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait for every pending background job to finish."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def deliver(self, stream: StreamSnapshot) -> bool:
        """GET the bot URL with the stream as query parameters."""
        try:
            response = await self._http.get(self.bot_url, params=stream.as_query_params())
        except httpx.HTTPError as e:
            logger.warning(
                f"Failed to deliver notification for {stream.user_login}: {type(e).__name__}: {e}"
            )
            return False

        if response.is_error:
            logger.warning(
                f"Bot rejected notification for {stream.user_login}: {response.status_code}"
            )
            return False

        logger.info(f"Delivered live notification for {stream.user_login} ({stream.user_id})")
        return True
