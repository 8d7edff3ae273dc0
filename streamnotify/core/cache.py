"""In-process TTL cache of processed EventSub message ids.

Twitch redelivers a message when it does not see a 2xx in time, so the same
``Twitch-Eventsub-Message-Id`` can arrive more than once. Uses
cachetools.TTLCache; nothing is shared across processes.
"""

from cachetools import TTLCache  # type: ignore[import-untyped]


class MessageIdCache:
    """Remembers message ids for *ttl* seconds, bounded by *maxsize*."""

    def __init__(self, maxsize: int = 4096, ttl: float = 600.0):
        self._cache: TTLCache = TTLCache(maxsize=maxsize, ttl=ttl)

    def seen(self, message_id: str) -> bool:
        """Return True if *message_id* was already recorded."""
        return message_id in self._cache

    def record(self, message_id: str) -> None:
        self._cache[message_id] = True

    @property
    def size(self) -> int:
        return len(self._cache)
