"""Data models for the broadcasters and registrations tables."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class Broadcaster:
    """A Twitch user whose stream.online events are being watched."""

    id: int
    display_name: str
    avatar_url: str
    event_subscription_id: str | None = None

    @property
    def has_subscription(self) -> bool:
        return bool(self.event_subscription_id)


@dataclass
class Registration:
    """One guild's interest in one broadcaster."""

    id: int
    guild_id: int
    broadcaster_id: int


@dataclass
class ReleasedBroadcaster:
    """A broadcaster row removed because its last registration went away."""

    broadcaster_id: int
    event_subscription_id: str | None
