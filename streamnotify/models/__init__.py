"""Data models for the notification service."""

from .notification import Broadcaster, Registration, ReleasedBroadcaster
from .twitch import (
    STREAM_ONLINE,
    AccessToken,
    ChallengePayload,
    EventSubSubscription,
    NotificationPayload,
    RevocationPayload,
    StreamOnlineEvent,
    StreamSnapshot,
    TwitchUser,
)

__all__ = [
    "STREAM_ONLINE",
    "AccessToken",
    "Broadcaster",
    "ChallengePayload",
    "EventSubSubscription",
    "NotificationPayload",
    "Registration",
    "ReleasedBroadcaster",
    "RevocationPayload",
    "StreamOnlineEvent",
    "StreamSnapshot",
    "TwitchUser",
]
