"""Shapes of the Twitch Helix and EventSub payloads we consume.

Helix and EventSub send ids as strings; fields we store or compare as
integers are coerced by pydantic's lax mode. Unknown fields are ignored so
Twitch can add keys without breaking parsing.
"""

from __future__ import annotations

from dataclasses import dataclass

from pydantic import BaseModel, ConfigDict

STREAM_ONLINE = "stream.online"


@dataclass(frozen=True)
class AccessToken:
    """App access token and the unix second after which it must not be used."""

    value: str
    expires_at: int

    def is_valid(self, now: float) -> bool:
        return bool(self.value) and self.expires_at > now


class TwitchModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


# ============================================
# Helix resources
# ============================================


class TwitchUser(TwitchModel):
    id: int
    login: str
    display_name: str
    profile_image_url: str = ""


class StreamSnapshot(TwitchModel):
    id: str
    user_id: int
    user_login: str
    user_name: str
    game_id: str = ""
    game_name: str = ""
    type: str = ""
    title: str = ""
    viewer_count: int = 0
    started_at: str = ""
    thumbnail_url: str = ""
    language: str = ""

    def as_query_params(self) -> dict[str, str | int]:
        """Flat parameters forwarded to the bot."""
        return {
            "stream_id": self.id,
            "user_id": self.user_id,
            "user_login": self.user_login,
            "user_name": self.user_name,
            "game_name": self.game_name,
            "viewer_count": self.viewer_count,
            "started_at": self.started_at,
            "thumbnail_url": self.thumbnail_url,
            "title": self.title,
        }


# ============================================
# EventSub
# ============================================


class EventSubCondition(TwitchModel):
    broadcaster_user_id: int


class EventSubTransport(TwitchModel):
    method: str
    callback: str | None = None


class EventSubSubscription(TwitchModel):
    id: str
    status: str
    type: str
    version: str
    condition: EventSubCondition
    transport: EventSubTransport
    created_at: str
    cost: int = 0


class StreamOnlineEvent(TwitchModel):
    id: str | None = None
    broadcaster_user_id: int
    broadcaster_user_login: str
    broadcaster_user_name: str
    type: str = "live"
    started_at: str = ""


class ChallengePayload(TwitchModel):
    challenge: str
    subscription: EventSubSubscription


class NotificationPayload(TwitchModel):
    subscription: EventSubSubscription
    event: StreamOnlineEvent


class RevocationPayload(TwitchModel):
    subscription: EventSubSubscription
