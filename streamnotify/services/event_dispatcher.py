"""Processing of verified EventSub webhook messages.

The caller must have verified the signature already. Once that is done the
webhook must answer 200 whatever happens downstream: Twitch counts any other
status as a failed delivery and eventually disables the subscription. The
only exception is a body that cannot be parsed, reported as
``ValidationError``.
"""

import logging

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from streamnotify.core.cache import MessageIdCache
from streamnotify.core.errors import NotifierError, ValidationError
from streamnotify.models.twitch import (
    STREAM_ONLINE,
    ChallengePayload,
    NotificationPayload,
    RevocationPayload,
)
from streamnotify.repositories.notification import NotificationRepository

from .bot_notifier import BotNotifier
from .twitch_api import TwitchAPIClient

logger = logging.getLogger(__name__)

MESSAGE_VERIFICATION = "webhook_callback_verification"
MESSAGE_NOTIFICATION = "notification"
MESSAGE_REVOCATION = "revocation"


def _parse(model: type[BaseModel], raw_body: bytes, message_type: str):
    try:
        return model.model_validate_json(raw_body)
    except PydanticValidationError as e:
        logger.warning(f"Malformed {message_type} body: {e.error_count()} error(s)")
        raise ValidationError(
            f"Cannot parse {message_type} body", operation="eventsub_webhook"
        ) from e


class EventDispatcher:
    """Routes a verified message to the handshake, notification or revocation path."""

    def __init__(
        self,
        twitch_api: TwitchAPIClient,
        notifier: BotNotifier,
        message_cache: MessageIdCache,
        repo: NotificationRepository | None = None,
    ) -> None:
        self.twitch_api = twitch_api
        self.notifier = notifier
        self.message_cache = message_cache
        self.repo = repo

    async def dispatch(self, message_type: str, message_id: str, raw_body: bytes) -> str:
        """Handle one message and return the response body to send with 200."""
        if message_type == MESSAGE_VERIFICATION:
            challenge = _parse(ChallengePayload, raw_body, message_type)
            logger.info(
                f"Answering callback verification for subscription {challenge.subscription.id} "
                f"(broadcaster {challenge.subscription.condition.broadcaster_user_id})"
            )
            return challenge.challenge

        if message_type == MESSAGE_NOTIFICATION:
            notification = _parse(NotificationPayload, raw_body, message_type)
            if self._is_duplicate(message_id):
                return ""
            self._handle_notification(notification)
            return ""

        if message_type == MESSAGE_REVOCATION:
            revocation = _parse(RevocationPayload, raw_body, message_type)
            if self._is_duplicate(message_id):
                return ""
            await self._handle_revocation(revocation)
            return ""

        logger.debug(f"Ignoring EventSub message type {message_type!r}")
        return ""

    def _is_duplicate(self, message_id: str) -> bool:
        if self.message_cache.seen(message_id):
            logger.info(f"Skipping redelivered EventSub message {message_id}")
            return True
        self.message_cache.record(message_id)
        return False

    # ==================== Notification ====================

    def _handle_notification(self, payload: NotificationPayload) -> None:
        if payload.subscription.type != STREAM_ONLINE:
            logger.debug(f"Ignoring notification of type {payload.subscription.type}")
            return
        broadcaster_id = payload.event.broadcaster_user_id
        logger.info(f"{payload.event.broadcaster_user_name} ({broadcaster_id}) went live")
        self.notifier.spawn(self._announce(broadcaster_id), name=f"announce-{broadcaster_id}")

    async def _announce(self, broadcaster_id: int) -> None:
        """Look up the live stream and forward it to the bot."""
        try:
            stream = await self.twitch_api.fetch_live_stream(broadcaster_id)
            await self.notifier.deliver(stream)
        except NotifierError as e:
            logger.warning(f"Cannot announce broadcaster {broadcaster_id}: {e.context()}")
        except Exception as e:
            # Nothing awaits this task
            logger.exception(f"Unexpected error announcing broadcaster {broadcaster_id}: {e}")

    # ==================== Revocation ====================

    async def _handle_revocation(self, payload: RevocationPayload) -> None:
        subscription = payload.subscription
        broadcaster_id = subscription.condition.broadcaster_user_id
        logger.warning(
            f"Twitch revoked subscription {subscription.id} of broadcaster {broadcaster_id} "
            f"(status={subscription.status})"
        )
        if self.repo is None:
            logger.error(
                f"Database not ready, broadcaster {broadcaster_id} kept after revocation"
            )
            return

        try:
            guild_ids = await self.repo.delete_revoked_broadcaster(broadcaster_id, subscription.id)
        except NotifierError as e:
            logger.error(f"Revocation cleanup failed for {broadcaster_id}: {e.context()}")
            return

        if guild_ids is None:
            logger.info(f"No broadcaster row matched revoked subscription {subscription.id}")
        elif guild_ids:
            logger.warning(
                f"Removed broadcaster {broadcaster_id} and registrations of guilds {guild_ids}"
            )
        else:
            logger.info(f"Removed broadcaster {broadcaster_id}")
