"""Registration API routes used by the bot backend"""

import logging

from fastapi import APIRouter, Depends, Response
from fastapi.responses import PlainTextResponse
from pydantic import AliasChoices, BaseModel, Field

from streamnotify.core.dependencies import get_subscription_service
from streamnotify.services import SubscriptionService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/service/twitch/notifications", tags=["notifications"])


# ============================================
# Request Models
# ============================================


class CreateNotificationRequest(BaseModel):
    code: str = Field(min_length=28, max_length=28, description="Twitch authorization code")
    guild_id: int = Field(validation_alias=AliasChoices("guild_id", "guildId"))


# ============================================
# Endpoints
# ============================================


@router.post("", response_class=PlainTextResponse)
async def create_notification(
    body: CreateNotificationRequest,
    service: SubscriptionService = Depends(get_subscription_service),
) -> str:
    """Register a guild for the broadcaster who granted the code.

    Returns the registration id as plain text.
    """
    registration = await service.register(body.code, body.guild_id)
    return str(registration.id)


@router.delete("/guild/{guild_id}", status_code=204)
async def delete_guild_notifications(
    guild_id: int,
    service: SubscriptionService = Depends(get_subscription_service),
) -> Response:
    """Remove every registration of a guild (idempotent)."""
    orphaned = await service.release_guild(guild_id)
    if orphaned:
        logger.warning(f"Guild {guild_id} removal left {len(orphaned)} orphaned subscription(s)")
    return Response(status_code=204)


@router.delete("/{registration_id}", status_code=204)
async def delete_notification(
    registration_id: int,
    service: SubscriptionService = Depends(get_subscription_service),
) -> Response:
    """Remove one registration."""
    await service.release_registration(registration_id)
    return Response(status_code=204)
