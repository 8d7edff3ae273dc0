"""Twitch login URL route"""

from fastapi import APIRouter, Depends, Query
from fastapi.responses import PlainTextResponse

from streamnotify.core.dependencies import get_twitch_api
from streamnotify.services import TwitchAPIClient

router = APIRouter(prefix="/service/twitch/auth", tags=["authentication"])


@router.get("", response_class=PlainTextResponse)
async def login_url(
    state: str = Query(..., min_length=1, description="Opaque value echoed back by Twitch"),
    twitch_api: TwitchAPIClient = Depends(get_twitch_api),
) -> str:
    """Twitch authorization URL that yields the code for create_notification"""
    return twitch_api.login_url(state)
