"""EventSub webhook callback route"""

import logging

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import PlainTextResponse

from streamnotify.core.config import Settings, get_settings
from streamnotify.core.dependencies import get_event_dispatcher
from streamnotify.core.error_handlers import error_response
from streamnotify.core.errors import ValidationError
from streamnotify.services import EventDispatcher, verify_signature

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/_notify", tags=["eventsub"])

HEADER_MESSAGE_ID = "Twitch-Eventsub-Message-Id"
HEADER_SIGNATURE = "Twitch-Eventsub-Message-Signature"
HEADER_TIMESTAMP = "Twitch-Eventsub-Message-Timestamp"
HEADER_MESSAGE_TYPE = "Twitch-Eventsub-Message-Type"


@router.post("/twitch")
async def handle_eventsub(
    request: Request,
    dispatcher: EventDispatcher = Depends(get_event_dispatcher),
    settings: Settings = Depends(get_settings),
) -> Response:
    """Receive an EventSub message from Twitch.

    The signature is checked against the raw body before anything parses it.
    Past that point the answer is always 200, except for unparseable bodies.
    """
    headers = request.headers
    message_id = headers.get(HEADER_MESSAGE_ID)
    signature = headers.get(HEADER_SIGNATURE)
    timestamp = headers.get(HEADER_TIMESTAMP)
    message_type = headers.get(HEADER_MESSAGE_TYPE)

    if message_id is None or signature is None or timestamp is None or message_type is None:
        logger.warning("EventSub request without the required Twitch headers")
        return error_response(400, "Missing EventSub headers")

    raw_body = await request.body()
    if not verify_signature(message_id, timestamp, raw_body, signature, settings.eventsub_secret):
        logger.warning(f"Invalid EventSub signature for message {message_id}")
        return error_response(401, "Invalid signature provided.")

    try:
        body = await dispatcher.dispatch(message_type, message_id, raw_body)
    except ValidationError as e:
        return error_response(400, e.message)
    except Exception as e:
        # Anything but 200 counts as a failed delivery on Twitch's side
        logger.exception(f"Error handling EventSub message {message_id}: {e}")
        return Response(status_code=200)

    return PlainTextResponse(body, status_code=200)
