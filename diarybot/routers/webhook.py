"""
LINE webhook.

POST /webhook — verify signature, analyse every text message, reply.

Each text event from a user goes through DiaryService concurrently. A
failure for one event becomes a canned apology reply for that event only;
the delivery itself still returns 200 so LINE does not redeliver it.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, Request
from pydantic import ValidationError

from diarybot.core.container import ServiceContainer, get_container
from diarybot.core.errors import InvalidSignatureError, InvalidWebhookPayloadError, MissingSignatureError
from diarybot.schemas.common import ErrorResponse
from diarybot.schemas.webhook import WebhookEvent, WebhookPayload, WebhookResponse
from diarybot.services.async_dispatch import DeferredWorkRegistrar
from diarybot.services.resilience import CIRCUIT_MESSAGING, user_message_for
from diarybot.services.signature import verify_signature

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhook"])


async def _handle_event(
    container: ServiceContainer,
    event: WebhookEvent,
    defer: DeferredWorkRegistrar,
) -> None:
    user_id, text = event.user_id, event.diary_text
    try:
        reply = await container.diary.handle_incoming_diary(user_id, text, defer=defer)
        reply_text = reply.reply_text
    except Exception as exc:
        logger.error(
            f"Diary handling failed: {exc}",
            extra={"user_id": user_id, "error_type": type(exc).__name__},
        )
        reply_text = user_message_for(exc)

    if not event.reply_token:
        return
    try:
        await container.resilience.execute_with_protection(
            lambda: container.messaging.reply(event.reply_token, [reply_text]),
            CIRCUIT_MESSAGING,
            "messaging.reply",
        )
    except Exception as exc:
        logger.error(f"Reply not delivered: {exc}", extra={"user_id": user_id})


@router.post(
    "/webhook",
    response_model=WebhookResponse,
    summary="Receive LINE webhook deliveries",
    responses={
        400: {"model": ErrorResponse, "description": "Missing or invalid signature, or malformed body."},
    },
)
async def line_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    x_line_signature: Optional[str] = Header(default=None),
    container: ServiceContainer = Depends(get_container),
):
    """
    The signature is base64(HMAC-SHA256(channel secret, raw body)) and is
    checked before the body is parsed.

    Replies are sent with the event's reply token. Background enrichment
    passes are registered on the response's background tasks and push their
    result once the response has been sent.
    """
    body = await request.body()
    if not x_line_signature:
        raise MissingSignatureError()
    if not verify_signature(body, x_line_signature, container.settings.LINE_CHANNEL_SECRET):
        raise InvalidSignatureError()

    try:
        payload = WebhookPayload.model_validate_json(body)
    except ValidationError as exc:
        raise InvalidWebhookPayloadError(f"{exc.error_count()} validation error(s)")

    events = [e for e in payload.events if e.diary_text and e.user_id]
    await asyncio.gather(*(
        _handle_event(container, event, background_tasks.add_task) for event in events
    ))
    return WebhookResponse(processed=len(events))
