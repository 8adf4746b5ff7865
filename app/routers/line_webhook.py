import json
from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import ValidationError

from app.logging_config import get_logger
from app.schemas.line import LineEvent, LineWebhookBody, LineWebhookResponse
from app.services.session_service import ComplaintSessionManager, get_session_manager

logger = get_logger("line_webhook")

router = APIRouter(tags=["line"])


async def parse_line_body(request: Request) -> Optional[dict]:
    raw = await request.body()
    try:
        return json.loads(raw.decode("utf-8", errors="replace"))
    except json.JSONDecodeError as e:
        logger.warning(f"Invalid LINE webhook payload: {e}")
        return None


async def handle_event(event: LineEvent, manager: ComplaintSessionManager) -> bool:
    """Route one LINE event into the session manager. False when the event is ignored."""
    user_id = event.user_id
    if not user_id or (event.source and event.source.type != "user"):
        logger.debug(f"Ignoring non-user LINE event: {event.type}")
        return False

    if event.is_text:
        await manager.handle_message(
            user_id,
            event.message.text or "",
            reply_token=event.replyToken,
            timestamp=event.sent_at,
        )
        return True

    if event.is_media:
        await manager.handle_message(
            user_id,
            f"[{event.message.type}]",
            reply_token=event.replyToken,
            timestamp=event.sent_at,
            kind="media",
        )
        return True

    logger.debug(f"Ignoring LINE event type={event.type}")
    return False


@router.post("/line/webhook", response_model=LineWebhookResponse)
async def handle_line_webhook(request: Request, manager: ComplaintSessionManager = Depends(get_session_manager)):
    """Always answers 200 so LINE does not redeliver; per-event failures are logged."""
    payload = await parse_line_body(request)
    if payload is None:
        return LineWebhookResponse(status="ignored")

    try:
        body = LineWebhookBody.model_validate(payload)
    except ValidationError as e:
        logger.warning(f"LINE webhook body rejected: {e}")
        return LineWebhookResponse(status="ignored")

    processed = 0
    for event in body.events:
        try:
            if await handle_event(event, manager):
                processed += 1
        except Exception as e:
            logger.error(
                "LINE event failed",
                extra={"context": {"event_type": event.type, "user_id": event.user_id, "error": str(e)}},
                exc_info=True,
            )
    return LineWebhookResponse(processed=processed)
