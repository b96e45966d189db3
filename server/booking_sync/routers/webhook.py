"""Webhook router receiving push notifications from the upstream provider."""

import json
import logging
from typing import Any

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import settings
from ..core.dependencies import get_db, rate_limit
from ..schemas.webhook import WebhookAck
from ..services.webhook_service import WebhookIngestor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/webhook", tags=["webhook"])


def decode_body(body: bytes) -> Any:
    """Decode a webhook body, keeping the text when it is not JSON."""
    if not body.strip():
        return None
    text = body.decode("utf-8", errors="replace")
    try:
        return json.loads(text)
    except ValueError:
        logger.warning("Webhook body is not JSON", extra={"length": len(body)})
        return text


@router.post("/provider", response_model=WebhookAck, dependencies=[Depends(rate_limit("webhook"))])
async def receive_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    """
    Receive a booking notification.

    Topic and booking ids come from the provider headers. The delivery is
    always acknowledged; problems are kept on the webhook event log.
    """
    prefix = settings.provider_header_prefix
    topic = request.headers.get(f"{prefix}-Topic", "")
    booking_id = request.headers.get(f"{prefix}-Booking-Id") or None
    experience_booking_id = request.headers.get(f"{prefix}-Experience-Booking-Id") or None

    payload = decode_body(await request.body())
    await WebhookIngestor(db).ingest(topic, booking_id, payload, experience_booking_id)

    response_data = WebhookAck(topic=topic)
    return JSONResponse(status_code=200, content=response_data.model_dump())
