"""Webhook ingestion for upstream push notifications."""

import logging
from datetime import datetime, time
from typing import Any, Optional
from zoneinfo import ZoneInfo

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import settings
from ..core.observability import metrics_collector
from ..models.tour import Tour
from ..models.webhook_event import WebhookEvent

logger = logging.getLogger(__name__)
audit_log = structlog.get_logger("booking_sync.audit")

PLACEHOLDER_TITLE = "Upstream Booking - Pending Sync"
PLACEHOLDER_TIME = time(9, 0)
PLACEHOLDER_DURATION = "2 hours"

TOPIC_CREATE = "bookings/create"
TOPIC_UPDATE = "bookings/update"
TOPIC_CANCEL = "bookings/cancel"
TOPIC_AVAILABILITY = "experiences/availability_update"
KNOWN_TOPICS = (TOPIC_CREATE, TOPIC_UPDATE, TOPIC_CANCEL, TOPIC_AVAILABILITY)


class WebhookIngestor:
    """Applies webhook notifications and records every one of them."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _find(self, booking_id: str) -> Optional[Tour]:
        result = await self.db.execute(select(Tour).where(Tour.external_booking_id == booking_id))
        return result.scalar_one_or_none()

    async def _on_create(self, booking_id: str) -> str:
        if await self._find(booking_id) is not None:
            return "exists"

        self.db.add(Tour(
            external_booking_id=booking_id,
            title=PLACEHOLDER_TITLE,
            date=datetime.now(ZoneInfo(settings.local_timezone)).date(),
            time=PLACEHOLDER_TIME,
            duration=PLACEHOLDER_DURATION,
            participants=1,
            needs_guide_assignment=True,
            needs_resync=True,
        ))
        return "created"

    async def _on_update(self, booking_id: str) -> str:
        result = await self.db.execute(
            update(Tour)
            .where(Tour.external_booking_id == booking_id)
            .values(needs_resync=True, updated_at=datetime.utcnow())
        )
        return "flagged" if result.rowcount else "unknown_booking"

    async def _on_cancel(self, booking_id: str) -> str:
        result = await self.db.execute(
            update(Tour)
            .where(Tour.external_booking_id == booking_id)
            .values(cancelled=True, updated_at=datetime.utcnow())
        )
        return "cancelled" if result.rowcount else "unknown_booking"

    async def _apply(self, topic: str, booking_id: Optional[str], payload: Any) -> str:
        if topic == TOPIC_AVAILABILITY:
            logger.info(
                "Availability update received",
                extra={
                    "experience_id": payload.get("experienceId") if isinstance(payload, dict) else None,
                    "date_from": payload.get("dateFrom") if isinstance(payload, dict) else None,
                    "date_to": payload.get("dateTo") if isinstance(payload, dict) else None,
                }
            )
            return "recorded"

        handlers = {
            TOPIC_CREATE: self._on_create,
            TOPIC_UPDATE: self._on_update,
            TOPIC_CANCEL: self._on_cancel,
        }
        handler = handlers.get(topic)
        if handler is None:
            raise ValueError(f"Unknown webhook topic: {topic or '<empty>'}")
        if not booking_id:
            raise ValueError(f"Webhook {topic} carries no booking id")
        return await handler(booking_id)

    async def _record_alone(self, event: WebhookEvent) -> bool:
        self.db.add(event)
        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(
                "Webhook event could not be recorded",
                extra={"topic": event.topic, "booking_id": event.booking_id, "error": str(e)}
            )
            return False
        return True

    async def ingest(
        self,
        topic: str,
        booking_id: Optional[str],
        payload: Any,
        experience_booking_id: Optional[str] = None,
    ) -> None:
        """
        Apply one webhook notification and append it to the event log.

        Never raises: failures are stored on the event row and logged, so the
        provider always receives an acknowledgement.

        Args:
            topic: Notification topic, e.g. ``bookings/create``
            booking_id: Upstream booking id from the notification headers
            payload: Decoded body, or the raw text when it is not JSON
            experience_booking_id: Upstream product booking id, if sent
        """
        processed = False
        error_message: Optional[str] = None
        outcome = "error"

        try:
            outcome = await self._apply(topic, booking_id, payload)
            processed = True
        except ValueError as e:
            error_message = str(e)
            logger.warning(
                "Webhook rejected",
                extra={"topic": topic, "booking_id": booking_id, "error": error_message}
            )
        except SQLAlchemyError as e:
            await self.db.rollback()
            error_message = f"Storage failure: {e}"
            logger.error(
                "Webhook could not be applied",
                extra={"topic": topic, "booking_id": booking_id, "error": str(e)}
            )

        def event(processed: bool, error_message: Optional[str]) -> WebhookEvent:
            return WebhookEvent(
                topic=topic or "",
                booking_id=booking_id,
                experience_booking_id=experience_booking_id,
                payload=payload,
                processed=processed,
                error_message=error_message,
            )

        self.db.add(event(processed, error_message))

        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            if topic == TOPIC_CREATE and isinstance(e, IntegrityError):
                # Another delivery inserted the booking first
                outcome = "exists"
                processed, error_message = True, None
            else:
                outcome = "error"
                processed, error_message = False, f"Storage failure: {e}"
            logger.warning(
                "Webhook change rolled back, recording the event on its own",
                extra={"topic": topic, "booking_id": booking_id, "outcome": outcome, "error": str(e)}
            )
            if not await self._record_alone(event(processed, error_message)):
                outcome = "error"

        metrics_collector.record_webhook_event(topic if topic in KNOWN_TOPICS else "unknown", outcome)
        audit_log.info(
            "webhook_event",
            topic=topic,
            booking_id=booking_id,
            outcome=outcome,
            processed=processed,
        )
