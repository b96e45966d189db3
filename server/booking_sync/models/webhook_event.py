"""Webhook event log model definition."""

from datetime import datetime
from typing import Any, Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, Boolean, String, Text, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from ..core.database import Base


class WebhookEvent(Base):
    """Append-only record of one push notification from the upstream provider."""

    __tablename__ = "webhook_events"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    topic: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    booking_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    experience_booking_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    payload: Mapped[Optional[Any]] = mapped_column(JSON(none_as_null=True), nullable=True)

    processed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        nullable=False,
        default=datetime.utcnow,
        server_default=func.now()
    )

    def __repr__(self) -> str:
        return (
            f"<WebhookEvent(id={self.id}, topic={self.topic}, "
            f"booking_id={self.booking_id}, processed={self.processed})>"
        )
