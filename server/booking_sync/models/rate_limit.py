"""Inbound rate limit counter model definition."""

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import CheckConstraint, DateTime, Integer, String, UniqueConstraint, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from ..core.database import Base


class RateLimitCounter(Base):
    """Request counter for one client and operation class within a window."""

    __tablename__ = "rate_limit_counters"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    client_id: Mapped[str] = mapped_column(String(100), nullable=False)
    operation: Mapped[str] = mapped_column(String(50), nullable=False)
    request_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    window_start: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)

    created_at: Mapped[datetime] = mapped_column(
        nullable=False,
        default=datetime.utcnow,
        server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        nullable=False,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("client_id", "operation", name="uq_rate_limit_client_operation"),
        CheckConstraint("request_count >= 0", name="ck_rate_limit_count_non_negative"),
    )

    def __repr__(self) -> str:
        return (
            f"<RateLimitCounter(client_id={self.client_id}, operation={self.operation}, "
            f"count={self.request_count}, window_start={self.window_start})>"
        )
