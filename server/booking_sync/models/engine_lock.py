"""Named lock lease model definition."""

from datetime import datetime

from sqlalchemy import DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from ..core.database import Base


class EngineLock(Base):
    """Lease row held by whichever process currently owns a named lock."""

    __tablename__ = "engine_locks"

    name: Mapped[str] = mapped_column(String(100), primary_key=True)
    owner: Mapped[str] = mapped_column(String(64), nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    def __repr__(self) -> str:
        return f"<EngineLock(name={self.name}, owner={self.owner}, expires_at={self.expires_at})>"
