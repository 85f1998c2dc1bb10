"""User Model - Benutzer einer Firma."""

import uuid
from datetime import datetime
from typing import ClassVar

from sqlalchemy import DateTime, ForeignKey, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from rh_automation.database import Base, utcnow
from rh_automation.models.mail_automation import AutomationEntityType


class User(Base):
    """Model fuer Benutzer."""

    __tablename__ = "users"

    automation_entity_type: ClassVar[AutomationEntityType] = AutomationEntityType.USER

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True)
    first_name: Mapped[str | None] = mapped_column(String(100))
    last_name: Mapped[str | None] = mapped_column(String(100))
    role: Mapped[str] = mapped_column(String(30), default="hr", nullable=False)

    company_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("companies.id", ondelete="CASCADE"),
        index=True,
    )

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
    )

    # Relationships
    company = relationship("Company", foreign_keys=[company_id])

    @property
    def name(self) -> str | None:
        """Anzeigename aus Vor- und Nachname."""
        parts = [p for p in (self.first_name, self.last_name) if p]
        return " ".join(parts) if parts else None
