"""DeliveryRecord Model - Protokoll jedes Automation-Versands."""

import enum
import uuid
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from rh_automation.database import Base, JSONVariant, utcnow


class DeliveryStatus(str, enum.Enum):
    """Status eines Versands."""

    DISPATCHED = "dispatched"   # Versand laeuft (inkl. Retries)
    DELIVERED = "delivered"     # Provider hat angenommen
    FAILED = "failed"           # Endgueltig fehlgeschlagen
    SKIPPED = "skipped"         # Nichts zu senden (z.B. keine Empfaenger)


class DeliveryRecord(Base):
    """Ein Eintrag pro (Entity-Event, Automation), der den Versand erreicht.

    ``dedupe_key`` ist eindeutig: erneute Verarbeitung desselben Events
    findet den bestehenden Eintrag und sendet nicht doppelt.
    """

    __tablename__ = "automation_deliveries"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    automation_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("mail_automations.id", ondelete="CASCADE"),
        nullable=False,
    )
    entity_type: Mapped[str] = mapped_column(String(20), nullable=False)
    entity_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    operation: Mapped[str] = mapped_column(String(20), nullable=False)
    dedupe_key: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=DeliveryStatus.DISPATCHED.value,
    )
    error: Mapped[str | None] = mapped_column(Text)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Versand-Details
    provider_type: Mapped[str | None] = mapped_column(String(20))
    message_id: Mapped[str | None] = mapped_column(String(255))
    recipients: Mapped[list[str]] = mapped_column(JSONVariant, default=list, nullable=False)
    subject: Mapped[str | None] = mapped_column(String(500))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
    )

    __table_args__ = (
        Index("ix_automation_deliveries_automation_id", "automation_id"),
        Index("ix_automation_deliveries_entity", "entity_type", "entity_id"),
        Index("ix_automation_deliveries_status", "status"),
    )

    @property
    def is_terminal(self) -> bool:
        """Versand abgeschlossen (kein Retry mehr offen)."""
        return self.status != DeliveryStatus.DISPATCHED.value
