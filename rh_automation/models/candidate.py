"""Candidate Model - Bewerber eines Projekts."""

import uuid
from datetime import datetime
from typing import ClassVar

from sqlalchemy import DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from rh_automation.database import Base, utcnow
from rh_automation.models.mail_automation import AutomationEntityType


class Candidate(Base):
    """Model fuer Kandidaten (CV-Upload + KI-Score)."""

    __tablename__ = "candidates"

    automation_entity_type: ClassVar[AutomationEntityType] = AutomationEntityType.CANDIDATE

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    # Persoenliche Daten
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str | None] = mapped_column(String(320))
    phone: Mapped[str | None] = mapped_column(String(100))

    # Bewertung (pending, analyzed, shortlisted, rejected)
    score: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    status: Mapped[str] = mapped_column(String(30), default="pending", nullable=False)
    summary: Mapped[str | None] = mapped_column(Text)
    ranking: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    project_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
    )

    # Relationships
    project = relationship("Project", foreign_keys=[project_id])
