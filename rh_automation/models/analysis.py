"""Analysis Model - KI-Analyse eines Kandidaten."""

import uuid
from datetime import datetime
from typing import ClassVar

from sqlalchemy import DateTime, Float, ForeignKey, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from rh_automation.database import Base, utcnow
from rh_automation.models.mail_automation import AutomationEntityType


class Analysis(Base):
    """Model fuer Analysen (Ergebnis des CV-Scorings)."""

    __tablename__ = "analyses"

    automation_entity_type: ClassVar[AutomationEntityType] = AutomationEntityType.ANALYSIS

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    # pending, analyzed, failed
    status: Mapped[str] = mapped_column(String(30), default="pending", nullable=False)
    score: Mapped[float | None] = mapped_column(Float)
    summary: Mapped[str | None] = mapped_column(Text)
    recommendation: Mapped[str | None] = mapped_column(String(30))

    candidate_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("candidates.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
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
    candidate = relationship("Candidate", foreign_keys=[candidate_id])
    project = relationship("Project", foreign_keys=[project_id])
