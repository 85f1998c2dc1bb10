"""MailAutomation Model - Konfigurierte E-Mail-Automatisierungen."""

import enum
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from rh_automation.database import Base, JSONVariant, utcnow


class AutomationEntityType(str, enum.Enum):
    """Entitaets-Typen, auf die Automationen reagieren koennen."""

    CANDIDATE = "CANDIDATE"
    PROJECT = "PROJECT"
    ANALYSIS = "ANALYSIS"
    USER = "USER"


class AutomationTrigger(str, enum.Enum):
    """Lebenszyklus-Ereignis, das eine Automation ausloest."""

    ON_CREATE = "ON_CREATE"
    ON_UPDATE = "ON_UPDATE"
    ON_DELETE = "ON_DELETE"


class MailAutomation(Base):
    """Model fuer eine E-Mail-Automation.

    Bedingungen, Template und Variablen liegen als JSON in der Zeile.
    ``company_id = NULL`` bedeutet: gilt fuer alle Firmen (global).
    """

    __tablename__ = "mail_automations"

    # Primaerschluessel
    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)

    # Ausloeser
    entity_type: Mapped[str] = mapped_column(String(20), nullable=False)
    trigger_event: Mapped[str] = mapped_column(String(20), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Mandant (NULL = global)
    company_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("companies.id", ondelete="CASCADE"),
    )

    # Versand
    recipients: Mapped[list[str]] = mapped_column(JSONVariant, default=list, nullable=False)
    mail_template: Mapped[dict[str, Any]] = mapped_column(JSONVariant, default=dict, nullable=False)
    mail_template_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("mail_templates.id", ondelete="SET NULL"),
    )
    conditions: Mapped[list[dict[str, Any]]] = mapped_column(JSONVariant, default=list, nullable=False)
    template_variables: Mapped[dict[str, str]] = mapped_column(JSONVariant, default=dict, nullable=False)

    # Statistiken
    sent_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    success_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failed_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_triggered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
    )

    __table_args__ = (
        Index("ix_mail_automations_lookup", "entity_type", "trigger_event", "is_active"),
        Index("ix_mail_automations_company_id", "company_id"),
    )

    def __repr__(self) -> str:
        return f"<MailAutomation(id={self.id}, title={self.title!r}, {self.entity_type}/{self.trigger_event})>"
