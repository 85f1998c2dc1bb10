"""MailTemplate Model - Gespeicherte E-Mail-Vorlagen."""

import enum
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from rh_automation.database import Base, JSONVariant, utcnow


class MailTemplateType(str, enum.Enum):
    """Typ einer Vorlage."""

    INVITATION = "invitation"
    VERIFICATION = "verification"
    PASSWORD_RESET = "password_reset"
    WELCOME = "welcome"
    NOTIFICATION = "notification"
    CUSTOM = "custom"


class MailTemplateStatus(str, enum.Enum):
    """Status einer Vorlage."""

    ACTIVE = "active"
    DRAFT = "draft"
    ARCHIVED = "archived"


# System-Vorlagen (Konto-Mails) vs. Vorlagen fuer Automationen
SYSTEM_TEMPLATE_TYPES = frozenset({
    MailTemplateType.INVITATION,
    MailTemplateType.VERIFICATION,
    MailTemplateType.PASSWORD_RESET,
    MailTemplateType.WELCOME,
})


class MailTemplate(Base):
    """Model fuer E-Mail-Vorlagen."""

    __tablename__ = "mail_templates"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    type: Mapped[str] = mapped_column(String(30), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)

    subject: Mapped[str] = mapped_column(String(500), nullable=False)
    html_content: Mapped[str] = mapped_column(Text, nullable=False)
    text_content: Mapped[str | None] = mapped_column(Text)

    # Nur Dokumentation der verfuegbaren Variablen, kein Schema
    variables: Mapped[dict[str, Any] | None] = mapped_column(JSONVariant)

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=MailTemplateStatus.DRAFT.value,
    )
    is_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    company_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("companies.id", ondelete="CASCADE"),
        index=True,
    )
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
    )

    @property
    def is_system(self) -> bool:
        """Vorlage fuer Konto-Mails (Einladung, Verifizierung, ...)."""
        return self.type in {t.value for t in SYSTEM_TEMPLATE_TYPES}
