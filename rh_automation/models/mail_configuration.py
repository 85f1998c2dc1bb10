"""MailConfiguration Model - Versand-Provider pro Firma oder global."""

import enum
import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from rh_automation.database import Base, utcnow


class MailProviderType(str, enum.Enum):
    """Unterstuetzte Versand-Provider."""

    SUPABASE = "supabase"
    SMTP = "smtp"
    SENDGRID = "sendgrid"
    MAILGUN = "mailgun"
    AWS_SES = "aws_ses"


class MailConfiguration(Base):
    """Model fuer Mail-Konfigurationen.

    Zuordnung zu Firmen entweder ueber ``company_id`` (Altbestand) oder
    ueber die Join-Tabelle ``mail_configuration_companies``.
    """

    __tablename__ = "mail_configurations"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    provider_type: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=MailProviderType.SMTP.value,
    )
    company_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("companies.id", ondelete="CASCADE"),
        index=True,
    )

    # SMTP
    smtp_host: Mapped[str | None] = mapped_column(String(255))
    smtp_port: Mapped[int | None] = mapped_column(Integer)
    smtp_user: Mapped[str | None] = mapped_column(String(255))
    smtp_password: Mapped[str | None] = mapped_column(String(500))
    smtp_secure: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    smtp_require_tls: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # API-Provider (SendGrid, Mailgun, SES, Supabase)
    api_key: Mapped[str | None] = mapped_column(String(500))
    api_secret: Mapped[str | None] = mapped_column(String(500))

    # Absender
    from_email: Mapped[str] = mapped_column(String(320), nullable=False)
    from_name: Mapped[str] = mapped_column(String(255), default="RH Analytics Pro", nullable=False)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
    )

    # Relationships
    company_links = relationship(
        "MailConfigurationCompany",
        back_populates="mail_configuration",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    @property
    def company_ids(self) -> list[uuid.UUID]:
        """Alle Firmen, denen diese Konfiguration zugeordnet ist."""
        ids = [link.company_id for link in self.company_links]
        if self.company_id and self.company_id not in ids:
            ids.insert(0, self.company_id)
        return ids

    @property
    def is_scoped(self) -> bool:
        """Konfiguration gilt nur fuer bestimmte Firmen."""
        return bool(self.company_ids)

    def __repr__(self) -> str:
        return f"<MailConfiguration(id={self.id}, provider={self.provider_type}, default={self.is_default})>"


class MailConfigurationCompany(Base):
    """Join-Tabelle Mail-Konfiguration ↔ Firma."""

    __tablename__ = "mail_configuration_companies"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    mail_configuration_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("mail_configurations.id", ondelete="CASCADE"),
        nullable=False,
    )
    company_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("companies.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    mail_configuration = relationship("MailConfiguration", back_populates="company_links")

    __table_args__ = (
        UniqueConstraint("mail_configuration_id", "company_id", name="uq_mail_configuration_company"),
    )
