"""Mail Schemas - Konfigurationen und Vorlagen in der Admin-API."""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, model_validator

from rh_automation.models import MailProviderType, MailTemplateStatus, MailTemplateType

# Pflichtfelder je Provider
_REQUIRED_FIELDS: dict[MailProviderType, tuple[str, ...]] = {
    MailProviderType.SMTP: ("smtp_host",),
    MailProviderType.SENDGRID: ("api_key",),
    MailProviderType.MAILGUN: ("api_key",),
    MailProviderType.AWS_SES: ("api_key", "api_secret"),
    MailProviderType.SUPABASE: (),
}


class MailConfigurationBase(BaseModel):
    """Gemeinsame Felder einer Mail-Konfiguration."""

    smtp_host: str | None = Field(default=None, max_length=255)
    smtp_port: int | None = Field(default=None, ge=1, le=65535)
    smtp_user: str | None = Field(default=None, max_length=255)
    smtp_password: str | None = Field(default=None, max_length=500)
    smtp_secure: bool = True
    smtp_require_tls: bool = False
    api_key: str | None = Field(default=None, max_length=500)
    api_secret: str | None = Field(default=None, max_length=500)
    is_active: bool = True
    is_default: bool = False


class MailConfigurationCreate(MailConfigurationBase):
    """Schema fuer neue Mail-Konfigurationen."""

    provider_type: MailProviderType
    from_email: EmailStr
    from_name: str = Field(default="RH Analytics Pro", max_length=255)
    company_id: UUID | None = None
    company_ids: list[UUID] = Field(default_factory=list, description="Zugeordnete Firmen")

    @model_validator(mode="after")
    def _check_provider_fields(self) -> "MailConfigurationCreate":
        missing = [name for name in _REQUIRED_FIELDS[self.provider_type] if not getattr(self, name)]
        if missing:
            raise ValueError(f"{self.provider_type.value} benoetigt: {', '.join(missing)}")
        if self.is_default and (self.company_id or self.company_ids):
            raise ValueError("Eine Default-Konfiguration darf keiner Firma zugeordnet sein")
        return self


class MailConfigurationUpdate(BaseModel):
    """Schema fuer Updates (nur gesetzte Felder)."""

    provider_type: MailProviderType | None = None
    smtp_host: str | None = Field(default=None, max_length=255)
    smtp_port: int | None = Field(default=None, ge=1, le=65535)
    smtp_user: str | None = Field(default=None, max_length=255)
    smtp_password: str | None = Field(default=None, max_length=500)
    smtp_secure: bool | None = None
    smtp_require_tls: bool | None = None
    api_key: str | None = Field(default=None, max_length=500)
    api_secret: str | None = Field(default=None, max_length=500)
    from_email: EmailStr | None = None
    from_name: str | None = Field(default=None, max_length=255)
    is_active: bool | None = None
    is_default: bool | None = None


class CompanyAssignment(BaseModel):
    """Ersetzt die Firmen-Zuordnung einer Konfiguration."""

    company_ids: list[UUID] = Field(default_factory=list)


class MailConfigurationResponse(BaseModel):
    """Mail-Konfiguration ohne Geheimnisse."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    provider_type: MailProviderType
    smtp_host: str | None
    smtp_port: int | None
    smtp_user: str | None
    smtp_secure: bool
    smtp_require_tls: bool
    has_smtp_password: bool = False
    has_api_key: bool = False
    from_email: str
    from_name: str
    is_active: bool
    is_default: bool
    company_id: UUID | None
    company_ids: list[UUID] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


class MailTemplateCreate(BaseModel):
    """Schema fuer neue Vorlagen."""

    type: MailTemplateType
    name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    subject: str = Field(min_length=1, max_length=500)
    html_content: str = Field(min_length=1)
    text_content: str | None = None
    variables: dict[str, Any] | None = Field(default=None, description="Dokumentation der Variablen")
    status: MailTemplateStatus = MailTemplateStatus.DRAFT
    is_default: bool = False
    company_id: UUID | None = None


class MailTemplateUpdate(BaseModel):
    """Schema fuer Vorlagen-Updates. Inhaltsaenderungen erhoehen die Version."""

    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    subject: str | None = Field(default=None, min_length=1, max_length=500)
    html_content: str | None = Field(default=None, min_length=1)
    text_content: str | None = None
    variables: dict[str, Any] | None = None
    status: MailTemplateStatus | None = None
    is_default: bool | None = None


class MailTemplateResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    type: MailTemplateType
    name: str
    description: str | None
    subject: str
    html_content: str
    text_content: str | None
    variables: dict[str, Any] | None
    status: MailTemplateStatus
    is_default: bool
    company_id: UUID | None
    version: int
    created_at: datetime
    updated_at: datetime


class ConfigurationToggle(BaseModel):
    is_active: bool


class MailTestRequest(BaseModel):
    """Test-Mail ueber die Konfiguration, die fuer die Firma greifen wuerde."""

    email: EmailStr
    company_id: UUID | None = None


class MailTestResponse(BaseModel):
    success: bool
    message: str
    provider_type: str | None = None
    message_id: str | None = None
    attempts: int = 0


class TemplatePreviewRequest(BaseModel):
    variables: dict[str, Any] = Field(default_factory=dict, description="Beispielwerte fuer {{tokens}}")


class TemplatePreviewResponse(BaseModel):
    """Gerenderte Vorlage; nicht aufgeloeste Tokens bleiben stehen."""

    subject: str
    html_content: str
    text_content: str | None = None
    unresolved: list[str] = Field(default_factory=list)
