"""Automation Schemas - Payloads der Admin-API fuer Automationen."""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from rh_automation.config import Limits
from rh_automation.models import AutomationEntityType, AutomationTrigger
from rh_automation.services.condition_evaluator import validate_condition


class MailTemplateContent(BaseModel):
    """Inline-Template einer Automation."""

    subject: str = Field(min_length=1, max_length=500, description="Betreff mit {{variablen}}")
    html_content: str = Field(min_length=1, description="HTML-Inhalt mit {{variablen}}")
    text_content: str | None = Field(default=None, description="Text-Inhalt (optional)")


class ConditionPayload(BaseModel):
    """Bedingung wie sie gespeichert wird; Pruefung ueber den Evaluator."""

    field: str = Field(min_length=1, max_length=255, description="Feldpfad, z.B. project.company_id")
    operator: str = Field(description="eq, neq, gt, lt, gte, lte, contains, exists, notExists")
    value: Any = Field(default=None, description="Vergleichswert")


def _check_conditions(conditions: list[ConditionPayload] | None) -> list[ConditionPayload] | None:
    if not conditions:
        return conditions
    errors = []
    for index, condition in enumerate(conditions):
        for message in validate_condition(condition.model_dump()):
            errors.append(f"conditions.{index}: {message}")
    if errors:
        raise ValueError("; ".join(errors))
    return conditions


def _check_recipients(recipients: list[str] | None) -> list[str] | None:
    if recipients is None:
        return None
    cleaned = [r.strip() for r in recipients if r and r.strip()]
    if not cleaned:
        raise ValueError("Mindestens ein Empfaenger erforderlich")
    if len(cleaned) > Limits.RECIPIENTS_MAX:
        raise ValueError(f"Maximal {Limits.RECIPIENTS_MAX} Empfaenger")
    return cleaned


class AutomationCreate(BaseModel):
    """Schema fuer neue Automationen."""

    title: str = Field(min_length=1, max_length=255)
    description: str | None = None
    entity_type: AutomationEntityType
    trigger_event: AutomationTrigger
    is_active: bool = False
    recipients: list[str] = Field(description="E-Mail-Adressen oder Platzhalter wie candidate_email")
    mail_template: MailTemplateContent | None = None
    mail_template_id: UUID | None = Field(default=None, description="Gespeicherte Vorlage statt Inline")
    conditions: list[ConditionPayload] = Field(default_factory=list)
    template_variables: dict[str, str] = Field(default_factory=dict)
    company_id: UUID | None = Field(default=None, description="NULL = gilt fuer alle Firmen")

    @field_validator("recipients")
    @classmethod
    def validate_recipients(cls, v: list[str] | None) -> list[str] | None:
        """Leere Eintraege entfernen, mindestens ein Empfaenger."""
        return _check_recipients(v)

    @field_validator("conditions")
    @classmethod
    def validate_conditions(cls, v: list[ConditionPayload] | None) -> list[ConditionPayload] | None:
        """Jede Bedingung muss vom Evaluator geparst werden koennen."""
        return _check_conditions(v)

    @model_validator(mode="after")
    def _require_template(self) -> "AutomationCreate":
        if self.mail_template is None and self.mail_template_id is None:
            raise ValueError("mail_template oder mail_template_id erforderlich")
        return self


class AutomationUpdate(BaseModel):
    """Schema fuer Automation-Updates (nur gesetzte Felder)."""

    title: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    entity_type: AutomationEntityType | None = None
    trigger_event: AutomationTrigger | None = None
    is_active: bool | None = None
    recipients: list[str] | None = None
    mail_template: MailTemplateContent | None = None
    mail_template_id: UUID | None = None
    conditions: list[ConditionPayload] | None = None
    template_variables: dict[str, str] | None = None
    company_id: UUID | None = None

    @field_validator("recipients")
    @classmethod
    def validate_recipients(cls, v: list[str] | None) -> list[str] | None:
        """Leere Eintraege entfernen, mindestens ein Empfaenger."""
        return _check_recipients(v)

    @field_validator("conditions")
    @classmethod
    def validate_conditions(cls, v: list[ConditionPayload] | None) -> list[ConditionPayload] | None:
        """Jede Bedingung muss vom Evaluator geparst werden koennen."""
        return _check_conditions(v)


class AutomationResponse(BaseModel):
    """Automation inkl. Statistiken."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    title: str
    description: str | None
    entity_type: AutomationEntityType
    trigger_event: AutomationTrigger
    is_active: bool
    recipients: list[str]
    mail_template: dict[str, Any]
    mail_template_id: UUID | None
    conditions: list[dict[str, Any]]
    template_variables: dict[str, str]
    company_id: UUID | None
    sent_count: int
    success_count: int
    failed_count: int
    last_triggered_at: datetime | None
    created_at: datetime
    updated_at: datetime


class DeliveryRecordResponse(BaseModel):
    """Protokoll-Eintrag eines Versands."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    automation_id: UUID
    entity_type: str
    entity_id: UUID
    operation: str
    dedupe_key: str
    status: str
    error: str | None
    attempts: int
    provider_type: str | None
    message_id: str | None
    recipients: list[str]
    subject: str | None
    created_at: datetime
    updated_at: datetime


class EntityEventRequest(BaseModel):
    """Manuelles Event fuer Bulk-Schreibpfade ohne ORM-Hooks."""

    entity_type: AutomationEntityType
    operation: AutomationTrigger
    entity_ids: list[UUID] = Field(min_length=1, max_length=1000)
    company_id: UUID | None = None


class EntityEventResponse(BaseModel):
    accepted: int
    dropped: int


class AutomationStatsResponse(BaseModel):
    """Kennzahlen aller Automationen, optional nur einer Firma."""

    total_automations: int
    active_automations: int
    total_sent: int
    total_success: int
    total_failed: int
    success_rate: float = Field(description="Erfolgsquote in Prozent, zwei Nachkommastellen")
