"""Error Schemas für die Mail-Automatisierung."""

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class ErrorCode(str, Enum):
    """Fehlercodes der Admin-API."""

    # Validierungsfehler (400/422)
    VALIDATION_ERROR = "validation_error"
    INVALID_UUID = "invalid_uuid"
    INVALID_CONDITION = "invalid_condition"
    INVALID_CONFIGURATION = "invalid_configuration"
    MISSING_REQUIRED_FIELD = "missing_required_field"

    # Nicht gefunden (404)
    NOT_FOUND = "not_found"
    AUTOMATION_NOT_FOUND = "automation_not_found"
    MAIL_CONFIGURATION_NOT_FOUND = "mail_configuration_not_found"
    MAIL_TEMPLATE_NOT_FOUND = "mail_template_not_found"
    COMPANY_NOT_FOUND = "company_not_found"

    # Konflikt (409)
    DUPLICATE_ENTRY = "duplicate_entry"
    CONFLICT = "conflict"
    DEFAULT_CONFIGURATION_EXISTS = "default_configuration_exists"
    MAIL_TEMPLATE_IN_USE = "mail_template_in_use"

    # Versand (400)
    MAIL_TEST_FAILED = "mail_test_failed"

    # Server-Fehler (500)
    INTERNAL_ERROR = "internal_error"

    # Service Unavailable (503)
    DATABASE_ERROR = "database_error"
    AUTOMATION_UNAVAILABLE = "automation_unavailable"


class ValidationErrorDetail(BaseModel):
    """Detail eines Validierungsfehlers."""

    field: str = Field(description="Betroffenes Feld")
    message: str = Field(description="Fehlermeldung")
    value: Any | None = Field(default=None, description="Ungültiger Wert")


class ErrorResponse(BaseModel):
    """Standard-Fehler-Response."""

    error: ErrorCode = Field(description="Fehlercode")
    message: str = Field(description="Fehlermeldung")
    details: list[ValidationErrorDetail] | None = Field(
        default=None,
        description="Details bei Validierungsfehlern",
    )
    request_id: str | None = Field(
        default=None,
        description="Request-ID für Debugging",
    )

    model_config = {"json_schema_extra": {"examples": [
        {
            "error": "invalid_condition",
            "message": "Automation enthält ungültige Bedingungen",
            "details": [
                {
                    "field": "conditions.0",
                    "message": "Vergleichswert 'bald' ist weder Zahl noch ISO-Datum",
                    "value": {"field": "score", "operator": "gt", "value": "bald"},
                }
            ],
            "request_id": "abc123",
        }
    ]}}
