"""Condition Schemas - Bedingungen einer Automation als Tagged Union.

Jede Operator-Familie hat ein eigenes Model; ``operator`` ist der
Diskriminator. Der Evaluator prueft die Typen dadurch nicht mehr per
Laufzeit-Raten, sondern per ``isinstance`` auf das konkrete Model.
"""

from datetime import date, datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Operatoren aus dem Altbestand (Admin-Frontend v1) → aktuelle Namen
LEGACY_OPERATORS: dict[str, str] = {
    "equals": "eq",
    "not_equals": "neq",
    "greater_than": "gt",
    "less_than": "lt",
    "greater_equal": "gte",
    "less_equal": "lte",
    "is_not_null": "exists",
    "is_null": "notExists",
}

SUPPORTED_OPERATORS = ("eq", "neq", "gt", "lt", "gte", "lte", "contains", "exists", "notExists")


class _ConditionBase(BaseModel):
    """Gemeinsame Felder: Pfad in die Entitaet (z.B. ``project.company_id``)."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    field: str = Field(min_length=1, max_length=255)

    @field_validator("field")
    @classmethod
    def _validate_path(cls, value: str) -> str:
        value = value.strip()
        if not value or any(not segment for segment in value.split(".")):
            raise ValueError(f"Ungueltiger Feldpfad: '{value}'")
        return value

    @property
    def path(self) -> tuple[str, ...]:
        return tuple(self.field.split("."))


class EqualityCondition(_ConditionBase):
    """``eq`` / ``neq`` - Vergleich nach Typ-Angleichung an das Feld."""

    operator: Literal["eq", "neq"]
    value: str | bool | int | float | None = None


class ComparisonCondition(_ConditionBase):
    """``gt`` / ``lt`` / ``gte`` / ``lte`` - nur Zahlen oder Datumswerte."""

    operator: Literal["gt", "lt", "gte", "lte"]
    value: int | float | datetime | date | str

    @field_validator("value")
    @classmethod
    def _validate_comparable(cls, value: Any) -> Any:
        if isinstance(value, bool):
            raise ValueError("Vergleichsoperatoren erwarten eine Zahl oder ein Datum")
        if isinstance(value, str):
            try:
                float(value)
            except ValueError:
                try:
                    datetime.fromisoformat(value)
                except ValueError:
                    raise ValueError(
                        f"Vergleichswert '{value}' ist weder Zahl noch ISO-Datum"
                    ) from None
        return value


class ContainsCondition(_ConditionBase):
    """``contains`` - Teilstring (ohne Gross/Klein) oder Listen-Element."""

    operator: Literal["contains"]
    value: str | int | float | bool


class ExistenceCondition(_ConditionBase):
    """``exists`` / ``notExists`` - prueft nur, ob der Pfad aufloesbar ist."""

    operator: Literal["exists", "notExists"]
    value: Any = None


Condition = Annotated[
    Union[EqualityCondition, ComparisonCondition, ContainsCondition, ExistenceCondition],
    Field(discriminator="operator"),
]


def normalize_condition_payload(raw: Any) -> Any:
    """Bringt gespeicherte Bedingungen in das aktuelle Format.

    - ``field_path`` (Altbestand) → ``field``
    - Alt-Operatoren (``equals``, ``greater_than``, ...) → Kurzform
    """
    if not isinstance(raw, dict):
        return raw
    data = dict(raw)
    if "field" not in data and "field_path" in data:
        data["field"] = data.pop("field_path")
    operator = data.get("operator")
    if isinstance(operator, str):
        data["operator"] = LEGACY_OPERATORS.get(operator, operator)
    return data
