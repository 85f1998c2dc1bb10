"""Condition Evaluator - Prueft Automation-Bedingungen gegen eine Entitaet.

Reine Funktionen ohne DB-Zugriff. Die Entitaet ist ein Snapshot (dict mit
verschachtelten Relationen) oder ein beliebiges Objekt mit Attributen.

Fail-closed: Ist ein Pfad nicht aufloesbar oder passen die Typen nicht,
ist die Bedingung ``False`` (ausser ``notExists``, dort ``True``).
Alle Bedingungen einer Automation werden UND-verknuepft; eine leere Liste
ist immer erfuellt.
"""

import enum
import logging
import uuid
from collections.abc import Mapping, Sequence
from datetime import date, datetime, timezone
from typing import Any

from pydantic import TypeAdapter, ValidationError

from rh_automation.schemas.conditions import (
    ComparisonCondition,
    Condition,
    ContainsCondition,
    EqualityCondition,
    ExistenceCondition,
    normalize_condition_payload,
)
from rh_automation.services.automation_errors import ConditionEvaluationError

logger = logging.getLogger(__name__)

_condition_adapter: TypeAdapter = TypeAdapter(Condition)

# Marker fuer "Pfad nicht aufloesbar" (None ist ein gueltiger Nicht-Wert)
_MISSING = object()

_TRUE_STRINGS = {"true", "1", "yes", "oui", "ja"}
_FALSE_STRINGS = {"false", "0", "no", "non", "nein"}


# ==================== Parsing ====================


def parse_condition(raw: Any) -> Condition:
    """Parst eine gespeicherte Bedingung in das passende Model.

    Raises:
        ConditionEvaluationError: Bei unbekanntem Operator oder falschem Wert
    """
    if isinstance(raw, (EqualityCondition, ComparisonCondition, ContainsCondition, ExistenceCondition)):
        return raw
    try:
        return _condition_adapter.validate_python(normalize_condition_payload(raw))
    except ValidationError as e:
        messages = "; ".join(err["msg"] for err in e.errors())
        raise ConditionEvaluationError(
            f"Ungueltige Bedingung {raw!r}: {messages}",
            condition=raw if isinstance(raw, dict) else None,
        ) from e


def parse_conditions(raw_conditions: Sequence[Any] | None) -> list[Condition]:
    """Parst alle Bedingungen; der erste Fehler bricht ab."""
    return [parse_condition(raw) for raw in (raw_conditions or [])]


def validate_condition(raw: Any) -> list[str]:
    """Gibt lesbare Fehlermeldungen fuer die Admin-API zurueck (leer = gueltig)."""
    try:
        parse_condition(raw)
    except ConditionEvaluationError as e:
        return [e.message]
    return []


# ==================== Pfad-Aufloesung ====================


def resolve_field(entity: Any, path: str | Sequence[str]) -> Any:
    """Loest einen Punkt-Pfad auf (``project.company.name``).

    Returns:
        Den Wert oder ``_MISSING``, wenn ein Segment fehlt oder None ist.
    """
    segments = path.split(".") if isinstance(path, str) else list(path)
    current = entity
    for segment in segments:
        if current is None or current is _MISSING:
            return _MISSING
        if isinstance(current, Mapping):
            current = current.get(segment, _MISSING)
        elif isinstance(current, (list, tuple)) and segment.isdigit():
            index = int(segment)
            current = current[index] if index < len(current) else _MISSING
        else:
            current = getattr(current, segment, _MISSING)
    if current is None:
        return _MISSING
    return current


def is_resolved(value: Any) -> bool:
    return value is not _MISSING


# ==================== Typ-Angleichung ====================


class _Incomparable(Exception):
    """Interner Marker: Werte lassen sich nicht vergleichen."""


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
    raise _Incomparable()


def _to_number(value: Any) -> float:
    if isinstance(value, bool):
        raise _Incomparable()
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            raise _Incomparable() from None
    raise _Incomparable()


def _to_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        result = value
    elif isinstance(value, date):
        result = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        try:
            result = datetime.fromisoformat(value.strip())
        except ValueError:
            raise _Incomparable() from None
    else:
        raise _Incomparable()
    # Naive Werte gelten als UTC
    if result.tzinfo is None:
        result = result.replace(tzinfo=timezone.utc)
    return result


def _coerce_to_field_type(field_value: Any, value: Any) -> tuple[Any, Any]:
    """Gleicht den konfigurierten Wert an den Typ des Feldes an."""
    if isinstance(field_value, enum.Enum):
        field_value = field_value.value
    if isinstance(field_value, bool):
        return field_value, _to_bool(value)
    if isinstance(field_value, (int, float)):
        return float(field_value), _to_number(value)
    if isinstance(field_value, (datetime, date)):
        return _to_datetime(field_value), _to_datetime(value)
    if isinstance(field_value, uuid.UUID):
        return str(field_value), str(value).strip().lower()
    if isinstance(field_value, str):
        if value is None:
            raise _Incomparable()
        if isinstance(value, bool):
            return field_value, "true" if value else "false"
        if isinstance(value, float) and value.is_integer():
            value = int(value)
        return field_value, str(value)
    return field_value, value


def _comparable_pair(field_value: Any, value: Any) -> tuple[Any, Any]:
    """Nur Zahl/Zahl oder Datum/Datum ist vergleichbar."""
    if isinstance(field_value, bool):
        raise _Incomparable()
    if isinstance(field_value, (int, float)):
        return float(field_value), _to_number(value)
    if isinstance(field_value, (datetime, date)):
        return _to_datetime(field_value), _to_datetime(value)
    if isinstance(field_value, str):
        # Zahl als String gespeichert (z.B. Decimal-Spalte als Text)
        try:
            return _to_number(field_value), _to_number(value)
        except _Incomparable:
            return _to_datetime(field_value), _to_datetime(value)
    raise _Incomparable()


# ==================== Auswertung ====================


def evaluate_condition(entity: Any, condition: Condition) -> bool:
    """Wertet eine einzelne (bereits geparste) Bedingung aus."""
    field_value = resolve_field(entity, condition.path)

    if isinstance(condition, ExistenceCondition):
        exists = is_resolved(field_value)
        return exists if condition.operator == "exists" else not exists

    if not is_resolved(field_value):
        return False

    try:
        if isinstance(condition, EqualityCondition):
            left, right = _coerce_to_field_type(field_value, condition.value)
            equal = left == right
            return equal if condition.operator == "eq" else not equal

        if isinstance(condition, ComparisonCondition):
            left, right = _comparable_pair(field_value, condition.value)
            if condition.operator == "gt":
                return left > right
            if condition.operator == "lt":
                return left < right
            if condition.operator == "gte":
                return left >= right
            return left <= right

        if isinstance(condition, ContainsCondition):
            return _contains(field_value, condition.value)
    except _Incomparable:
        logger.debug(
            f"Bedingung {condition.field} {condition.operator} {condition.value!r}: "
            f"Typen nicht vergleichbar ({type(field_value).__name__})"
        )
        return False

    # Neue Condition-Klasse ohne Auswertung → fail-closed
    logger.warning(f"Keine Auswertung fuer Bedingung {type(condition).__name__}")
    return False


def _contains(field_value: Any, needle: Any) -> bool:
    if isinstance(field_value, str):
        if isinstance(needle, bool):
            raise _Incomparable()
        return str(needle).lower() in field_value.lower()
    if isinstance(field_value, Mapping):
        return str(needle) in field_value
    if isinstance(field_value, (list, tuple, set, frozenset)):
        for item in field_value:
            if item == needle:
                return True
            if isinstance(item, str) and not isinstance(needle, bool) and item == str(needle):
                return True
        return False
    raise _Incomparable()


def evaluate(entity: Any, conditions: Sequence[Any] | None) -> bool:
    """Wertet alle Bedingungen UND-verknuepft aus.

    Fehlerhaft definierte Bedingungen werden mit Warnung als ``False``
    gewertet, damit falsche Konfiguration nicht zu Massen-Mails fuehrt.
    """
    if not conditions:
        return True

    for raw in conditions:
        try:
            condition = parse_condition(raw)
        except ConditionEvaluationError as e:
            logger.warning(f"Bedingung uebersprungen (als False gewertet): {e.message}")
            return False
        if not evaluate_condition(entity, condition):
            return False
    return True


def condition_fields(conditions: Sequence[Any] | None) -> set[str]:
    """Alle Feldpfade, die von den Bedingungen gelesen werden (ungueltige ignoriert)."""
    fields: set[str] = set()
    for raw in conditions or []:
        try:
            fields.add(parse_condition(raw).field)
        except ConditionEvaluationError:
            continue
    return fields
