"""Template Renderer - Ersetzt {{variablen}} in Betreff, HTML und Text.

Reine Textersetzung, keine Template-Sprache (keine Schleifen/Bedingungen).
Nicht aufloesbare Tokens bleiben unveraendert stehen, damit fehlende Daten
in der Mail sichtbar sind statt als leere Stelle.

Werte werden im HTML-Teil escaped (Kandidaten-Daten sind Fremd-Eingaben),
im Betreff und Text-Teil nicht.
"""

import html
import logging
import re
from collections import ChainMap
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from rh_automation.models.mail_automation import AutomationEntityType
from rh_automation.services.automation_errors import TemplateRenderError
from rh_automation.services.condition_evaluator import is_resolved, resolve_field

logger = logging.getLogger(__name__)

# {{name}}, {{ name }}, {{project.name}}
TOKEN_PATTERN = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*(?:\.[A-Za-z0-9_]+)*)\s*\}\}")

# Datumsformat pro Locale (Sprache als Fallback), sonst ISO
LOCALE_DATE_FORMATS: dict[str, str] = {
    "fr": "%d/%m/%Y",
    "de": "%d.%m.%Y",
    "en": "%d/%m/%Y",
    "en_us": "%m/%d/%Y",
    "es": "%d/%m/%Y",
    "it": "%d/%m/%Y",
    "pt": "%d/%m/%Y",
    "nl": "%d-%m-%Y",
}


@dataclass(frozen=True)
class MailContent:
    """Betreff + HTML + optionaler Text-Teil (vor oder nach dem Rendern)."""

    subject: str
    html: str
    text: str | None = None

    @classmethod
    def from_template(cls, template: Mapping[str, Any]) -> "MailContent":
        """Baut den Inhalt aus dem gespeicherten ``mail_template``-JSON."""
        return cls(
            subject=template.get("subject") or "",
            html=template.get("html_content") or template.get("htmlContent") or "",
            text=template.get("text_content") or template.get("textContent"),
        )


# ==================== Rendering ====================


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if hasattr(value, "value") and isinstance(getattr(value, "value"), str):
        # str-Enums
        return value.value
    return str(value)


def _lookup(bindings: Mapping[str, Any], key: str) -> Any:
    if key in bindings and bindings[key] is not None:
        return bindings[key]
    if "." in key:
        # Relationspfad direkt im Entity-Snapshot
        entity = bindings.get("__entity__")
        if entity is not None:
            return resolve_field(entity, key)
    return None


def render_text(text: str | None, bindings: Mapping[str, Any], escape: bool = False) -> str | None:
    """Ersetzt alle Tokens in einem String."""
    if text is None:
        return None

    def _replace(match: re.Match) -> str:
        value = _lookup(bindings, match.group(1))
        if value is None or not is_resolved(value) or isinstance(value, (Mapping, list)):
            return match.group(0)
        formatted = _format_value(value)
        return html.escape(formatted) if escape else formatted

    return TOKEN_PATTERN.sub(_replace, text)


def render(template: MailContent, bindings: Mapping[str, Any]) -> MailContent:
    """Rendert Betreff, HTML und Text.

    Raises:
        TemplateRenderError: Bei unerwarteten internen Fehlern (nicht bei fehlenden Tokens)
    """
    try:
        return MailContent(
            subject=render_text(template.subject, bindings) or "",
            html=render_text(template.html, bindings, escape=True) or "",
            text=render_text(template.text, bindings),
        )
    except Exception as e:
        raise TemplateRenderError(f"Template konnte nicht gerendert werden: {e}") from e


def unresolved_tokens(text: str | None) -> list[str]:
    """Tokens, die nach dem Rendern noch im Text stehen."""
    if not text:
        return []
    return TOKEN_PATTERN.findall(text)


# ==================== Bindings ====================


def format_date_for_locale(value: date, locale: str | None) -> str:
    """Formatiert ein Datum im Stil der Locale (``fr_FR`` → 31/12/2024)."""
    key = (locale or "").replace("-", "_").lower()
    fmt = LOCALE_DATE_FORMATS.get(key) or LOCALE_DATE_FORMATS.get(key.split("_")[0], "%Y-%m-%d")
    return value.strftime(fmt)


def system_variables(
    now: datetime,
    locale: str | None,
    system_name: str,
    timezone_name: str | None = None,
) -> dict[str, str]:
    """System-Variablen, einmal pro Event berechnet."""
    local_now = now
    if timezone_name:
        try:
            local_now = now.astimezone(ZoneInfo(timezone_name))
        except ZoneInfoNotFoundError:
            logger.warning(f"Unbekannte Zeitzone '{timezone_name}', nutze UTC")
    return {
        "current_date": format_date_for_locale(local_now.date(), locale),
        "current_time": local_now.strftime("%H:%M"),
        "system_name": system_name,
    }


def _scalars(snapshot: Mapping[str, Any] | None) -> dict[str, Any]:
    if not snapshot:
        return {}
    return {
        key: value
        for key, value in snapshot.items()
        if value is not None and not isinstance(value, (Mapping, list))
    }


def _get(snapshot: Mapping[str, Any] | None, path: str) -> Any:
    if not snapshot:
        return None
    value = resolve_field(snapshot, path)
    return value if is_resolved(value) else None


def entity_variables(entity_type: AutomationEntityType | str, snapshot: Mapping[str, Any]) -> dict[str, Any]:
    """Variablen aus der Entitaet und ihren geladenen Relationen."""
    entity_type = AutomationEntityType(entity_type)
    variables = _scalars(snapshot)

    if entity_type == AutomationEntityType.CANDIDATE:
        variables["project_name"] = _get(snapshot, "project.name")
        variables["company_name"] = _get(snapshot, "project.company.name")
        variables["candidate_name"] = _get(snapshot, "name")
    elif entity_type == AutomationEntityType.PROJECT:
        variables["project_name"] = _get(snapshot, "name")
        variables["company_name"] = _get(snapshot, "company.name")
    elif entity_type == AutomationEntityType.ANALYSIS:
        variables["name"] = _get(snapshot, "candidate.name")
        variables["email"] = _get(snapshot, "candidate.email")
        variables["phone"] = _get(snapshot, "candidate.phone")
        variables["candidate_name"] = variables["name"]
        variables["candidate_email"] = variables["email"]
        variables["project_name"] = _get(snapshot, "project.name")
        variables["company_name"] = _get(snapshot, "project.company.name")
    elif entity_type == AutomationEntityType.USER:
        first = _get(snapshot, "first_name") or ""
        last = _get(snapshot, "last_name") or ""
        variables["name"] = f"{first} {last}".strip() or None
        variables["company_name"] = _get(snapshot, "company.name")

    # None faellt auf die naechste Ebene durch
    return {key: value for key, value in variables.items() if value is not None}


def build_bindings(
    entity_type: AutomationEntityType | str,
    snapshot: Mapping[str, Any],
    template_variables: Mapping[str, Any] | None,
    system_vars: Mapping[str, Any],
) -> ChainMap:
    """Bindings in Aufloesungs-Reihenfolge: Entitaet > statische Variablen > System."""
    static_vars = {k: v for k, v in (template_variables or {}).items() if v is not None}
    entity_vars = entity_variables(entity_type, snapshot)
    entity_vars["__entity__"] = snapshot
    return ChainMap(entity_vars, static_vars, dict(system_vars))
