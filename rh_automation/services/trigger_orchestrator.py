"""Trigger Orchestrator - Verarbeitet ein Entity-Event Ende-zu-Ende.

Zustaende pro Event bzw. Automation::

    RECEIVED → LOADED → MATCHED → CONDITIONS_PASSED → RENDERED → DISPATCHED
             → DELIVERED | FAILED | SKIPPED

Ablauf:
1. Registry: aktive Automationen fuer (Entitaet, Trigger). Keine → fertig.
2. Entitaet in frischer Session neu laden, mit allen Relationen, die
   Bedingungen und Templates brauchen (bei ON_DELETE: Snapshot aus dem
   Event + Eltern ueber Fremdschluessel). Nicht mehr vorhanden → SKIPPED.
3. Pro Automation parallel (Semaphore): Update-Relevanz, Bedingungen,
   Rendern, Empfaenger, DeliveryRecord anlegen, Versand ueber das Gateway.

Jede Automation ist isoliert: Fehler werden geloggt und im DeliveryRecord
festgehalten, nie an den Aufrufer geworfen.
"""

import asyncio
import enum
import logging
import uuid
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from rh_automation.config import limits, settings
from rh_automation.database import utcnow
from rh_automation.models import AutomationEntityType, AutomationTrigger, DeliveryStatus
from rh_automation.services.automation_errors import ConditionEvaluationError, TemplateRenderError
from rh_automation.services.automation_registry import AutomationDefinition, AutomationRegistry
from rh_automation.services.condition_evaluator import (
    condition_fields,
    evaluate_condition,
    is_resolved,
    parse_conditions,
    resolve_field,
)
from rh_automation.services.delivery_service import DeliveryRecordService, make_dedupe_key
from rh_automation.services.entity_loader import (
    extract_company_id,
    load_deleted_snapshot,
    load_snapshot,
    relation_paths_for,
)
from rh_automation.services.event_bus import EntityEvent
from rh_automation.services.mail_gateway import MailGateway
from rh_automation.services.mail_providers import OutgoingMessage
from rh_automation.services.template_renderer import (
    TOKEN_PATTERN,
    MailContent,
    build_bindings,
    render,
    system_variables,
)

logger = logging.getLogger(__name__)


class ProcessingState(str, enum.Enum):
    """Zustand eines Events bzw. einer Automation in der Verarbeitung."""

    RECEIVED = "RECEIVED"
    LOADED = "LOADED"
    MATCHED = "MATCHED"
    CONDITIONS_PASSED = "CONDITIONS_PASSED"
    RENDERED = "RENDERED"
    DISPATCHED = "DISPATCHED"
    DELIVERED = "DELIVERED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


_STATE_BY_DELIVERY = {
    DeliveryStatus.DISPATCHED: ProcessingState.DISPATCHED,
    DeliveryStatus.DELIVERED: ProcessingState.DELIVERED,
    DeliveryStatus.FAILED: ProcessingState.FAILED,
    DeliveryStatus.SKIPPED: ProcessingState.SKIPPED,
}

# Empfaenger-Platzhalter → Pfad im Entity-Snapshot
RECIPIENT_TOKENS: dict[str, dict[AutomationEntityType, str]] = {
    "candidate_email": {
        AutomationEntityType.CANDIDATE: "email",
        AutomationEntityType.ANALYSIS: "candidate.email",
    },
    "project_creator": {
        AutomationEntityType.CANDIDATE: "project.creator.email",
        AutomationEntityType.ANALYSIS: "project.creator.email",
        AutomationEntityType.PROJECT: "creator.email",
    },
    "user_email": {
        AutomationEntityType.USER: "email",
    },
}

_LOCALE_PATHS = ("company.locale", "project.company.locale")


@dataclass
class AutomationOutcome:
    """Ergebnis einer Automation fuer ein Event."""

    automation_id: uuid.UUID
    state: ProcessingState
    reason: str | None = None
    delivery_id: uuid.UUID | None = None
    duplicate: bool = False


@dataclass
class EventOutcome:
    """Ergebnis der Verarbeitung eines Events."""

    event: EntityEvent
    state: ProcessingState
    reason: str | None = None
    automations: list[AutomationOutcome] = field(default_factory=list)


def resolve_recipients(
    entity_type: AutomationEntityType,
    snapshot: Mapping[str, Any],
    recipients: Sequence[str],
) -> list[str]:
    """Literale Adressen + Platzhalter (``candidate_email``, ...) aufloesen.

    Reihenfolge bleibt erhalten, Duplikate (ohne Gross/Klein) fallen weg.
    """
    resolved: list[str] = []
    seen: set[str] = set()

    for raw in recipients:
        value = (raw or "").strip()
        if not value:
            continue
        if "@" not in value:
            path = RECIPIENT_TOKENS.get(value, {}).get(entity_type)
            if path is None:
                logger.warning(f"Unbekannter Empfaenger-Platzhalter '{value}' fuer {entity_type.value}")
                continue
            found = resolve_field(snapshot, path)
            if not is_resolved(found) or "@" not in str(found):
                logger.info(f"Empfaenger-Platzhalter '{value}' ohne E-Mail-Adresse")
                continue
            value = str(found).strip()

        if value.lower() not in seen:
            seen.add(value.lower())
            resolved.append(value)

    if len(resolved) > limits.RECIPIENTS_MAX:
        logger.warning(f"{len(resolved)} Empfaenger, begrenze auf {limits.RECIPIENTS_MAX}")
        resolved = resolved[: limits.RECIPIENTS_MAX]
    return resolved


def is_relevant_update(event: EntityEvent, automation: AutomationDefinition) -> bool:
    """ON_UPDATE feuert nur, wenn sich eine von den Bedingungen gelesene Spalte geaendert hat.

    Automationen ohne Bedingungen auf eigene Spalten feuern bei jeder echten
    Aenderung. Manuelle Events (Aenderungen unbekannt) feuern immer.
    """
    if event.operation != AutomationTrigger.ON_UPDATE or event.changed_fields is None:
        return True
    own_columns = {path for path in condition_fields(automation.conditions) if "." not in path}
    if not own_columns:
        return bool(event.changed_fields)
    return bool(own_columns & event.changed_fields)


def template_field_paths(automations: Sequence[AutomationDefinition]) -> set[str]:
    """Alle Feldpfade aus Bedingungen und Punkt-Tokens der Templates."""
    paths: set[str] = set()
    for automation in automations:
        paths |= condition_fields(automation.conditions)
        for key in ("subject", "html_content", "text_content"):
            text = automation.mail_template.get(key) or ""
            paths |= {token for token in TOKEN_PATTERN.findall(text) if "." in token}
    return paths


class TriggerOrchestrator:
    """Koordiniert Registry, Evaluator, Renderer und Gateway pro Event."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        registry: AutomationRegistry,
        gateway: MailGateway,
        deliveries: DeliveryRecordService,
        max_concurrent_sends: int = limits.AUTOMATION_MAX_CONCURRENT_SENDS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.registry = registry
        self.gateway = gateway
        self.deliveries = deliveries
        self.max_concurrent_sends = max(1, max_concurrent_sends)
        self.clock = clock

    # ==================== Event ====================

    async def handle_event(self, event: EntityEvent) -> EventOutcome:
        """Verarbeitet ein Event. Wirft nie."""
        logger.debug(f"{ProcessingState.RECEIVED.value}: {event.describe()} ({event.source})")

        if not settings.automation_enabled:
            return EventOutcome(event, ProcessingState.SKIPPED, "Automatisierung deaktiviert")

        try:
            automations = await self.registry.find_active(
                event.entity_type, event.operation, event.company_id
            )
        except Exception:
            logger.exception(f"Registry-Abfrage fehlgeschlagen fuer {event.describe()}")
            return EventOutcome(event, ProcessingState.FAILED, "Registry nicht erreichbar")

        if not automations:
            return EventOutcome(event, ProcessingState.SKIPPED, "Keine aktive Automation")

        paths = relation_paths_for(event.entity_type, template_field_paths(automations))
        try:
            snapshot = await self._load(event, paths)
        except Exception:
            logger.exception(f"Entitaet konnte nicht geladen werden: {event.describe()}")
            return EventOutcome(event, ProcessingState.FAILED, "Laden fehlgeschlagen")

        if snapshot is None:
            logger.info(f"{event.describe()} existiert nicht mehr, uebersprungen")
            return EventOutcome(event, ProcessingState.SKIPPED, "Entitaet nicht gefunden")
        logger.debug(f"{ProcessingState.LOADED.value}: {event.describe()} mit {sorted(paths)}")

        company_id = extract_company_id(snapshot) or event.company_id
        matched = [a for a in automations if a.applies_to_company(company_id)]
        if not matched:
            return EventOutcome(event, ProcessingState.SKIPPED, "Keine Automation fuer diese Firma")
        logger.info(f"{ProcessingState.MATCHED.value}: {event.describe()} → {len(matched)} Automation(en)")

        system_vars = system_variables(
            now=self.clock(),
            locale=self._locale(snapshot),
            system_name=settings.public_base_url,
            timezone_name=settings.default_timezone,
        )
        semaphore = asyncio.Semaphore(self.max_concurrent_sends)
        outcomes = await asyncio.gather(*(
            self._run_isolated(semaphore, event, automation, snapshot, company_id, system_vars)
            for automation in matched
        ))
        return EventOutcome(event, ProcessingState.MATCHED, automations=list(outcomes))

    async def _load(self, event: EntityEvent, paths: set[str]) -> dict[str, Any] | None:
        async with self.session_factory() as session:
            if event.operation == AutomationTrigger.ON_DELETE:
                base = dict(event.snapshot or {"id": event.entity_id})
                return await load_deleted_snapshot(session, event.entity_type, base, paths)
            return await load_snapshot(session, event.entity_type, event.entity_id, paths)

    @staticmethod
    def _locale(snapshot: Mapping[str, Any]) -> str:
        for path in _LOCALE_PATHS:
            value = resolve_field(snapshot, path)
            if is_resolved(value):
                return str(value)
        return settings.default_locale

    # ==================== Automation ====================

    async def _run_isolated(
        self,
        semaphore: asyncio.Semaphore,
        event: EntityEvent,
        automation: AutomationDefinition,
        snapshot: Mapping[str, Any],
        company_id: uuid.UUID | None,
        system_vars: Mapping[str, str],
    ) -> AutomationOutcome:
        async with semaphore:
            try:
                return await self.process_automation(event, automation, snapshot, company_id, system_vars)
            except Exception as e:
                logger.exception(
                    f"Automation {automation.id} fehlgeschlagen fuer {event.describe()}"
                )
                return AutomationOutcome(automation.id, ProcessingState.FAILED, reason=str(e))

    async def process_automation(
        self,
        event: EntityEvent,
        automation: AutomationDefinition,
        snapshot: Mapping[str, Any],
        company_id: uuid.UUID | None,
        system_vars: Mapping[str, str],
    ) -> AutomationOutcome:
        """Eine Automation fuer ein geladenes Event abarbeiten."""
        if not is_relevant_update(event, automation):
            logger.debug(f"Automation {automation.id}: Update ohne relevante Aenderung")
            return AutomationOutcome(automation.id, ProcessingState.SKIPPED, "Keine relevante Aenderung")

        try:
            conditions = parse_conditions(automation.conditions)
        except ConditionEvaluationError as e:
            logger.warning(f"Automation {automation.id} uebersprungen, Bedingung fehlerhaft: {e.message}")
            return AutomationOutcome(automation.id, ProcessingState.SKIPPED, e.message)

        if not all(evaluate_condition(snapshot, condition) for condition in conditions):
            logger.debug(f"Automation {automation.id}: Bedingungen nicht erfuellt fuer {event.describe()}")
            return AutomationOutcome(automation.id, ProcessingState.SKIPPED, "Bedingungen nicht erfuellt")
        logger.debug(f"{ProcessingState.CONDITIONS_PASSED.value}: Automation {automation.id}")

        dedupe_key = make_dedupe_key(
            automation.id, event.entity_type, event.entity_id, event.operation, event.occurred_at
        )
        recipients = resolve_recipients(event.entity_type, snapshot, automation.recipients)
        record_args = dict(
            dedupe_key=dedupe_key,
            automation_id=automation.id,
            entity_type=event.entity_type.value,
            entity_id=event.entity_id,
            operation=event.operation.value,
            recipients=recipients,
        )

        try:
            template = MailContent.from_template(automation.mail_template)
            if not template.subject or not template.html:
                raise TemplateRenderError("Automation hat kein vollstaendiges Template (Betreff/HTML)")
            bindings = build_bindings(event.entity_type, snapshot, automation.template_variables, system_vars)
            content = render(template, bindings)
        except TemplateRenderError as e:
            logger.error(
                f"Rendern fehlgeschlagen: Automation {automation.id}, Entitaet {event.entity_id}: {e.message}"
            )
            claim = await self.deliveries.claim(
                **record_args, subject=None, status=DeliveryStatus.FAILED, error=e.message
            )
            return AutomationOutcome(automation.id, ProcessingState.FAILED, e.message, claim.record_id)
        logger.debug(f"{ProcessingState.RENDERED.value}: Automation {automation.id}")

        if not recipients:
            claim = await self.deliveries.claim(
                **record_args,
                subject=content.subject,
                status=DeliveryStatus.SKIPPED,
                error="Keine gueltigen Empfaenger",
            )
            logger.info(f"Automation {automation.id}: keine Empfaenger fuer {event.describe()}")
            return AutomationOutcome(automation.id, ProcessingState.SKIPPED, "Keine Empfaenger", claim.record_id)

        claim = await self.deliveries.claim(**record_args, subject=content.subject)
        if not claim.created:
            logger.info(f"Automation {automation.id}: bereits verarbeitet ({dedupe_key}), kein erneuter Versand")
            return AutomationOutcome(
                automation.id,
                _STATE_BY_DELIVERY[claim.status],
                "Bereits verarbeitet",
                claim.record_id,
                duplicate=True,
            )
        logger.debug(f"{ProcessingState.DISPATCHED.value}: Automation {automation.id} ({dedupe_key})")

        async def on_attempt(attempt: int, error) -> None:
            await self.deliveries.record_attempt(claim.record_id, attempt, error.message if error else None)

        message = OutgoingMessage(
            recipients=tuple(recipients),
            subject=content.subject,
            html=content.html,
            text=content.text,
        )
        result = await self.gateway.send(company_id, message, on_attempt=on_attempt)

        await self.deliveries.finish(
            claim.record_id,
            result.status,
            attempts=result.attempts,
            provider_type=result.provider_type,
            message_id=result.message_id,
            error=result.error,
        )
        await self.deliveries.update_automation_stats(automation.id, result.success)

        if result.success:
            logger.info(
                f"Automation {automation.id} ({automation.title!r}) zugestellt an "
                f"{len(recipients)} Empfaenger fuer {event.describe()}"
            )
        else:
            logger.error(f"Automation {automation.id} fehlgeschlagen fuer {event.describe()}: {result.error}")
        return AutomationOutcome(
            automation.id,
            _STATE_BY_DELIVERY[result.status],
            result.error,
            claim.record_id,
        )
