"""Automation Registry - Aktive Automationen nach Entitaet und Trigger.

Liest ``mail_automations`` (plus verknuepfte MailTemplates) und cached das
Ergebnis kurz. Admin-Schreibzugriffe invalidieren den Cache ueber den
EntityChangeDetector.
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from rh_automation.config import limits
from rh_automation.models import (
    AutomationEntityType,
    AutomationTrigger,
    MailAutomation,
    MailTemplate,
    MailTemplateStatus,
)
from rh_automation.services.ttl_cache import TTLCache

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AutomationDefinition:
    """Unveraenderliche Kopie einer Automation (sicher ueber Sessions hinweg)."""

    id: uuid.UUID
    title: str
    entity_type: AutomationEntityType
    trigger_event: AutomationTrigger
    company_id: uuid.UUID | None
    recipients: tuple[str, ...]
    mail_template: dict[str, Any]
    conditions: tuple[dict[str, Any], ...] = ()
    template_variables: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_model(cls, automation: MailAutomation, template: MailTemplate | None = None) -> "AutomationDefinition":
        mail_template = dict(automation.mail_template or {})
        if not mail_template.get("subject") and template is not None:
            # Verknuepfte Vorlage statt Inline-Template
            mail_template = {
                "subject": template.subject,
                "html_content": template.html_content,
                "text_content": template.text_content,
            }
        return cls(
            id=automation.id,
            title=automation.title,
            entity_type=AutomationEntityType(automation.entity_type),
            trigger_event=AutomationTrigger(automation.trigger_event),
            company_id=automation.company_id,
            recipients=tuple(automation.recipients or ()),
            mail_template=mail_template,
            conditions=tuple(automation.conditions or ()),
            template_variables=dict(automation.template_variables or {}),
        )

    def applies_to_company(self, company_id: uuid.UUID | None) -> bool:
        """Globale Automationen gelten immer, firmenbezogene nur fuer ihre Firma."""
        return self.company_id is None or self.company_id == company_id


class AutomationRegistry:
    """Lookup aktiver Automationen mit TTL-Cache."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ttl_seconds: float = limits.AUTOMATION_CACHE_TTL_SECONDS,
    ):
        self.session_factory = session_factory
        self._cache = TTLCache(ttl_seconds)

    async def find_active(
        self,
        entity_type: AutomationEntityType,
        trigger: AutomationTrigger,
        company_id: uuid.UUID | None = None,
    ) -> list[AutomationDefinition]:
        """Aktive Automationen fuer (Entitaet, Trigger).

        Mit ``company_id`` nur globale + die der Firma, sonst alle aktiven
        (Firmen-Filter erfolgt dann nach dem Laden der Entitaet).
        """
        definitions = await self._load(entity_type, trigger)
        if company_id is None:
            return list(definitions)
        return [d for d in definitions if d.applies_to_company(company_id)]

    async def _load(
        self,
        entity_type: AutomationEntityType,
        trigger: AutomationTrigger,
    ) -> tuple[AutomationDefinition, ...]:
        key = (entity_type.value, trigger.value)
        found, cached = self._cache.get(key)
        if found:
            return cached

        generation = self._cache.generation
        async with self.session_factory() as session:
            result = await session.execute(
                select(MailAutomation, MailTemplate)
                .outerjoin(
                    MailTemplate,
                    (MailTemplate.id == MailAutomation.mail_template_id)
                    & (MailTemplate.status == MailTemplateStatus.ACTIVE.value),
                )
                .where(
                    MailAutomation.is_active.is_(True),
                    MailAutomation.entity_type == entity_type.value,
                    MailAutomation.trigger_event == trigger.value,
                )
                .order_by(MailAutomation.created_at)
            )
            definitions = tuple(
                AutomationDefinition.from_model(automation, template)
                for automation, template in result.all()
            )

        self._cache.set(key, definitions, generation=generation)
        logger.debug(f"Registry: {len(definitions)} aktive Automation(en) fuer {key[0]}/{key[1]}")
        return definitions

    def invalidate(self) -> None:
        self._cache.invalidate()
        logger.debug("Registry-Cache invalidiert")
