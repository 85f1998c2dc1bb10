"""Automation Service - Admin-CRUD fuer Mail-Automationen.

Caches der Engine werden nach dem Commit ueber den EntityChangeDetector
invalidiert (MailAutomation ist ein Konfigurations-Model).
"""

import logging
from uuid import UUID

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from rh_automation.api.exception_handlers import InvalidConfigurationException, NotFoundException
from rh_automation.models import Company, MailAutomation, MailTemplate
from rh_automation.schemas.automation import AutomationCreate, AutomationUpdate
from rh_automation.schemas.errors import ErrorCode

logger = logging.getLogger(__name__)


class AutomationService:
    """Service fuer Automation-Verwaltung."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _check_references(self, company_id: UUID | None, mail_template_id: UUID | None) -> None:
        if company_id is not None and await self.db.get(Company, company_id) is None:
            raise NotFoundException(
                message=f"Firma {company_id} nicht gefunden",
                error_code=ErrorCode.COMPANY_NOT_FOUND,
            )
        if mail_template_id is not None and await self.db.get(MailTemplate, mail_template_id) is None:
            raise NotFoundException(
                message=f"Vorlage {mail_template_id} nicht gefunden",
                error_code=ErrorCode.MAIL_TEMPLATE_NOT_FOUND,
            )

    async def create_automation(self, data: AutomationCreate) -> MailAutomation:
        """Erstellt eine Automation (standardmaessig inaktiv)."""
        await self._check_references(data.company_id, data.mail_template_id)

        automation = MailAutomation(
            title=data.title.strip(),
            description=data.description,
            entity_type=data.entity_type.value,
            trigger_event=data.trigger_event.value,
            is_active=data.is_active,
            company_id=data.company_id,
            recipients=data.recipients,
            mail_template=data.mail_template.model_dump() if data.mail_template else {},
            mail_template_id=data.mail_template_id,
            conditions=[c.model_dump() for c in data.conditions],
            template_variables=dict(data.template_variables),
        )
        self.db.add(automation)
        await self.db.flush()
        logger.info(
            f"Automation erstellt: {automation.id} - {automation.title} "
            f"({automation.entity_type}/{automation.trigger_event}, aktiv={automation.is_active})"
        )
        return automation

    async def get_automation(self, automation_id: UUID) -> MailAutomation | None:
        return await self.db.get(MailAutomation, automation_id)

    async def list_automations(
        self,
        entity_type: str | None = None,
        trigger_event: str | None = None,
        is_active: bool | None = None,
        company_id: UUID | None = None,
        page: int = 1,
        per_page: int = 20,
    ) -> tuple[list[MailAutomation], int]:
        """Listet Automationen mit Filter und Pagination."""
        filters = []
        if entity_type:
            filters.append(MailAutomation.entity_type == entity_type)
        if trigger_event:
            filters.append(MailAutomation.trigger_event == trigger_event)
        if is_active is not None:
            filters.append(MailAutomation.is_active.is_(is_active))
        if company_id:
            filters.append(MailAutomation.company_id == company_id)

        total = await self.db.scalar(select(func.count(MailAutomation.id)).where(*filters))
        result = await self.db.execute(
            select(MailAutomation)
            .where(*filters)
            .order_by(MailAutomation.created_at.desc())
            .limit(per_page)
            .offset((page - 1) * per_page)
        )
        return list(result.scalars().all()), total or 0

    async def update_automation(self, automation_id: UUID, data: AutomationUpdate) -> MailAutomation | None:
        """Aktualisiert nur die gesetzten Felder."""
        automation = await self.db.get(MailAutomation, automation_id)
        if not automation:
            return None

        changes = data.model_dump(exclude_unset=True)
        if "company_id" in changes or "mail_template_id" in changes:
            await self._check_references(changes.get("company_id"), changes.get("mail_template_id"))

        for key, value in changes.items():
            if key in ("entity_type", "trigger_event") and value is not None:
                value = value.value if hasattr(value, "value") else value
            if key in ("title", "entity_type", "trigger_event", "is_active", "recipients") and value is None:
                continue
            if key == "mail_template":
                value = value or {}
            if key in ("conditions", "template_variables") and value is None:
                value = [] if key == "conditions" else {}
            setattr(automation, key, value)

        if not (automation.mail_template or {}).get("subject") and automation.mail_template_id is None:
            raise InvalidConfigurationException("Automation braucht mail_template oder mail_template_id")

        await self.db.flush()
        logger.info(f"Automation aktualisiert: {automation.id} - {sorted(changes)}")
        return automation

    async def toggle_automation(self, automation_id: UUID) -> MailAutomation | None:
        """Schaltet eine Automation an/aus."""
        automation = await self.db.get(MailAutomation, automation_id)
        if not automation:
            return None
        automation.is_active = not automation.is_active
        await self.db.flush()
        logger.info(f"Automation {automation.id}: aktiv={automation.is_active}")
        return automation

    async def delete_automation(self, automation_id: UUID) -> bool:
        automation = await self.db.get(MailAutomation, automation_id)
        if not automation:
            return False
        await self.db.delete(automation)
        await self.db.flush()
        logger.info(f"Automation geloescht: {automation_id}")
        return True

    async def get_stats(self, company_id: UUID | None = None) -> dict[str, int | float]:
        """Summiert die Versand-Zaehler (eine Aggregat-Query)."""
        query = select(
            func.count(MailAutomation.id),
            func.coalesce(func.sum(case((MailAutomation.is_active.is_(True), 1), else_=0)), 0),
            func.coalesce(func.sum(MailAutomation.sent_count), 0),
            func.coalesce(func.sum(MailAutomation.success_count), 0),
            func.coalesce(func.sum(MailAutomation.failed_count), 0),
        )
        if company_id:
            query = query.where(MailAutomation.company_id == company_id)
        total, active, sent, success, failed = (await self.db.execute(query)).one()

        return {
            "total_automations": int(total),
            "active_automations": int(active),
            "total_sent": int(sent),
            "total_success": int(success),
            "total_failed": int(failed),
            "success_rate": round(success / sent * 100, 2) if sent else 0.0,
        }
