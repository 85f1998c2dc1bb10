"""Mail-Template-Service - Vorlagen verwalten und System-Mails versenden.

Vorlagen-Auswahl fuer einen Typ:
1. aktive Vorlage der Firma
2. aktive globale Default-Vorlage
3. irgendeine aktive globale Vorlage
4. eingebaute Vorlage (nur Einladung, Verifizierung, Passwort-Reset)
"""

import logging
from collections import ChainMap
from collections.abc import Mapping
from typing import Any
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from rh_automation.api.exception_handlers import ConflictException, InvalidConfigurationException
from rh_automation.config import settings
from rh_automation.database import utcnow
from rh_automation.models import (
    DeliveryStatus,
    MailAutomation,
    MailTemplate,
    MailTemplateStatus,
    MailTemplateType,
)
from rh_automation.schemas.errors import ErrorCode
from rh_automation.schemas.mail import MailTemplateCreate, MailTemplateUpdate
from rh_automation.services.automation_errors import TemplateRenderError
from rh_automation.services.mail_gateway import DeliveryResult, MailGateway
from rh_automation.services.mail_providers import OutgoingMessage
from rh_automation.services.template_renderer import (
    MailContent,
    render,
    system_variables,
    unresolved_tokens,
)

logger = logging.getLogger(__name__)

# Felder, deren Aenderung die Version erhoeht
CONTENT_FIELDS = ("subject", "html_content", "text_content")

BUILTIN_TEMPLATES: dict[MailTemplateType, MailContent] = {
    MailTemplateType.INVITATION: MailContent(
        subject="Invitation à rejoindre {{company_name}}",
        html=(
            "<h2>Bonjour {{name}},</h2>"
            "<p>Vous avez été invité(e) à rejoindre <strong>{{company_name}}</strong> "
            "sur RH Analytics Pro.</p>"
            '<p><a href="{{invitation_link}}">Accepter l\'invitation</a></p>'
            "<p>{{system_name}}</p>"
        ),
        text=(
            "Bonjour {{name}},\n\nVous avez été invité(e) à rejoindre {{company_name}} "
            "sur RH Analytics Pro.\n\nAccepter l'invitation : {{invitation_link}}\n"
        ),
    ),
    MailTemplateType.VERIFICATION: MailContent(
        subject="Vérifiez votre adresse e-mail",
        html=(
            "<h2>Bonjour {{name}},</h2>"
            "<p>Merci de confirmer votre adresse e-mail :</p>"
            '<p><a href="{{verification_link}}">Vérifier mon adresse</a></p>'
        ),
        text="Bonjour {{name}},\n\nMerci de confirmer votre adresse e-mail : {{verification_link}}\n",
    ),
    MailTemplateType.PASSWORD_RESET: MailContent(
        subject="Réinitialisation de votre mot de passe",
        html=(
            "<h2>Bonjour {{name}},</h2>"
            "<p>Vous avez demandé la réinitialisation de votre mot de passe.</p>"
            '<p><a href="{{reset_link}}">Choisir un nouveau mot de passe</a></p>'
            "<p>Ce lien expire le {{expiry_date}}.</p>"
        ),
        text=(
            "Bonjour {{name}},\n\nNouveau mot de passe : {{reset_link}}\n"
            "Ce lien expire le {{expiry_date}}.\n"
        ),
    ),
}


def current_system_variables(locale: str | None = None) -> dict[str, str]:
    """System-Variablen fuer Mails ausserhalb der Automationen."""
    return system_variables(
        now=utcnow(),
        locale=locale or settings.default_locale,
        system_name=settings.public_base_url,
        timezone_name=settings.default_timezone,
    )


class MailTemplateService:
    """Service fuer Vorlagen-Verwaltung."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def list_templates(
        self,
        template_type: str | None = None,
        status: str | None = None,
        company_id: UUID | None = None,
    ) -> list[MailTemplate]:
        query = select(MailTemplate)
        if template_type:
            query = query.where(MailTemplate.type == template_type)
        if status:
            query = query.where(MailTemplate.status == status)
        if company_id:
            query = query.where(MailTemplate.company_id == company_id)
        result = await self.db.execute(query.order_by(MailTemplate.type, MailTemplate.name))
        return list(result.scalars().all())

    async def create_template(self, data: MailTemplateCreate) -> MailTemplate:
        template = MailTemplate(
            **data.model_dump(exclude={"type", "status"}),
            type=data.type.value,
            status=data.status.value,
        )
        self.db.add(template)
        await self.db.flush()
        if template.is_default:
            await self._clear_other_defaults(template)
        logger.info(f"Vorlage erstellt: {template.id} - {template.name} ({template.type})")
        return template

    async def update_template(self, template_id: UUID, data: MailTemplateUpdate) -> MailTemplate | None:
        """Aktualisiert eine Vorlage; Inhaltsaenderung erhoeht ``version``."""
        template = await self.db.get(MailTemplate, template_id)
        if not template:
            return None

        changes = data.model_dump(exclude_unset=True)
        if changes.get("status") is not None:
            changes["status"] = changes["status"].value

        content_changed = False
        for key, value in changes.items():
            if value is None and key in ("name", "subject", "html_content", "status", "is_default"):
                continue
            if key in CONTENT_FIELDS and getattr(template, key) != value:
                content_changed = True
            setattr(template, key, value)

        if content_changed:
            template.version = (template.version or 1) + 1
        await self.db.flush()
        if template.is_default:
            await self._clear_other_defaults(template)

        logger.info(f"Vorlage aktualisiert: {template.id} (Version {template.version})")
        return template

    async def delete_template(self, template_id: UUID) -> bool:
        """Loescht eine Vorlage, solange keine Automation sie referenziert."""
        template = await self.db.get(MailTemplate, template_id)
        if not template:
            return False

        in_use = await self.db.scalar(
            select(func.count(MailAutomation.id)).where(MailAutomation.mail_template_id == template_id)
        )
        if in_use:
            raise ConflictException(
                message=f"Vorlage wird noch von {in_use} Automation(en) verwendet",
                error_code=ErrorCode.MAIL_TEMPLATE_IN_USE,
            )

        await self.db.delete(template)
        await self.db.flush()
        logger.info(f"Vorlage geloescht: {template_id} - {template.name}")
        return True

    async def preview_template(
        self,
        template_id: UUID,
        variables: Mapping[str, Any],
        locale: str | None = None,
    ) -> dict[str, Any] | None:
        """Rendert eine Vorlage mit Beispielwerten, ohne zu versenden."""
        template = await self.db.get(MailTemplate, template_id)
        if not template:
            return None

        bindings = ChainMap(dict(variables), current_system_variables(locale))
        try:
            content = render(
                MailContent(template.subject, template.html_content, template.text_content),
                bindings,
            )
        except TemplateRenderError as e:
            raise InvalidConfigurationException(e.message) from e

        unresolved = {
            token
            for text in (content.subject, content.html, content.text)
            for token in unresolved_tokens(text)
        }
        return {
            "subject": content.subject,
            "html_content": content.html,
            "text_content": content.text,
            "unresolved": sorted(unresolved),
        }

    async def find_active_template(
        self,
        template_type: MailTemplateType,
        company_id: UUID | None = None,
    ) -> MailTemplate | None:
        """Beste aktive Vorlage fuer Typ und Firma."""
        base = select(MailTemplate).where(
            MailTemplate.type == template_type.value,
            MailTemplate.status == MailTemplateStatus.ACTIVE.value,
        )
        if company_id is not None:
            template = (
                await self.db.execute(
                    base.where(MailTemplate.company_id == company_id)
                    .order_by(MailTemplate.is_default.desc(), MailTemplate.updated_at.desc())
                )
            ).scalars().first()
            if template:
                return template

        return (
            await self.db.execute(
                base.where(MailTemplate.company_id.is_(None))
                .order_by(MailTemplate.is_default.desc(), MailTemplate.updated_at.desc())
            )
        ).scalars().first()

    async def _clear_other_defaults(self, template: MailTemplate) -> None:
        """Pro Typ und Firma (bzw. global) gibt es nur eine Default-Vorlage."""
        scope = (
            MailTemplate.company_id == template.company_id
            if template.company_id
            else MailTemplate.company_id.is_(None)
        )
        result = await self.db.execute(
            select(MailTemplate).where(
                MailTemplate.type == template.type,
                MailTemplate.is_default.is_(True),
                MailTemplate.id != template.id,
                scope,
            )
        )
        for other in result.scalars().all():
            other.is_default = False
        await self.db.flush()


class SystemMailService:
    """Konto-Mails (Einladung, Verifizierung, Passwort-Reset) ueber das Gateway."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], gateway: MailGateway):
        self.session_factory = session_factory
        self.gateway = gateway

    async def resolve_template(
        self,
        template_type: MailTemplateType,
        company_id: UUID | None = None,
    ) -> MailContent | None:
        async with self.session_factory() as session:
            stored = await MailTemplateService(session).find_active_template(template_type, company_id)
            if stored is not None:
                return MailContent(stored.subject, stored.html_content, stored.text_content)
        return BUILTIN_TEMPLATES.get(template_type)

    async def send_system_email(
        self,
        template_type: MailTemplateType | str,
        to: str,
        data: Mapping[str, Any],
        company_id: UUID | None = None,
        locale: str | None = None,
    ) -> DeliveryResult:
        """Rendert die passende Vorlage mit ``data`` und versendet sie."""
        template_type = MailTemplateType(template_type)
        template = await self.resolve_template(template_type, company_id)
        if template is None:
            error = f"Keine Vorlage fuer '{template_type.value}'"
            logger.error(error)
            return DeliveryResult(status=DeliveryStatus.FAILED, error=error)

        bindings = ChainMap({k: v for k, v in data.items() if v is not None}, current_system_variables(locale))
        try:
            content = render(template, bindings)
        except TemplateRenderError as e:
            logger.error(f"System-Mail {template_type.value} an {to}: {e.message}")
            return DeliveryResult(status=DeliveryStatus.FAILED, error=e.message)

        result = await self.gateway.send(
            company_id,
            OutgoingMessage(recipients=(to,), subject=content.subject, html=content.html, text=content.text),
        )
        if result.success:
            logger.info(f"System-Mail {template_type.value} an {to} versendet")
        else:
            logger.error(f"System-Mail {template_type.value} an {to} fehlgeschlagen: {result.error}")
        return result
