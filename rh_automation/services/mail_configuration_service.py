"""Mail-Konfigurations-Service - Admin-CRUD fuer Versand-Provider.

Invarianten:
- hoechstens eine aktive, nicht zugeordnete Konfiguration mit ``is_default``
  (eine neue Default-Konfiguration loest die alte ab)
- eine Firma ist hoechstens einer aktiven Konfiguration zugeordnet
"""

import logging
from uuid import UUID

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from rh_automation.api.exception_handlers import (
    ConflictException,
    InvalidConfigurationException,
    MailTestFailedException,
    NotFoundException,
)
from rh_automation.models import Company, MailConfiguration, MailConfigurationCompany
from rh_automation.schemas.errors import ErrorCode
from rh_automation.schemas.mail import MailConfigurationCreate, MailConfigurationUpdate
from rh_automation.services.mail_gateway import DeliveryResult, MailGateway
from rh_automation.services.mail_providers import OutgoingMessage
from rh_automation.services.mail_template_service import current_system_variables
from rh_automation.services.template_renderer import MailContent, render

logger = logging.getLogger(__name__)

TEST_MAIL = MailContent(
    subject="Test de configuration mail - {{system_name}}",
    html=(
        "<h2>Test de configuration</h2>"
        "<p>Cet e-mail confirme que l'envoi depuis {{system_name}} fonctionne.</p>"
        "<p>Envoyé le {{current_date}} à {{current_time}}.</p>"
    ),
    text=(
        "Cet e-mail confirme que l'envoi depuis {{system_name}} fonctionne "
        "({{current_date}} {{current_time}}).\n"
    ),
)


class MailConfigurationService:
    """Service fuer Mail-Konfigurationen."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def list_configurations(self) -> list[MailConfiguration]:
        result = await self.db.execute(
            select(MailConfiguration).order_by(
                MailConfiguration.is_default.desc(),
                MailConfiguration.created_at.desc(),
            )
        )
        return list(result.scalars().all())

    async def get_configuration(self, config_id: UUID) -> MailConfiguration | None:
        """Laedt die Konfiguration immer mit ihren Firmen-Zuordnungen."""
        result = await self.db.execute(
            select(MailConfiguration)
            .where(MailConfiguration.id == config_id)
            .options(selectinload(MailConfiguration.company_links))
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def create_configuration(self, data: MailConfigurationCreate) -> MailConfiguration:
        config = MailConfiguration(
            **data.model_dump(exclude={"company_ids", "provider_type"}),
            provider_type=data.provider_type.value,
        )
        company_ids = list(dict.fromkeys(data.company_ids))
        if data.company_id and data.company_id not in company_ids:
            company_ids.insert(0, data.company_id)
        if config.is_active and company_ids:
            await self._ensure_companies_free(company_ids, exclude_id=None)

        self.db.add(config)
        await self.db.flush()

        if config.is_default and config.is_active:
            await self._clear_other_defaults(config.id)
        for company_id in company_ids:
            self.db.add(MailConfigurationCompany(mail_configuration_id=config.id, company_id=company_id))
        await self.db.flush()
        await self.db.refresh(config, attribute_names=["company_links"])

        logger.info(
            f"Mail-Konfiguration erstellt: {config.id} ({config.provider_type}, "
            f"default={config.is_default}, firmen={len(company_ids)})"
        )
        return config

    async def update_configuration(
        self,
        config_id: UUID,
        data: MailConfigurationUpdate,
    ) -> MailConfiguration | None:
        config = await self.get_configuration(config_id)
        if not config:
            return None

        changes = data.model_dump(exclude_unset=True)
        if changes.get("provider_type") is not None:
            changes["provider_type"] = changes["provider_type"].value

        for key, value in changes.items():
            if value is None and key in ("provider_type", "from_email", "from_name", "is_active", "is_default"):
                continue
            setattr(config, key, value)

        if config.is_default and config.is_scoped:
            raise InvalidConfigurationException(
                "Eine Default-Konfiguration darf keiner Firma zugeordnet sein"
            )
        if config.is_active and config.is_scoped and changes.get("is_active"):
            await self._ensure_companies_free(config.company_ids, exclude_id=config.id)

        await self.db.flush()
        if config.is_default and config.is_active:
            await self._clear_other_defaults(config.id)

        logger.info(f"Mail-Konfiguration aktualisiert: {config.id} - {sorted(changes)}")
        return config

    async def assign_companies(self, config_id: UUID, company_ids: list[UUID]) -> MailConfiguration:
        """Ersetzt die Firmen-Zuordnung."""
        config = await self.get_configuration(config_id)
        if not config:
            raise NotFoundException(
                message="Mail-Konfiguration nicht gefunden",
                error_code=ErrorCode.MAIL_CONFIGURATION_NOT_FOUND,
            )

        company_ids = list(dict.fromkeys(company_ids))
        if company_ids and config.is_default:
            raise InvalidConfigurationException(
                "Eine Default-Konfiguration darf keiner Firma zugeordnet sein"
            )

        found = await self.db.scalars(select(Company.id).where(Company.id.in_(company_ids)))
        missing = set(company_ids) - set(found.all())
        if missing:
            raise NotFoundException(
                message=f"Firma(en) nicht gefunden: {', '.join(sorted(str(m) for m in missing))}",
                error_code=ErrorCode.COMPANY_NOT_FOUND,
            )
        if config.is_active:
            await self._ensure_companies_free(company_ids, exclude_id=config.id)

        config.company_links.clear()
        await self.db.flush()
        for company_id in company_ids:
            config.company_links.append(MailConfigurationCompany(company_id=company_id))
        await self.db.flush()

        logger.info(f"Mail-Konfiguration {config.id}: {len(company_ids)} Firma(en) zugeordnet")
        return config

    async def toggle_configuration(self, config_id: UUID, is_active: bool) -> MailConfiguration | None:
        """Aktiviert/deaktiviert; beim Aktivieren gelten dieselben Invarianten wie beim Anlegen."""
        config = await self.get_configuration(config_id)
        if not config:
            return None

        if is_active and not config.is_active:
            if config.is_scoped:
                await self._ensure_companies_free(config.company_ids, exclude_id=config.id)
            config.is_active = True
            await self.db.flush()
            if config.is_default:
                await self._clear_other_defaults(config.id)
        else:
            config.is_active = is_active
            await self.db.flush()

        logger.info(f"Mail-Konfiguration {config.id}: aktiv={config.is_active}")
        return config

    async def delete_configuration(self, config_id: UUID) -> bool:
        """Loescht eine Konfiguration samt Firmen-Zuordnungen."""
        config = await self.get_configuration(config_id)
        if not config:
            return False
        if config.is_default and config.is_active:
            logger.warning(f"Aktive Default-Konfiguration {config.id} wird geloescht")
        await self.db.delete(config)
        await self.db.flush()
        logger.info(f"Mail-Konfiguration geloescht: {config_id}")
        return True

    async def send_test_mail(
        self,
        gateway: MailGateway,
        to: str,
        company_id: UUID | None = None,
    ) -> DeliveryResult:
        """Schickt eine Test-Mail ueber die Konfiguration, die fuer die Firma greift.

        Laeuft ueber das Gateway (gleiche Aufloesung und Retries wie Automationen).

        Raises:
            NotFoundException: Firma existiert nicht
            MailTestFailedException: Versand fehlgeschlagen
        """
        if company_id is not None and await self.db.get(Company, company_id) is None:
            raise NotFoundException(
                message=f"Firma {company_id} nicht gefunden",
                error_code=ErrorCode.COMPANY_NOT_FOUND,
            )

        content = render(TEST_MAIL, current_system_variables())
        result = await gateway.send(
            company_id,
            OutgoingMessage(recipients=(to,), subject=content.subject, html=content.html, text=content.text),
        )
        if not result.success:
            logger.warning(f"Test-Mail an {to} fehlgeschlagen: {result.error}")
            raise MailTestFailedException(f"Test-Mail fehlgeschlagen: {result.error}")

        logger.info(f"Test-Mail an {to} versendet ({result.provider_type}, {result.attempts} Versuch(e))")
        return result

    async def _ensure_companies_free(self, company_ids: list[UUID], exclude_id: UUID | None) -> None:
        """Keine Firma darf schon einer anderen aktiven Konfiguration gehoeren."""
        query = (
            select(MailConfiguration)
            .where(
                MailConfiguration.is_active.is_(True),
                or_(
                    MailConfiguration.company_id.in_(company_ids),
                    MailConfiguration.company_links.any(
                        MailConfigurationCompany.company_id.in_(company_ids)
                    ),
                ),
            )
        )
        if exclude_id is not None:
            query = query.where(MailConfiguration.id != exclude_id)
        other = (await self.db.execute(query)).scalars().first()
        if other is not None:
            raise ConflictException(
                message=f"Firma ist bereits der aktiven Mail-Konfiguration {other.id} zugeordnet",
            )

    async def _clear_other_defaults(self, keep_id: UUID) -> None:
        result = await self.db.execute(
            select(MailConfiguration).where(
                MailConfiguration.is_default.is_(True),
                MailConfiguration.id != keep_id,
            )
        )
        for other in result.scalars().all():
            other.is_default = False
            logger.info(f"Mail-Konfiguration {other.id} ist nicht mehr Default")
        await self.db.flush()
