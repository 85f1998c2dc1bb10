"""Mail Gateway - Provider-Auswahl und Versand mit Retry.

Aufloesung der Konfiguration fuer eine Firma:
1. Aktive Konfiguration, die der Firma zugeordnet ist (Join-Tabelle oder
   direkte ``company_id``)
2. Die aktive, nicht zugeordnete ``is_default``-Konfiguration
3. Sonst ``ConfigurationMissing`` (kein stiller Fallback)

Transiente Provider-Fehler werden mit exponentiellem Backoff wiederholt,
bis ``Limits.MAIL_MAX_ATTEMPTS`` erreicht ist. Die Message-ID bleibt ueber
alle Versuche gleich.
"""

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from rh_automation.config import limits
from rh_automation.models import (
    DeliveryStatus,
    MailConfiguration,
    MailConfigurationCompany,
    MailProviderType,
)
from rh_automation.services.automation_errors import ConfigurationMissing, ProviderTransportError
from rh_automation.services.mail_providers import (
    MailProviderAdapter,
    OutgoingMessage,
    ResolvedMailConfiguration,
    default_adapters,
)
from rh_automation.services.ttl_cache import TTLCache

logger = logging.getLogger(__name__)

# Wird nach jedem Versuch aufgerufen: (Versuch-Nr., Fehler oder None)
AttemptHook = Callable[[int, ProviderTransportError | None], Awaitable[None]]


@dataclass(frozen=True)
class DeliveryResult:
    """Ergebnis eines logischen Versands (inkl. aller Retries)."""

    status: DeliveryStatus
    attempts: int = 0
    provider_type: str | None = None
    message_id: str | None = None
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.status == DeliveryStatus.DELIVERED


class MailGateway:
    """Provider-unabhaengiger Versand."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        adapters: dict[MailProviderType, MailProviderAdapter] | None = None,
        max_attempts: int = limits.MAIL_MAX_ATTEMPTS,
        backoff_base: float = limits.MAIL_BACKOFF_BASE_SECONDS,
        backoff_max: float = limits.MAIL_BACKOFF_MAX_SECONDS,
        cache_ttl: float = limits.AUTOMATION_CACHE_TTL_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.session_factory = session_factory
        self.adapters = adapters if adapters is not None else default_adapters()
        self.max_attempts = max(1, max_attempts)
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self._sleep = sleep
        self._cache = TTLCache(cache_ttl)

    # ==================== Konfiguration ====================

    async def resolve_configuration(self, company_id: uuid.UUID | None) -> ResolvedMailConfiguration:
        """Konfiguration fuer die Firma (gecached).

        Raises:
            ConfigurationMissing: Weder Firmen-Konfiguration noch globaler Default
        """
        found, cached = self._cache.get(company_id)
        if found:
            return cached

        generation = self._cache.generation
        async with self.session_factory() as session:
            config = None
            if company_id is not None:
                config = await self._company_configuration(session, company_id)
            if config is None:
                config = await self._default_configuration(session)
            if config is None:
                raise ConfigurationMissing(company_id)
            resolved = ResolvedMailConfiguration.from_model(config)

        self._cache.set(company_id, resolved, generation=generation)
        return resolved

    async def _company_configuration(
        self,
        session: AsyncSession,
        company_id: uuid.UUID,
    ) -> MailConfiguration | None:
        result = await session.execute(
            select(MailConfiguration)
            .where(
                MailConfiguration.is_active.is_(True),
                or_(
                    MailConfiguration.company_id == company_id,
                    MailConfiguration.company_links.any(
                        MailConfigurationCompany.company_id == company_id
                    ),
                ),
            )
            .order_by(MailConfiguration.updated_at.desc())
        )
        configs = list(result.scalars().all())
        if len(configs) > 1:
            logger.warning(
                f"Firma {company_id} hat {len(configs)} aktive Mail-Konfigurationen, "
                f"nutze die zuletzt geaenderte ({configs[0].id})"
            )
        return configs[0] if configs else None

    async def _default_configuration(self, session: AsyncSession) -> MailConfiguration | None:
        result = await session.execute(
            select(MailConfiguration)
            .where(
                MailConfiguration.is_active.is_(True),
                MailConfiguration.is_default.is_(True),
                MailConfiguration.company_id.is_(None),
                ~MailConfiguration.company_links.any(),
            )
            .order_by(MailConfiguration.updated_at.desc())
        )
        configs = list(result.scalars().all())
        if len(configs) > 1:
            logger.warning(f"{len(configs)} globale Default-Konfigurationen aktiv, nutze {configs[0].id}")
        return configs[0] if configs else None

    def invalidate(self) -> None:
        self._cache.invalidate()
        logger.debug("Mail-Konfigurations-Cache invalidiert")

    # ==================== Versand ====================

    def backoff_delay(self, attempt: int) -> float:
        """Wartezeit nach dem n-ten fehlgeschlagenen Versuch (1, 2, 4, ... Sekunden)."""
        return min(self.backoff_base * (2 ** (attempt - 1)), self.backoff_max)

    async def _notify(
        self,
        on_attempt: AttemptHook | None,
        attempt: int,
        error: ProviderTransportError | None,
    ) -> None:
        if on_attempt is None:
            return
        try:
            await on_attempt(attempt, error)
        except Exception:
            logger.exception(f"Attempt-Hook fehlgeschlagen (Versuch {attempt})")

    async def send(
        self,
        company_id: uuid.UUID | None,
        message: OutgoingMessage,
        on_attempt: AttemptHook | None = None,
    ) -> DeliveryResult:
        """Sendet eine gerenderte Nachricht. Wirft nie; Fehler stehen im Ergebnis."""
        try:
            config = await self.resolve_configuration(company_id)
        except ConfigurationMissing as e:
            logger.error(f"Versand abgebrochen: {e.message}")
            return DeliveryResult(status=DeliveryStatus.FAILED, error=e.message)

        adapter = self.adapters.get(config.provider_type)
        if adapter is None:
            error = f"Kein Adapter fuer Provider '{config.provider_type.value}'"
            logger.error(error)
            return DeliveryResult(
                status=DeliveryStatus.FAILED,
                provider_type=config.provider_type.value,
                error=error,
            )

        provider = config.provider_type.value
        attempt = 0
        while True:
            attempt += 1
            try:
                provider_message_id = await adapter.send(config, message)
            except ProviderTransportError as e:
                await self._notify(on_attempt, attempt, e)
                if not e.transient:
                    logger.error(f"{provider}: permanenter Fehler, kein Retry: {e.message}")
                    return DeliveryResult(
                        status=DeliveryStatus.FAILED,
                        attempts=attempt,
                        provider_type=provider,
                        message_id=message.message_id,
                        error=e.message,
                    )
                if attempt >= self.max_attempts:
                    logger.error(f"{provider}: {attempt} Versuche fehlgeschlagen, gebe auf: {e.message}")
                    return DeliveryResult(
                        status=DeliveryStatus.FAILED,
                        attempts=attempt,
                        provider_type=provider,
                        message_id=message.message_id,
                        error=e.message,
                    )
                delay = self.backoff_delay(attempt)
                logger.warning(
                    f"{provider}: transienter Fehler (Versuch {attempt}/{self.max_attempts}), "
                    f"Retry in {delay:.1f}s: {e.message}"
                )
                await self._sleep(delay)
                continue
            except Exception as e:
                # Programmierfehler im Adapter: nicht wiederholen
                logger.exception(f"{provider}: unerwarteter Fehler beim Versand")
                error = f"Unerwarteter Fehler: {e}"
                await self._notify(on_attempt, attempt, ProviderTransportError(error, transient=False, provider=provider))
                return DeliveryResult(
                    status=DeliveryStatus.FAILED,
                    attempts=attempt,
                    provider_type=provider,
                    message_id=message.message_id,
                    error=error,
                )

            await self._notify(on_attempt, attempt, None)
            return DeliveryResult(
                status=DeliveryStatus.DELIVERED,
                attempts=attempt,
                provider_type=provider,
                message_id=provider_message_id or message.message_id,
            )
