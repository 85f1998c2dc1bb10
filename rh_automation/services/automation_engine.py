"""Automation Engine - Verdrahtet Detector, Bus, Dispatcher und Orchestrator.

    Commit ─▶ EntityChangeDetector ─▶ EventBus ─▶ AutomationDispatcher
                                                        │ (Worker)
                                                        ▼
                                   TriggerOrchestrator ─▶ MailGateway

Wird im FastAPI-Lifespan gestartet und gestoppt.
"""

import logging
import uuid

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import Session

from rh_automation.config import limits
from rh_automation.database import TrackedSession, async_session_maker
from rh_automation.models import AutomationEntityType, AutomationTrigger, MailProviderType
from rh_automation.services.automation_dispatcher import AutomationDispatcher
from rh_automation.services.automation_registry import AutomationRegistry
from rh_automation.services.change_detector import EntityChangeDetector
from rh_automation.services.delivery_service import DeliveryRecordService
from rh_automation.services.event_bus import EntityEvent, EventBus
from rh_automation.services.mail_gateway import MailGateway
from rh_automation.services.mail_providers import MailProviderAdapter
from rh_automation.services.mail_template_service import SystemMailService
from rh_automation.services.trigger_orchestrator import TriggerOrchestrator

logger = logging.getLogger(__name__)


class AutomationEngine:
    """Einstiegspunkt der Mail-Automatisierung."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] = async_session_maker,
        session_class: type[Session] = TrackedSession,
        adapters: dict[MailProviderType, MailProviderAdapter] | None = None,
        gateway: MailGateway | None = None,
        workers: int = limits.AUTOMATION_WORKERS,
        queue_size: int = limits.AUTOMATION_QUEUE_SIZE,
    ):
        self.session_factory = session_factory
        self.session_class = session_class

        self.bus = EventBus()
        self.registry = AutomationRegistry(session_factory)
        self.gateway = gateway or MailGateway(session_factory, adapters=adapters)
        self.deliveries = DeliveryRecordService(session_factory)
        self.orchestrator = TriggerOrchestrator(
            session_factory,
            registry=self.registry,
            gateway=self.gateway,
            deliveries=self.deliveries,
        )
        self.dispatcher = AutomationDispatcher(
            self.orchestrator.handle_event,
            workers=workers,
            queue_size=queue_size,
        )
        self.detector = EntityChangeDetector(self.bus)
        self.system_mail = SystemMailService(session_factory, self.gateway)

        self.bus.subscribe(self.dispatcher.submit)
        self.detector.add_invalidator(self.invalidate_caches)

    async def start(self) -> None:
        await self.dispatcher.start()
        self.detector.install(self.session_class)
        logger.info("AutomationEngine gestartet")

    async def stop(self) -> None:
        self.detector.uninstall()
        await self.dispatcher.stop()
        logger.info("AutomationEngine gestoppt")

    async def drain(self) -> None:
        """Wartet, bis alle eingereihten Events verarbeitet sind."""
        await self.dispatcher.join()

    def invalidate_caches(self) -> None:
        self.registry.invalidate()
        self.gateway.invalidate()

    def notify_entity_event(
        self,
        entity_type: AutomationEntityType | str,
        operation: AutomationTrigger | str,
        entity_id: uuid.UUID | str,
        company_id: uuid.UUID | str | None = None,
    ) -> bool:
        """Meldet ein Event manuell (nur fuer Bulk-Pfade ohne ORM-Hooks).

        Normale Schreibzugriffe ueber die Session werden automatisch erkannt;
        ein zusaetzlicher Aufruf wuerde doppelt ausloesen.

        Returns:
            True, wenn das Event eingereiht wurde
        """
        event = EntityEvent(
            entity_type=AutomationEntityType(entity_type),
            operation=AutomationTrigger(operation),
            entity_id=entity_id if isinstance(entity_id, uuid.UUID) else uuid.UUID(str(entity_id)),
            company_id=(
                company_id if company_id is None or isinstance(company_id, uuid.UUID)
                else uuid.UUID(str(company_id))
            ),
            source="manual",
        )
        accepted = self.bus.publish(event) > 0
        if accepted:
            logger.info(f"Manuelles Event eingereiht: {event.describe()}")
        return accepted
