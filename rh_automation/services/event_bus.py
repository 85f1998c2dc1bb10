"""In-Process Event-Bus fuer Entity-Events.

Der EntityChangeDetector publiziert, der AutomationDispatcher abonniert.
Die Instanz wird injiziert (kein globaler Subscriber), Handler laufen
synchron und duerfen nur einreihen, nicht verarbeiten.
"""

import logging
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from rh_automation.database import utcnow
from rh_automation.models.mail_automation import AutomationEntityType, AutomationTrigger

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EntityEvent:
    """Normalisiertes Lifecycle-Event einer Entitaet.

    Traegt nur Identifikatoren, nie die ORM-Instanz. ``snapshot`` enthaelt
    Spaltenwerte (ohne Relationen) und wird nur fuer ON_DELETE gebraucht.
    ``changed_fields`` ist ``None``, wenn unbekannt (manuelle Events).
    """

    entity_type: AutomationEntityType
    operation: AutomationTrigger
    entity_id: uuid.UUID
    company_id: uuid.UUID | None = None
    changed_fields: frozenset[str] | None = None
    snapshot: Mapping[str, Any] | None = None
    occurred_at: datetime = field(default_factory=utcnow)
    source: str = "orm"
    event_id: uuid.UUID = field(default_factory=uuid.uuid4)

    @property
    def entity_key(self) -> tuple[str, str]:
        """Serialisierungs-Schluessel: Events einer Entitaet bleiben in Reihenfolge."""
        return (self.entity_type.value, str(self.entity_id))

    @property
    def is_manual(self) -> bool:
        return self.source == "manual"

    def describe(self) -> str:
        return f"{self.entity_type.value}/{self.operation.value} {self.entity_id}"


EventHandler = Callable[[EntityEvent], Any]


class EventBus:
    """Verteilt Events synchron an alle Handler."""

    def __init__(self) -> None:
        self._handlers: list[EventHandler] = []

    def subscribe(self, handler: EventHandler) -> None:
        if handler not in self._handlers:
            self._handlers.append(handler)

    def unsubscribe(self, handler: EventHandler) -> None:
        try:
            self._handlers.remove(handler)
        except ValueError:
            pass

    @property
    def handler_count(self) -> int:
        return len(self._handlers)

    def publish(self, event: EntityEvent) -> int:
        """Event an alle Handler geben. Gibt Anzahl erfolgreicher Handler zurueck.

        Fehler eines Handlers werden geloggt und nie an den Aufrufer
        (Commit-Pfad) weitergereicht.
        """
        delivered = 0
        for handler in list(self._handlers):
            try:
                accepted = handler(event)
            except Exception:
                logger.exception(f"Event-Handler fehlgeschlagen fuer {event.describe()}")
                continue
            if accepted is not False:
                delivered += 1

        if not self._handlers:
            logger.debug(f"Keine Handler fuer {event.describe()}")
        return delivered
