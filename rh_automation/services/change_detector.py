"""Entity Change Detector - Erkennt Inserts/Updates/Deletes beim Commit.

Haengt sich an die Session-Klasse der App (``TrackedSession``):

- ``after_flush``: Aenderungen an getrackten Entitaeten als ``EntityEvent``
  in ``session.info`` sammeln (History ist hier noch verfuegbar)
- ``after_commit``: gesammelte Events auf den Bus publizieren
- ``after_transaction_end``: Reste verwerfen (Rollback, Close ohne Commit)

Entscheidet nicht, was passiert - das macht der TriggerOrchestrator.

Einschraenkung: ``update()``/``delete()``-Statements und Raw-SQL laufen an
den ORM-Hooks vorbei und erzeugen keine Events. Solche Bulk-Pfade melden
sich ueber ``AutomationEngine.notify_entity_event``.
"""

import logging
import uuid
from collections.abc import Callable
from typing import Any

from sqlalchemy import event, inspect
from sqlalchemy.orm import Session

from rh_automation.database import TrackedSession
from rh_automation.models import (
    TRACKED_MODELS,
    AutomationTrigger,
    MailAutomation,
    MailConfiguration,
    MailConfigurationCompany,
    MailTemplate,
)
from rh_automation.services.event_bus import EntityEvent, EventBus

logger = logging.getLogger(__name__)

# Aenderungen an diesen Models leeren Registry- und Gateway-Cache
CONFIG_MODELS = (MailAutomation, MailConfiguration, MailConfigurationCompany, MailTemplate)

# Technische Spalten zaehlen nicht als Aenderung
IGNORED_FIELDS = frozenset({"created_at", "updated_at"})

_PENDING_KEY = "rh_automation.pending_events"
_INVALIDATE_KEY = "rh_automation.invalidate_caches"


def column_snapshot(obj: Any) -> dict[str, Any]:
    """Spaltenwerte ohne DB-Zugriff (nur was im Instanz-Dict steht)."""
    state = inspect(obj)
    return {
        attr.key: state.dict[attr.key]
        for attr in state.mapper.column_attrs
        if attr.key in state.dict
    }


def changed_columns(obj: Any) -> frozenset[str]:
    """Spalten mit echter Wertaenderung seit dem letzten Laden."""
    state = inspect(obj)
    changed = set()
    for attr in state.mapper.column_attrs:
        if attr.key in IGNORED_FIELDS:
            continue
        if state.attrs[attr.key].history.has_changes():
            changed.add(attr.key)
    return frozenset(changed)


class EntityChangeDetector:
    """Uebersetzt ORM-Commits in ``EntityEvent``s auf dem EventBus."""

    def __init__(
        self,
        bus: EventBus,
        tracked_models: tuple[type, ...] = TRACKED_MODELS,
        config_models: tuple[type, ...] = CONFIG_MODELS,
    ):
        self.bus = bus
        self.tracked_models = tracked_models
        self.config_models = config_models
        self._invalidators: list[Callable[[], None]] = []
        self._session_class: type[Session] | None = None

    # ==================== Setup ====================

    def add_invalidator(self, callback: Callable[[], None]) -> None:
        """Callback, der nach Commits auf Konfigurations-Tabellen laeuft."""
        self._invalidators.append(callback)

    @property
    def installed(self) -> bool:
        return self._session_class is not None

    def install(self, session_class: type[Session] = TrackedSession) -> None:
        if self._session_class is not None:
            return
        event.listen(session_class, "after_flush", self._after_flush)
        event.listen(session_class, "after_commit", self._after_commit)
        event.listen(session_class, "after_transaction_end", self._after_transaction_end)
        self._session_class = session_class
        logger.info(f"EntityChangeDetector aktiv auf {session_class.__name__}")

    def uninstall(self) -> None:
        if self._session_class is None:
            return
        event.remove(self._session_class, "after_flush", self._after_flush)
        event.remove(self._session_class, "after_commit", self._after_commit)
        event.remove(self._session_class, "after_transaction_end", self._after_transaction_end)
        logger.info(f"EntityChangeDetector entfernt von {self._session_class.__name__}")
        self._session_class = None

    # ==================== Event-Erzeugung ====================

    def _is_tracked(self, obj: Any) -> bool:
        return isinstance(obj, self.tracked_models)

    def _build_event(
        self,
        obj: Any,
        operation: AutomationTrigger,
        changed_fields: frozenset[str] | None = None,
    ) -> EntityEvent | None:
        snapshot = column_snapshot(obj)
        entity_id = snapshot.get("id")
        if entity_id is None:
            logger.warning(f"{type(obj).__name__} ohne ID, kein Event fuer {operation.value}")
            return None
        if not isinstance(entity_id, uuid.UUID):
            entity_id = uuid.UUID(str(entity_id))
        return EntityEvent(
            entity_type=obj.automation_entity_type,
            operation=operation,
            entity_id=entity_id,
            company_id=snapshot.get("company_id"),
            changed_fields=changed_fields,
            snapshot=snapshot if operation == AutomationTrigger.ON_DELETE else None,
        )

    def collect(self, session: Session) -> list[EntityEvent]:
        """Events fuer den anstehenden Flush (Session ist noch im Pre-Flush-Zustand)."""
        events: list[EntityEvent] = []

        for obj in session.new:
            if self._is_tracked(obj):
                ev = self._build_event(obj, AutomationTrigger.ON_CREATE)
                if ev:
                    events.append(ev)

        for obj in session.dirty:
            if not self._is_tracked(obj) or obj in session.deleted:
                continue
            changed = changed_columns(obj)
            if not changed:
                # Schreibzugriff ohne Wertaenderung
                continue
            ev = self._build_event(obj, AutomationTrigger.ON_UPDATE, changed)
            if ev:
                events.append(ev)

        for obj in session.deleted:
            if self._is_tracked(obj):
                ev = self._build_event(obj, AutomationTrigger.ON_DELETE)
                if ev:
                    events.append(ev)

        return events

    def _touches_config(self, session: Session) -> bool:
        return any(
            isinstance(obj, self.config_models)
            for obj in (*session.new, *session.dirty, *session.deleted)
        )

    # ==================== Session-Hooks ====================

    def _after_flush(self, session: Session, flush_context: Any) -> None:
        try:
            events = self.collect(session)
            if events:
                session.info.setdefault(_PENDING_KEY, []).extend(events)
            if self._touches_config(session):
                session.info[_INVALIDATE_KEY] = True
        except Exception:
            # Der Schreibpfad darf nie an der Automatisierung scheitern
            logger.exception("EntityChangeDetector: Fehler beim Sammeln der Events")

    def _after_commit(self, session: Session) -> None:
        if session.in_nested_transaction():
            # Savepoint-Release, die aeussere Transaktion ist noch offen
            return

        events: list[EntityEvent] = session.info.pop(_PENDING_KEY, [])
        invalidate = session.info.pop(_INVALIDATE_KEY, False)

        if invalidate:
            for callback in self._invalidators:
                try:
                    callback()
                except Exception:
                    logger.exception("Cache-Invalidierung fehlgeschlagen")

        for ev in events:
            self.bus.publish(ev)

        if events:
            logger.debug(f"{len(events)} Entity-Event(s) nach Commit publiziert")

    def _after_transaction_end(self, session: Session, transaction: Any) -> None:
        if transaction.parent is not None:
            return
        dropped = session.info.pop(_PENDING_KEY, None)
        session.info.pop(_INVALIDATE_KEY, None)
        if dropped:
            logger.debug(f"{len(dropped)} Entity-Event(s) verworfen (kein Commit)")
