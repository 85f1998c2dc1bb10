"""DeliveryRecord Service - Protokolliert Automation-Versaende.

Jede Methode nutzt eine eigene kurze Session, damit der Status auch dann
geschrieben wird, wenn ein anderer Schritt derselben Verarbeitung scheitert.
"""

import logging
import uuid
from dataclasses import dataclass

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from rh_automation.database import utcnow
from rh_automation.models import DeliveryRecord, DeliveryStatus, MailAutomation

logger = logging.getLogger(__name__)


def make_dedupe_key(automation_id, entity_type, entity_id, operation, occurred_at) -> str:
    """Automation + Entitaet + Operation + Event-Zeitpunkt."""
    return (
        f"{automation_id}:{getattr(entity_type, 'value', entity_type)}:{entity_id}:"
        f"{getattr(operation, 'value', operation)}:{occurred_at.isoformat()}"
    )


@dataclass(frozen=True)
class DeliveryClaim:
    """Ergebnis von ``claim``: neu angelegt oder bereits vorhanden."""

    record_id: uuid.UUID
    status: DeliveryStatus
    created: bool


class DeliveryRecordService:
    """Schreibt und liest DeliveryRecords."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def claim(
        self,
        dedupe_key: str,
        automation_id: uuid.UUID,
        entity_type: str,
        entity_id: uuid.UUID,
        operation: str,
        recipients: list[str],
        subject: str | None,
        status: DeliveryStatus = DeliveryStatus.DISPATCHED,
        error: str | None = None,
    ) -> DeliveryClaim:
        """Legt den Record an. Existiert der Dedupe-Key schon, wird der alte zurueckgegeben."""
        async with self.session_factory() as session:
            existing = await self._find_by_key(session, dedupe_key)
            if existing is not None:
                return DeliveryClaim(existing.id, DeliveryStatus(existing.status), created=False)

            record = DeliveryRecord(
                automation_id=automation_id,
                entity_type=entity_type,
                entity_id=entity_id,
                operation=operation,
                dedupe_key=dedupe_key,
                status=status.value,
                error=error,
                recipients=list(recipients),
                subject=subject[:500] if subject else None,
            )
            session.add(record)
            try:
                await session.commit()
            except IntegrityError:
                # Paralleler Worker war schneller
                await session.rollback()
                existing = await self._find_by_key(session, dedupe_key)
                if existing is None:
                    raise
                return DeliveryClaim(existing.id, DeliveryStatus(existing.status), created=False)

            return DeliveryClaim(record.id, status, created=True)

    async def _find_by_key(self, session: AsyncSession, dedupe_key: str) -> DeliveryRecord | None:
        result = await session.execute(
            select(DeliveryRecord).where(DeliveryRecord.dedupe_key == dedupe_key)
        )
        return result.scalar_one_or_none()

    async def record_attempt(self, record_id: uuid.UUID, attempt: int, error: str | None) -> None:
        """Zwischenstand nach einem Versuch (gleicher Record, kein neuer)."""
        async with self.session_factory() as session:
            await session.execute(
                update(DeliveryRecord)
                .where(DeliveryRecord.id == record_id)
                .values(attempts=attempt, error=error, updated_at=utcnow())
            )
            await session.commit()

    async def finish(
        self,
        record_id: uuid.UUID,
        status: DeliveryStatus,
        attempts: int,
        provider_type: str | None = None,
        message_id: str | None = None,
        error: str | None = None,
    ) -> None:
        async with self.session_factory() as session:
            await session.execute(
                update(DeliveryRecord)
                .where(DeliveryRecord.id == record_id)
                .values(
                    status=status.value,
                    attempts=attempts,
                    provider_type=provider_type,
                    message_id=message_id,
                    error=error,
                    updated_at=utcnow(),
                )
            )
            await session.commit()

    async def update_automation_stats(self, automation_id: uuid.UUID, success: bool) -> None:
        """Zaehler der Automation hochzaehlen (atomar in SQL)."""
        values = {
            "sent_count": MailAutomation.sent_count + 1,
            "last_triggered_at": utcnow(),
        }
        if success:
            values["success_count"] = MailAutomation.success_count + 1
        else:
            values["failed_count"] = MailAutomation.failed_count + 1

        async with self.session_factory() as session:
            await session.execute(
                update(MailAutomation).where(MailAutomation.id == automation_id).values(**values)
            )
            await session.commit()

    # ==================== Lesen (Admin-API) ====================

    @staticmethod
    async def list_for_automation(
        db: AsyncSession,
        automation_id: uuid.UUID,
        limit: int,
        offset: int = 0,
    ) -> tuple[list[DeliveryRecord], int]:
        total = await db.scalar(
            select(func.count()).select_from(DeliveryRecord).where(DeliveryRecord.automation_id == automation_id)
        )
        result = await db.execute(
            select(DeliveryRecord)
            .where(DeliveryRecord.automation_id == automation_id)
            .order_by(DeliveryRecord.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all()), total or 0
