"""Automation Routes - Admin-API fuer Mail-Automationen."""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from rh_automation.api.exception_handlers import AutomationUnavailableException, NotFoundException
from rh_automation.config import Limits
from rh_automation.database import get_db
from rh_automation.models import AutomationEntityType, AutomationTrigger, MailAutomation
from rh_automation.schemas.automation import (
    AutomationCreate,
    AutomationResponse,
    AutomationStatsResponse,
    AutomationUpdate,
    DeliveryRecordResponse,
    EntityEventRequest,
    EntityEventResponse,
)
from rh_automation.schemas.errors import ErrorCode
from rh_automation.schemas.pagination import PaginatedResponse
from rh_automation.services.automation_engine import AutomationEngine
from rh_automation.services.automation_service import AutomationService
from rh_automation.services.delivery_service import DeliveryRecordService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/automations", tags=["Automations"])


def get_automation_engine(request: Request) -> AutomationEngine:
    """Laufende Engine aus dem App-State."""
    engine = getattr(request.app.state, "automation_engine", None)
    if engine is None:
        raise AutomationUnavailableException()
    return engine


def _not_found(automation_id: UUID) -> NotFoundException:
    return NotFoundException(
        message=f"Automation {automation_id} nicht gefunden",
        error_code=ErrorCode.AUTOMATION_NOT_FOUND,
    )


def _automation_to_response(automation: MailAutomation) -> AutomationResponse:
    return AutomationResponse.model_validate(automation)


@router.get("", response_model=PaginatedResponse[AutomationResponse])
async def list_automations(
    entity_type: AutomationEntityType | None = Query(None),
    trigger_event: AutomationTrigger | None = Query(None),
    is_active: bool | None = Query(None),
    company_id: UUID | None = Query(None),
    page: int = Query(1, ge=1),
    per_page: int = Query(Limits.PAGE_SIZE_DEFAULT, ge=1, le=Limits.PAGE_SIZE_MAX),
    db: AsyncSession = Depends(get_db),
):
    """Listet Automationen mit Filtern."""
    items, total = await AutomationService(db).list_automations(
        entity_type=entity_type.value if entity_type else None,
        trigger_event=trigger_event.value if trigger_event else None,
        is_active=is_active,
        company_id=company_id,
        page=page,
        per_page=per_page,
    )
    return PaginatedResponse.create(
        items=[_automation_to_response(a) for a in items],
        total=total,
        page=page,
        per_page=per_page,
    )


@router.post("", response_model=AutomationResponse, status_code=status.HTTP_201_CREATED)
async def create_automation(data: AutomationCreate, db: AsyncSession = Depends(get_db)):
    """Erstellt eine Automation."""
    automation = await AutomationService(db).create_automation(data)
    return _automation_to_response(automation)


@router.get("/stats", response_model=AutomationStatsResponse)
async def get_automation_stats(
    company_id: UUID | None = Query(None),
    db: AsyncSession = Depends(get_db),
):
    """Versand-Kennzahlen (optional nur einer Firma)."""
    return AutomationStatsResponse(**await AutomationService(db).get_stats(company_id))


@router.post("/events", response_model=EntityEventResponse, status_code=status.HTTP_202_ACCEPTED)
async def notify_entity_events(
    data: EntityEventRequest,
    engine: AutomationEngine = Depends(get_automation_engine),
):
    """Meldet Events fuer Bulk-Schreibvorgaenge, die an den ORM-Hooks vorbeilaufen."""
    accepted = 0
    for entity_id in data.entity_ids:
        if engine.notify_entity_event(data.entity_type, data.operation, entity_id, data.company_id):
            accepted += 1
    dropped = len(data.entity_ids) - accepted
    if dropped:
        logger.warning(f"Bulk-Events: {dropped} von {len(data.entity_ids)} verworfen")
    return EntityEventResponse(accepted=accepted, dropped=dropped)


@router.get("/{automation_id}", response_model=AutomationResponse)
async def get_automation(automation_id: UUID, db: AsyncSession = Depends(get_db)):
    automation = await AutomationService(db).get_automation(automation_id)
    if not automation:
        raise _not_found(automation_id)
    return _automation_to_response(automation)


@router.put("/{automation_id}", response_model=AutomationResponse)
async def update_automation(
    automation_id: UUID,
    data: AutomationUpdate,
    db: AsyncSession = Depends(get_db),
):
    """Aktualisiert eine Automation."""
    automation = await AutomationService(db).update_automation(automation_id, data)
    if not automation:
        raise _not_found(automation_id)
    return _automation_to_response(automation)


@router.put("/{automation_id}/toggle", response_model=AutomationResponse)
async def toggle_automation(automation_id: UUID, db: AsyncSession = Depends(get_db)):
    """Aktiviert bzw. deaktiviert eine Automation."""
    automation = await AutomationService(db).toggle_automation(automation_id)
    if not automation:
        raise _not_found(automation_id)
    return _automation_to_response(automation)


@router.delete("/{automation_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_automation(automation_id: UUID, db: AsyncSession = Depends(get_db)):
    if not await AutomationService(db).delete_automation(automation_id):
        raise _not_found(automation_id)


@router.get("/{automation_id}/deliveries", response_model=PaginatedResponse[DeliveryRecordResponse])
async def list_deliveries(
    automation_id: UUID,
    page: int = Query(1, ge=1),
    per_page: int = Query(Limits.PAGE_SIZE_DEFAULT, ge=1, le=Limits.PAGE_SIZE_MAX),
    db: AsyncSession = Depends(get_db),
):
    """Versand-Protokoll einer Automation (neueste zuerst)."""
    if not await AutomationService(db).get_automation(automation_id):
        raise _not_found(automation_id)
    records, total = await DeliveryRecordService.list_for_automation(
        db, automation_id, limit=per_page, offset=(page - 1) * per_page
    )
    return PaginatedResponse.create(
        items=[DeliveryRecordResponse.model_validate(r) for r in records],
        total=total,
        page=page,
        per_page=per_page,
    )
