"""Mail Routes - Admin-API fuer Mail-Konfigurationen und Vorlagen."""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from rh_automation.api.exception_handlers import NotFoundException
from rh_automation.api.routes_automations import get_automation_engine
from rh_automation.database import get_db
from rh_automation.models import MailConfiguration, MailTemplateStatus, MailTemplateType
from rh_automation.schemas.errors import ErrorCode
from rh_automation.schemas.mail import (
    CompanyAssignment,
    ConfigurationToggle,
    MailConfigurationCreate,
    MailConfigurationResponse,
    MailConfigurationUpdate,
    MailTemplateCreate,
    MailTemplateResponse,
    MailTemplateUpdate,
    MailTestRequest,
    MailTestResponse,
    TemplatePreviewRequest,
    TemplatePreviewResponse,
)
from rh_automation.services.automation_engine import AutomationEngine
from rh_automation.services.mail_configuration_service import MailConfigurationService
from rh_automation.services.mail_template_service import MailTemplateService

logger = logging.getLogger(__name__)

configurations_router = APIRouter(prefix="/mail-configurations", tags=["Mail Configurations"])
templates_router = APIRouter(prefix="/mail-templates", tags=["Mail Templates"])


def _configuration_to_response(config: MailConfiguration) -> MailConfigurationResponse:
    """Antwort ohne Passwort und API-Key."""
    return MailConfigurationResponse(
        id=config.id,
        provider_type=config.provider_type,
        smtp_host=config.smtp_host,
        smtp_port=config.smtp_port,
        smtp_user=config.smtp_user,
        smtp_secure=config.smtp_secure,
        smtp_require_tls=config.smtp_require_tls,
        has_smtp_password=bool(config.smtp_password),
        has_api_key=bool(config.api_key),
        from_email=config.from_email,
        from_name=config.from_name,
        is_active=config.is_active,
        is_default=config.is_default,
        company_id=config.company_id,
        company_ids=config.company_ids,
        created_at=config.created_at,
        updated_at=config.updated_at,
    )


# ── Mail-Konfigurationen ─────────────────────────────


@configurations_router.get("", response_model=list[MailConfigurationResponse])
async def list_configurations(db: AsyncSession = Depends(get_db)):
    configs = await MailConfigurationService(db).list_configurations()
    return [_configuration_to_response(c) for c in configs]


@configurations_router.post(
    "",
    response_model=MailConfigurationResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_configuration(data: MailConfigurationCreate, db: AsyncSession = Depends(get_db)):
    """Legt eine Mail-Konfiguration an (neuer Default loest den alten ab)."""
    config = await MailConfigurationService(db).create_configuration(data)
    return _configuration_to_response(config)


@configurations_router.post("/test", response_model=MailTestResponse)
async def send_configuration_test(
    data: MailTestRequest,
    db: AsyncSession = Depends(get_db),
    engine: AutomationEngine = Depends(get_automation_engine),
):
    """Schickt eine Test-Mail ueber die Konfiguration, die fuer die Firma greift."""
    result = await MailConfigurationService(db).send_test_mail(engine.gateway, data.email, data.company_id)
    return MailTestResponse(
        success=True,
        message=f"Test-Mail an {data.email} versendet",
        provider_type=result.provider_type,
        message_id=result.message_id,
        attempts=result.attempts,
    )


@configurations_router.put("/{config_id}", response_model=MailConfigurationResponse)
async def update_configuration(
    config_id: UUID,
    data: MailConfigurationUpdate,
    db: AsyncSession = Depends(get_db),
):
    config = await MailConfigurationService(db).update_configuration(config_id, data)
    if not config:
        raise _configuration_not_found()
    return _configuration_to_response(config)


@configurations_router.put("/{config_id}/companies", response_model=MailConfigurationResponse)
async def assign_companies(
    config_id: UUID,
    data: CompanyAssignment,
    db: AsyncSession = Depends(get_db),
):
    """Ersetzt die Firmen-Zuordnung einer Konfiguration."""
    config = await MailConfigurationService(db).assign_companies(config_id, data.company_ids)
    return _configuration_to_response(config)


@configurations_router.put("/{config_id}/toggle", response_model=MailConfigurationResponse)
async def toggle_configuration(
    config_id: UUID,
    data: ConfigurationToggle,
    db: AsyncSession = Depends(get_db),
):
    config = await MailConfigurationService(db).toggle_configuration(config_id, data.is_active)
    if not config:
        raise _configuration_not_found()
    return _configuration_to_response(config)


@configurations_router.delete("/{config_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_configuration(config_id: UUID, db: AsyncSession = Depends(get_db)):
    if not await MailConfigurationService(db).delete_configuration(config_id):
        raise _configuration_not_found()


# ── Vorlagen ─────────────────────────────────────────


@templates_router.get("", response_model=list[MailTemplateResponse])
async def list_templates(
    type: MailTemplateType | None = Query(None),
    template_status: MailTemplateStatus | None = Query(None, alias="status"),
    company_id: UUID | None = Query(None),
    db: AsyncSession = Depends(get_db),
):
    templates = await MailTemplateService(db).list_templates(
        template_type=type.value if type else None,
        status=template_status.value if template_status else None,
        company_id=company_id,
    )
    return [MailTemplateResponse.model_validate(t) for t in templates]


@templates_router.post("", response_model=MailTemplateResponse, status_code=status.HTTP_201_CREATED)
async def create_template(data: MailTemplateCreate, db: AsyncSession = Depends(get_db)):
    template = await MailTemplateService(db).create_template(data)
    return MailTemplateResponse.model_validate(template)


@templates_router.put("/{template_id}", response_model=MailTemplateResponse)
async def update_template(
    template_id: UUID,
    data: MailTemplateUpdate,
    db: AsyncSession = Depends(get_db),
):
    """Aktualisiert eine Vorlage; Inhaltsaenderungen erhoehen die Version."""
    template = await MailTemplateService(db).update_template(template_id, data)
    if not template:
        raise _template_not_found()
    return MailTemplateResponse.model_validate(template)


@templates_router.delete("/{template_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_template(template_id: UUID, db: AsyncSession = Depends(get_db)):
    """Loescht eine Vorlage (409, solange Automationen sie verwenden)."""
    if not await MailTemplateService(db).delete_template(template_id):
        raise _template_not_found()


@templates_router.post("/{template_id}/preview", response_model=TemplatePreviewResponse)
async def preview_template(
    template_id: UUID,
    data: TemplatePreviewRequest,
    db: AsyncSession = Depends(get_db),
):
    """Rendert eine Vorlage mit Beispielwerten, ohne zu versenden."""
    preview = await MailTemplateService(db).preview_template(template_id, data.variables)
    if preview is None:
        raise _template_not_found()
    return TemplatePreviewResponse(**preview)
