"""FastAPI Hauptanwendung der Mail-Automatisierung."""

import logging
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from rh_automation.api import register_exception_handlers
from rh_automation.api.routes_automations import router as automations_router
from rh_automation.api.routes_mail import configurations_router, templates_router
from rh_automation.config import settings
from rh_automation.database import init_db
from rh_automation.services.automation_engine import AutomationEngine

# Logging konfigurieren
logging.basicConfig(
    level=logging.DEBUG if settings.is_development else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup und Shutdown Events."""
    logger.info("Starte Mail-Automatisierung...")
    try:
        await init_db()
    except Exception as e:
        logger.warning(f"init_db fehlgeschlagen (App laeuft trotzdem): {e}")

    automation_engine = AutomationEngine()
    await automation_engine.start()
    app.state.automation_engine = automation_engine

    yield

    await automation_engine.stop()
    app.state.automation_engine = None
    logger.info("Beende Mail-Automatisierung...")


# FastAPI App initialisieren
app = FastAPI(
    title="RH Analytics Pro - Mail-Automatisierung",
    description="Regelbasierter Mail-Versand bei Aenderungen an Kandidaten, Projekten, Analysen und Benutzern",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/docs" if settings.is_development else None,
    redoc_url="/redoc" if settings.is_development else None,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.is_development else [],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Request-ID Middleware
@app.middleware("http")
async def add_request_id(request: Request, call_next):
    """Fügt eine eindeutige Request-ID zu jedem Request hinzu."""
    request_id = str(uuid.uuid4())
    request.state.request_id = request_id

    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id

    return response


register_exception_handlers(app)

app.include_router(automations_router, prefix="/api")
app.include_router(configurations_router, prefix="/api")
app.include_router(templates_router, prefix="/api")


# Health-Check Endpoint
@app.get("/health", tags=["System"])
async def health_check(request: Request):
    """Prüft, ob die Anwendung und die Automation-Worker laufen."""
    automation_engine = getattr(request.app.state, "automation_engine", None)
    dispatcher = automation_engine.dispatcher if automation_engine else None
    return {
        "status": "healthy",
        "version": "1.0.0",
        "environment": settings.environment,
        "automation": {
            "enabled": settings.automation_enabled,
            "running": bool(dispatcher and dispatcher.running),
            "submitted": dispatcher.submitted if dispatcher else 0,
            "dropped": dispatcher.dropped if dispatcher else 0,
            "processed": dispatcher.processed if dispatcher else 0,
            "failed": dispatcher.failed if dispatcher else 0,
        },
    }
