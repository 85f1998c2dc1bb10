"""Datenbank-Konfiguration und Session-Management."""

import logging
from collections.abc import AsyncGenerator
from datetime import datetime, timezone

from sqlalchemy import JSON, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Session

from rh_automation.config import settings

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """Basis-Klasse für alle SQLAlchemy Models."""

    pass


class TrackedSession(Session):
    """Sync-Session-Klasse hinter jeder AsyncSession.

    Der EntityChangeDetector registriert seine Commit-Hooks auf dieser Klasse,
    nicht global auf ``Session``. Sessions anderer Factories bleiben unberuehrt.
    """

    pass


# Async Engine erstellen
engine = create_async_engine(
    settings.database_url,
    echo=settings.is_development,
    pool_pre_ping=True,
    pool_size=5,
    max_overflow=10,
    pool_recycle=300,       # Connections nach 5 Min recyceln
    pool_timeout=30,        # Max 30s auf freie Connection warten
    connect_args={
        "server_settings": {
            "statement_timeout": "15000",     # 15s max pro Statement
            "lock_timeout": "5000",           # 5s max auf Lock warten
            "idle_in_transaction_session_timeout": "30000",  # 30s max idle in TX
        }
    },
)

# Session Factory
async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    sync_session_class=TrackedSession,
    expire_on_commit=False,
    autoflush=False,
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency für FastAPI-Endpoints.

    Liefert eine Datenbank-Session und räumt nach dem Request auf.
    """
    async with async_session_maker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


async def init_db() -> None:
    """Prueft die Datenbankverbindung und legt fehlende Tabellen an.

    Schema-Aenderungen laufen ueber Alembic; ``create_all`` ist nur der
    Fallback fuer frische Umgebungen.
    """
    # Models importieren, damit sie in Base.metadata registriert sind
    import rh_automation.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.execute(text("SELECT 1"))
        await conn.run_sync(Base.metadata.create_all)

    logger.info("init_db: Verbindung ok, Tabellen geprueft.")


def utcnow() -> datetime:
    """Aktueller Zeitpunkt in UTC (Python-seitiger Default fuer Timestamps)."""
    return datetime.now(timezone.utc)


# JSONB auf PostgreSQL, generisches JSON sonst (SQLite in Tests)
JSONVariant = JSON().with_variant(JSONB(), "postgresql")
