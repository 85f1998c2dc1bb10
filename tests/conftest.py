"""Test-Konfiguration und Fixtures für die Mail-Automatisierung."""

import uuid
from typing import AsyncGenerator

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

import rh_automation.models  # noqa: F401
from rh_automation.database import Base, TrackedSession, get_db
from rh_automation.main import app
from rh_automation.models import (
    Analysis,
    AutomationEntityType,
    AutomationTrigger,
    Candidate,
    Company,
    MailAutomation,
    MailConfiguration,
    MailProviderType,
    Project,
    User,
)
from rh_automation.services.automation_engine import AutomationEngine
from rh_automation.services.mail_gateway import MailGateway
from rh_automation.services.mail_providers import (
    MailProviderAdapter,
    OutgoingMessage,
    ResolvedMailConfiguration,
)


@pytest.fixture
def anyio_backend():
    """Async Backend für Tests."""
    return "asyncio"


# ==================== DATENBANK ====================


@pytest.fixture
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """SQLite-Datei pro Test (Worker nutzen eigene Sessions parallel)."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'automation.db'}",
        poolclass=NullPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(
        engine,
        class_=AsyncSession,
        sync_session_class=TrackedSession,
        expire_on_commit=False,
        autoflush=False,
    )

    await engine.dispose()


@pytest.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


# ==================== FAKE-PROVIDER ====================


class FakeAdapter(MailProviderAdapter):
    """Zeichnet Versandversuche auf; ``failures`` werden der Reihe nach geworfen."""

    provider_type = MailProviderType.SMTP

    def __init__(self, failures=None):
        self.failures = list(failures or [])
        self.attempts: list[tuple[ResolvedMailConfiguration, OutgoingMessage]] = []
        self.sent: list[tuple[ResolvedMailConfiguration, OutgoingMessage]] = []

    async def send(self, config: ResolvedMailConfiguration, message: OutgoingMessage) -> str:
        self.attempts.append((config, message))
        if self.failures:
            raise self.failures.pop(0)
        self.sent.append((config, message))
        return message.message_id


class RecordingSleep:
    """Ersatz fuer ``asyncio.sleep``: merkt sich die Wartezeiten."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def fake_adapter() -> FakeAdapter:
    return FakeAdapter()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def gateway(session_factory, fake_adapter, recording_sleep) -> MailGateway:
    return MailGateway(
        session_factory,
        adapters={MailProviderType.SMTP: fake_adapter},
        backoff_base=1.0,
        backoff_max=30.0,
        cache_ttl=0,
        sleep=recording_sleep,
    )


@pytest.fixture
async def automation_engine(session_factory, gateway) -> AsyncGenerator[AutomationEngine, None]:
    """Laufende Engine auf der Test-DB (Detector ist auf TrackedSession aktiv)."""
    engine = AutomationEngine(
        session_factory=session_factory,
        gateway=gateway,
        workers=2,
        queue_size=100,
    )
    await engine.start()
    yield engine
    await engine.stop()


@pytest.fixture
async def client(db_session: AsyncSession) -> AsyncGenerator[AsyncClient, None]:
    """Async Test-Client mit überschriebener DB-Dependency."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session
        await db_session.commit()

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
    app.state.automation_engine = None


# ==================== FACTORIES ====================


class CompanyFactory:
    """Factory für Company-Testdaten."""

    @staticmethod
    def create(name: str = "Acme SAS", locale: str | None = "fr_FR") -> Company:
        return Company(id=uuid.uuid4(), name=name, locale=locale)


class UserFactory:
    """Factory für User-Testdaten."""

    @staticmethod
    def create(
        company: Company | None = None,
        email: str | None = None,
        first_name: str = "Claire",
        last_name: str = "Martin",
        role: str = "hr",
    ) -> User:
        return User(
            id=uuid.uuid4(),
            email=email or f"user-{uuid.uuid4().hex[:8]}@acme.fr",
            first_name=first_name,
            last_name=last_name,
            role=role,
            company_id=company.id if company else None,
        )


class ProjectFactory:
    """Factory für Project-Testdaten."""

    @staticmethod
    def create(
        company: Company,
        creator: User | None = None,
        name: str = "Comptable senior",
        status: str = "active",
    ) -> Project:
        return Project(
            id=uuid.uuid4(),
            name=name,
            status=status,
            company_id=company.id,
            created_by=creator.id if creator else None,
        )


class CandidateFactory:
    """Factory für Candidate-Testdaten."""

    @staticmethod
    def create(
        project: Project,
        name: str = "Jean Dupont",
        email: str | None = "jean@x.com",
        score: float = 0.0,
        status: str = "pending",
    ) -> Candidate:
        return Candidate(
            id=uuid.uuid4(),
            name=name,
            email=email,
            score=score,
            status=status,
            project_id=project.id,
        )


class AnalysisFactory:
    """Factory für Analysis-Testdaten."""

    @staticmethod
    def create(candidate: Candidate, status: str = "pending", score: float | None = None) -> Analysis:
        return Analysis(
            id=uuid.uuid4(),
            status=status,
            score=score,
            candidate_id=candidate.id,
            project_id=candidate.project_id,
        )


class AutomationFactory:
    """Factory für MailAutomation-Testdaten."""

    @staticmethod
    def create(
        entity_type: AutomationEntityType = AutomationEntityType.CANDIDATE,
        trigger_event: AutomationTrigger = AutomationTrigger.ON_CREATE,
        title: str = "Neuer Kandidat",
        is_active: bool = True,
        company: Company | None = None,
        recipients: list[str] | None = None,
        conditions: list[dict] | None = None,
        subject: str = "Nouveau candidat : {{name}}",
        html_content: str = "<p>{{name}} a postulé pour {{project_name}}.</p>",
        text_content: str | None = None,
        template_variables: dict | None = None,
    ) -> MailAutomation:
        return MailAutomation(
            id=uuid.uuid4(),
            title=title,
            entity_type=entity_type.value,
            trigger_event=trigger_event.value,
            is_active=is_active,
            company_id=company.id if company else None,
            recipients=recipients if recipients is not None else ["ops@x.com"],
            mail_template={
                "subject": subject,
                "html_content": html_content,
                "text_content": text_content,
            },
            conditions=conditions or [],
            template_variables=template_variables or {},
        )


class MailConfigurationFactory:
    """Factory für MailConfiguration-Testdaten."""

    @staticmethod
    def create(
        provider_type: MailProviderType = MailProviderType.SMTP,
        company: Company | None = None,
        is_default: bool = False,
        is_active: bool = True,
        from_email: str = "noreply@acme.fr",
        smtp_host: str | None = "smtp.acme.fr",
    ) -> MailConfiguration:
        return MailConfiguration(
            id=uuid.uuid4(),
            provider_type=provider_type.value,
            company_id=company.id if company else None,
            smtp_host=smtp_host,
            smtp_port=465,
            smtp_user="mailer",
            smtp_password="secret",
            from_email=from_email,
            from_name="Acme RH",
            is_active=is_active,
            is_default=is_default,
        )
