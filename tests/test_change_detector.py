"""Tests für den EntityChangeDetector (Commit-Hooks → EventBus)."""

import pytest

from rh_automation.database import TrackedSession
from rh_automation.models import AutomationEntityType, AutomationTrigger
from rh_automation.services.change_detector import EntityChangeDetector
from rh_automation.services.event_bus import EventBus
from tests.conftest import AutomationFactory, CandidateFactory, CompanyFactory, ProjectFactory


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def events(bus) -> list:
    received = []
    bus.subscribe(received.append)
    return received


@pytest.fixture
def detector(bus):
    detector = EntityChangeDetector(bus)
    detector.install(TrackedSession)
    yield detector
    detector.uninstall()


@pytest.fixture
async def project(session_factory):
    company = CompanyFactory.create()
    project = ProjectFactory.create(company)
    async with session_factory() as session:
        session.add_all([company, project])
        await session.commit()
    return project


class TestEntityChangeDetector:
    """Tests für die Event-Erzeugung beim Commit."""

    @pytest.mark.asyncio
    async def test_insert_publishes_after_commit(self, session_factory, detector, events, project):
        events.clear()
        candidate = CandidateFactory.create(project)
        async with session_factory() as session:
            session.add(candidate)
            await session.flush()
            assert events == []
            await session.commit()

        assert len(events) == 1
        event = events[0]
        assert event.entity_type == AutomationEntityType.CANDIDATE
        assert event.operation == AutomationTrigger.ON_CREATE
        assert event.entity_id == candidate.id
        assert event.snapshot is None

    @pytest.mark.asyncio
    async def test_project_event_carries_company(self, session_factory, detector, events):
        company = CompanyFactory.create()
        project = ProjectFactory.create(company)
        async with session_factory() as session:
            session.add_all([company, project])
            await session.commit()

        project_events = [e for e in events if e.entity_type == AutomationEntityType.PROJECT]
        assert len(project_events) == 1
        assert project_events[0].company_id == company.id

    @pytest.mark.asyncio
    async def test_rollback_discards_events(self, session_factory, detector, events, project):
        events.clear()
        async with session_factory() as session:
            session.add(CandidateFactory.create(project))
            await session.flush()
            await session.rollback()

        assert events == []

    @pytest.mark.asyncio
    async def test_close_without_commit_discards_events(self, session_factory, detector, events, project):
        events.clear()
        async with session_factory() as session:
            session.add(CandidateFactory.create(project))
            await session.flush()

        assert events == []

    @pytest.mark.asyncio
    async def test_update_reports_changed_fields(self, session_factory, detector, events, project):
        candidate = CandidateFactory.create(project, status="pending")
        async with session_factory() as session:
            session.add(candidate)
            await session.commit()
            events.clear()

            candidate.status = "analyzed"
            candidate.score = 75.0
            await session.commit()

        assert len(events) == 1
        assert events[0].operation == AutomationTrigger.ON_UPDATE
        assert events[0].changed_fields == frozenset({"status", "score"})

    @pytest.mark.asyncio
    async def test_no_op_update_emits_nothing(self, session_factory, detector, events, project):
        candidate = CandidateFactory.create(project, status="analyzed")
        async with session_factory() as session:
            session.add(candidate)
            await session.commit()
            events.clear()

            candidate.status = "analyzed"
            await session.commit()

        assert events == []

    @pytest.mark.asyncio
    async def test_delete_carries_snapshot(self, session_factory, detector, events, project):
        candidate = CandidateFactory.create(project, name="Jean Dupont")
        async with session_factory() as session:
            session.add(candidate)
            await session.commit()
            events.clear()

            await session.delete(candidate)
            await session.commit()

        assert len(events) == 1
        event = events[0]
        assert event.operation == AutomationTrigger.ON_DELETE
        assert event.snapshot["name"] == "Jean Dupont"
        assert event.snapshot["project_id"] == project.id

    @pytest.mark.asyncio
    async def test_config_changes_invalidate_caches(self, session_factory, detector, events):
        calls = []
        detector.add_invalidator(lambda: calls.append(True))

        async with session_factory() as session:
            session.add(AutomationFactory.create())
            await session.commit()

        assert calls == [True]
        assert events == []

    @pytest.mark.asyncio
    async def test_handler_errors_do_not_break_commit(self, session_factory, bus, detector, events, project):
        def broken(event):
            raise RuntimeError("boom")

        bus.subscribe(broken)
        events.clear()
        async with session_factory() as session:
            session.add(CandidateFactory.create(project))
            await session.commit()

        assert len(events) == 1

    @pytest.mark.asyncio
    async def test_uninstall_stops_events(self, session_factory, detector, events, project):
        detector.uninstall()
        events.clear()
        async with session_factory() as session:
            session.add(CandidateFactory.create(project))
            await session.commit()

        assert events == []
