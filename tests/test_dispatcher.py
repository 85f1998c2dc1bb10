"""Tests für den AutomationDispatcher (Worker-Pool, Sharding, Backpressure)."""

import asyncio
import uuid

import pytest

from rh_automation.models import AutomationEntityType, AutomationTrigger
from rh_automation.services.automation_dispatcher import AutomationDispatcher
from rh_automation.services.event_bus import EntityEvent, EventBus


def _event(entity_id: uuid.UUID | None = None, operation=AutomationTrigger.ON_UPDATE) -> EntityEvent:
    return EntityEvent(
        entity_type=AutomationEntityType.CANDIDATE,
        operation=operation,
        entity_id=entity_id or uuid.uuid4(),
    )


class TestAutomationDispatcher:

    def test_shard_is_stable_per_entity(self):
        dispatcher = AutomationDispatcher(lambda event: None, workers=4)
        entity_id = uuid.uuid4()

        shards = {dispatcher.shard_for(_event(entity_id)) for _ in range(10)}

        assert len(shards) == 1
        assert 0 <= shards.pop() < 4

    @pytest.mark.asyncio
    async def test_events_of_one_entity_keep_order(self):
        processed = []

        async def processor(event):
            # Spaetere Events sind schneller fertig; Reihenfolge muss trotzdem halten
            await asyncio.sleep(0.01 if event.operation == AutomationTrigger.ON_CREATE else 0)
            processed.append(event.operation)

        dispatcher = AutomationDispatcher(processor, workers=4, queue_size=10)
        await dispatcher.start()
        entity_id = uuid.uuid4()
        dispatcher.submit(_event(entity_id, AutomationTrigger.ON_CREATE))
        dispatcher.submit(_event(entity_id, AutomationTrigger.ON_UPDATE))
        dispatcher.submit(_event(entity_id, AutomationTrigger.ON_DELETE))
        await dispatcher.join()
        await dispatcher.stop()

        assert processed == [
            AutomationTrigger.ON_CREATE,
            AutomationTrigger.ON_UPDATE,
            AutomationTrigger.ON_DELETE,
        ]

    @pytest.mark.asyncio
    async def test_submit_without_start_drops(self):
        dispatcher = AutomationDispatcher(lambda event: None)

        assert dispatcher.submit(_event()) is False
        assert dispatcher.dropped == 1

    @pytest.mark.asyncio
    async def test_full_queue_drops_event(self):
        release = asyncio.Event()

        async def blocking(event):
            await release.wait()

        dispatcher = AutomationDispatcher(blocking, workers=1, queue_size=1)
        await dispatcher.start()

        assert dispatcher.submit(_event()) is True
        # Worker haelt das erste Event, das zweite belegt die Queue
        await asyncio.sleep(0.01)
        assert dispatcher.submit(_event()) is True
        assert dispatcher.submit(_event()) is False
        assert dispatcher.dropped == 1

        release.set()
        await dispatcher.stop()
        assert dispatcher.processed == 2

    @pytest.mark.asyncio
    async def test_failing_processor_is_counted(self):
        async def broken(event):
            raise RuntimeError("boom")

        dispatcher = AutomationDispatcher(broken, workers=2, queue_size=10)
        await dispatcher.start()
        dispatcher.submit(_event())
        dispatcher.submit(_event())
        await dispatcher.stop()

        assert dispatcher.failed == 2
        assert dispatcher.processed == 0
        assert dispatcher.running is False

    @pytest.mark.asyncio
    async def test_stop_drains_pending_events(self):
        processed = []

        async def processor(event):
            await asyncio.sleep(0)
            processed.append(event.entity_id)

        dispatcher = AutomationDispatcher(processor, workers=2, queue_size=50)
        await dispatcher.start()
        for _ in range(20):
            dispatcher.submit(_event())
        await dispatcher.stop(drain=True)

        assert len(processed) == 20

    @pytest.mark.asyncio
    async def test_bus_handler_returns_accept_flag(self):
        bus = EventBus()
        dispatcher = AutomationDispatcher(lambda event: asyncio.sleep(0), workers=1, queue_size=5)
        bus.subscribe(dispatcher.submit)

        # Nicht gestartet: Handler meldet False, Bus zaehlt keine Zustellung
        assert bus.publish(_event()) == 0

        await dispatcher.start()
        assert bus.publish(_event()) == 1
        await dispatcher.stop()
