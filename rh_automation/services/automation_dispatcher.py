"""Automation Dispatcher - Begrenzter Worker-Pool fuer Entity-Events.

Der Commit-Pfad ruft nur ``submit`` auf (``put_nowait``, blockiert nie).
Jeder Worker hat eine eigene Queue; Events werden nach (Entitaets-Typ, ID)
auf die Worker verteilt. Dadurch laufen Events derselben Entitaet in
Commit-Reihenfolge, verschiedene Entitaeten parallel.

Volle Queue = Event wird verworfen und als Fehler geloggt.
"""

import asyncio
import logging
import zlib
from collections.abc import Awaitable, Callable

from rh_automation.config import limits
from rh_automation.services.event_bus import EntityEvent

logger = logging.getLogger(__name__)

EventProcessor = Callable[[EntityEvent], Awaitable[object]]


class AutomationDispatcher:
    """Verteilt Events auf N Worker-Tasks."""

    def __init__(
        self,
        processor: EventProcessor,
        workers: int = limits.AUTOMATION_WORKERS,
        queue_size: int = limits.AUTOMATION_QUEUE_SIZE,
    ):
        self.processor = processor
        self.worker_count = max(1, workers)
        self.queue_size = queue_size
        self._queues: list[asyncio.Queue] = []
        self._tasks: list[asyncio.Task] = []

        # Statistiken
        self.submitted = 0
        self.dropped = 0
        self.processed = 0
        self.failed = 0

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    def shard_for(self, event: EntityEvent) -> int:
        """Stabiler Worker-Index pro Entitaet."""
        key = ":".join(event.entity_key).encode()
        return zlib.crc32(key) % self.worker_count

    # ==================== Lifecycle ====================

    async def start(self) -> None:
        if self.running:
            return
        self._queues = [asyncio.Queue(maxsize=self.queue_size) for _ in range(self.worker_count)]
        self._tasks = [
            asyncio.create_task(self._worker(index, queue), name=f"automation-worker-{index}")
            for index, queue in enumerate(self._queues)
        ]
        logger.info(f"AutomationDispatcher gestartet ({self.worker_count} Worker, Queue {self.queue_size})")

    async def stop(self, drain: bool = True, timeout: float = 10.0) -> None:
        """Stoppt die Worker. Mit ``drain`` werden offene Events noch abgearbeitet."""
        if not self.running:
            return
        if drain:
            try:
                await asyncio.wait_for(self.join(), timeout=timeout)
            except asyncio.TimeoutError:
                pending = sum(q.qsize() for q in self._queues)
                logger.warning(f"AutomationDispatcher: {pending} Event(s) beim Stoppen verworfen")

        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        self._queues = []
        logger.info(
            f"AutomationDispatcher gestoppt (verarbeitet={self.processed}, "
            f"fehlgeschlagen={self.failed}, verworfen={self.dropped})"
        )

    async def join(self) -> None:
        """Wartet, bis alle Queues leer und alle Events verarbeitet sind."""
        for queue in list(self._queues):
            await queue.join()

    # ==================== Einreihen ====================

    def submit(self, event: EntityEvent) -> bool:
        """Reiht ein Event ein. Gibt False zurueck, wenn es verworfen wurde."""
        if not self.running:
            self.dropped += 1
            logger.warning(f"Dispatcher nicht gestartet, Event verworfen: {event.describe()}")
            return False

        queue = self._queues[self.shard_for(event)]
        try:
            queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.error(
                f"Automation-Queue voll ({self.queue_size}), Event verworfen: {event.describe()}"
            )
            return False

        self.submitted += 1
        return True

    # ==================== Worker ====================

    async def _worker(self, index: int, queue: asyncio.Queue) -> None:
        while True:
            event = await queue.get()
            try:
                await self.processor(event)
                self.processed += 1
            except asyncio.CancelledError:
                raise
            except Exception:
                self.failed += 1
                logger.exception(f"Worker {index}: Verarbeitung fehlgeschlagen fuer {event.describe()}")
            finally:
                queue.task_done()
