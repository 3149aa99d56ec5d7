"""
InMemoryBus — in-process EventBus.

Used by the single-process runner and by tests. Every published event is kept
in a per-type log for inspection; each (event_type, group) subscription has
its own FIFO queue. A handler that raises leaves its event at the head of the
queue, and the queue is retried on the next publish or drain().
"""

from __future__ import annotations

import logging
from collections import defaultdict, deque
from typing import Any

from bus.base import EventBus, EventHandler
from bus.events import Event

logger = logging.getLogger("plm.bus.memory")


class InMemoryBus(EventBus):
    def __init__(self) -> None:
        self._log:      dict[str, list[Event]] = defaultdict(list)
        self._handlers: dict[tuple[str, str], EventHandler] = {}
        self._queues:   dict[tuple[str, str], deque[Event]] = {}
        self._running    = False
        self._delivering = False

    # ── EventBus interface ────────────────────────────────────────────────────

    async def publish(self, event: Event) -> None:
        self._log[event.event_type].append(event)
        for (event_type, group), queue in self._queues.items():
            if event_type == event.event_type:
                queue.append(event)
        if self._running:
            await self._deliver()

    async def subscribe(self, event_type: str, group: str, handler: EventHandler) -> None:
        key = (event_type, group)
        if key in self._handlers:
            logger.warning("replacing subscription for (%s, %s)", event_type, group)
        self._handlers[key] = handler
        self._queues.setdefault(key, deque())

    async def start(self) -> None:
        self._running = True
        await self._deliver()

    async def stop(self) -> None:
        self._running = False

    async def drain(self) -> None:
        """Deliver whatever is queued, whether or not the bus is started."""
        await self._deliver()

    # ── Inspection ────────────────────────────────────────────────────────────

    def get_events(self, event_type: str | None = None) -> list[Event]:
        if event_type is not None:
            return list(self._log.get(event_type, []))
        events = [e for log in self._log.values() for e in log]
        return sorted(events, key=lambda e: e.timestamp_utc)

    def last_event(self, event_type: str) -> Event | None:
        log = self._log.get(event_type)
        return log[-1] if log else None

    def event_count(self, event_type: str | None = None) -> int:
        return len(self.get_events(event_type))

    def get_payloads(self, event_type: str) -> list[dict[str, Any]]:
        return [e.payload for e in self._log.get(event_type, [])]

    def pending_count(self, event_type: str, group: str) -> int:
        return len(self._queues.get((event_type, group), ()))

    def clear(self) -> None:
        self._log.clear()
        for queue in self._queues.values():
            queue.clear()

    # ── Internal ──────────────────────────────────────────────────────────────

    async def _deliver(self) -> None:
        # Handlers that publish only enqueue; the outer loop picks their events up.
        if self._delivering:
            return
        self._delivering = True
        try:
            progressed = True
            while progressed:
                progressed = False
                for key, queue in list(self._queues.items()):
                    if not queue:
                        continue
                    event = queue[0]
                    try:
                        await self._handlers[key](event)
                    except Exception as exc:
                        logger.warning(
                            "handler %s/%s failed on event %s: %s",
                            key[0], key[1], event.event_id, exc,
                        )
                        continue
                    queue.popleft()
                    progressed = True
        finally:
            self._delivering = False
