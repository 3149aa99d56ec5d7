"""
EventBus interface for settlement and workflow notifications.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Awaitable, Callable

from bus.events import Event

EventHandler = Callable[[Event], Awaitable[None]]


class EventBus(ABC):
    """
    Implementations:
        RedisBus    — Redis Streams, at-least-once (multi-process deployments)
        InMemoryBus — in-process, deterministic (tests, single-process runner)

    Handlers receive the whole Event, must tolerate redelivery, and signal
    failure by raising.
    """

    @abstractmethod
    async def publish(self, event: Event) -> None:
        """Publish an event. Raises when it cannot be delivered to the bus."""

    @abstractmethod
    async def subscribe(self, event_type: str, group: str, handler: EventHandler) -> None:
        """Register `handler` for `event_type` under consumer group `group`."""

    @abstractmethod
    async def start(self) -> None:
        """Begin delivering events to subscribers."""

    @abstractmethod
    async def stop(self) -> None:
        """Stop delivery and release resources."""
