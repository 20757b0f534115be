from __future__ import annotations

import logging
from typing import Awaitable, Callable

from datasmith.domain.models.events import JobEvent

logger = logging.getLogger(__name__)

EventHandler = Callable[[JobEvent], Awaitable[None]]


class EventBus:
    """Ordered async fan-out of job events; ``publish`` returns once every handler has run."""

    def __init__(self) -> None:
        self._handlers: list[EventHandler] = []

    def subscribe(self, handler: EventHandler) -> Callable[[], None]:
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    async def publish(self, event: JobEvent) -> None:
        for handler in list(self._handlers):
            await handler(event)

