from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Callable, DefaultDict, Protocol, Type, TypeVar

from monorepo_publisher.integration.events import DomainEvent


logger = logging.getLogger(__name__)

E = TypeVar("E", bound=DomainEvent)
Handler = Callable[[DomainEvent], None]


class EventBus(Protocol):
    """Publish/subscribe interface for pipeline events.

    subscribe() returns a callable that removes the handler again.
    """

    def publish(self, event: DomainEvent) -> None:
        ...

    def subscribe(self, event_type: Type[E], handler: Callable[[E], None]) -> Callable[[], None]:
        ...


@dataclass
class InMemoryEventBus(EventBus):
    """Synchronous in-process pub/sub bus.

    Handlers only observe the run (progress display, reporting). A failing
    handler is logged and never interrupts a stage or a checkpoint write.
    """

    _handlers: DefaultDict[Type[DomainEvent], list[Handler]]

    def __init__(self) -> None:
        self._handlers = defaultdict(list)

    def publish(self, event: DomainEvent) -> None:
        for event_type, handlers in list(self._handlers.items()):
            if not isinstance(event, event_type):
                continue
            for handler in handlers:
                try:
                    handler(event)
                except Exception:
                    logger.exception("Event handler failed: %s for %s", handler, event)

    def subscribe(self, event_type: Type[E], handler: Callable[[E], None]) -> Callable[[], None]:
        handlers = self._handlers[event_type]
        handlers.append(handler)  # type: ignore[arg-type]

        def unsubscribe() -> None:
            if handler in handlers:
                handlers.remove(handler)  # type: ignore[arg-type]

        return unsubscribe
