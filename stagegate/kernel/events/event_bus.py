"""
In-process publish/subscribe for stage events.

Handlers run in subscription order. A failing handler is logged and does
not stop delivery to the others; the mutation that produced the event has
already been applied.
"""

import inspect
from typing import Any, Awaitable, Callable, Dict, List, Type, Union

from stagegate.kernel.events.event_types import BaseEvent
from stagegate.logging_config import get_logger

logger = get_logger(__name__)

Handler = Callable[[Any], Union[None, Awaitable[None]]]


class EventBus:
    """Typed event dispatch. Subscribing to BaseEvent receives everything."""

    def __init__(self):
        self._handlers: Dict[Type[BaseEvent], List[Handler]] = {}

    def subscribe(self, event_type: Type[BaseEvent], handler: Handler) -> None:
        self._handlers.setdefault(event_type, []).append(handler)

    def unsubscribe(self, event_type: Type[BaseEvent], handler: Handler) -> None:
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    def _handlers_for(self, event: BaseEvent) -> List[Handler]:
        matched: List[Handler] = []
        for event_type, handlers in list(self._handlers.items()):
            if isinstance(event, event_type):
                matched.extend(handlers)
        return matched

    async def publish(self, event: BaseEvent) -> None:
        for handler in self._handlers_for(event):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(
                    "Event handler failed",
                    extra={
                        "event_type": type(event).__name__,
                        "principal_id": str(event.principal_id),
                        "handler": getattr(handler, "__qualname__", repr(handler)),
                    },
                )

    async def publish_all(self, events: List[BaseEvent]) -> None:
        for event in events:
            await self.publish(event)
