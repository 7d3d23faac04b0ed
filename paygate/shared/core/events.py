"""
In-process domain event bus.

Publishers never fail because of a subscriber: handler errors are logged and
swallowed so notification side effects cannot block billing state changes.
"""

import inspect
from collections import defaultdict
from functools import lru_cache
from typing import Any, Awaitable, Callable, DefaultDict, List, Type, Union

import structlog

logger = structlog.get_logger()

Handler = Callable[[Any], Union[None, Awaitable[None]]]


class EventBus:
    def __init__(self) -> None:
        self._handlers: DefaultDict[Type[Any], List[Handler]] = defaultdict(list)

    def subscribe(self, event_type: Type[Any], handler: Handler) -> None:
        self._handlers[event_type].append(handler)

    def handlers_for(self, event_type: Type[Any]) -> List[Handler]:
        return list(self._handlers.get(event_type, []))

    async def publish(self, event: Any) -> None:
        event_name = type(event).__name__
        for handler in self.handlers_for(type(event)):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                logger.error(
                    "event_handler_failed",
                    event_type=event_name,
                    handler=getattr(handler, "__qualname__", repr(handler)),
                    error=str(exc),
                    exc_info=True,
                )


@lru_cache
def get_event_bus() -> EventBus:
    """Process-wide bus with the billing notification subscribers attached."""
    bus = EventBus()
    from paygate.modules.billing.domain.billing.notifications import (
        register_billing_notifications,
    )

    register_billing_notifications(bus)
    return bus
