"""Synchronous in-process bus for signup and publication domain events."""

from __future__ import annotations

from collections import defaultdict
from typing import Callable

import structlog
from pydantic import BaseModel

logger = structlog.get_logger(__name__)

Handler = Callable[[BaseModel], None]


class EventBus:
    """Routes domain events to the handlers subscribed to their type.

    Handlers run on the publisher's thread, in subscription order, so a
    publish returns only after every side effect has been attempted.
    """

    def __init__(self) -> None:
        self._handlers: dict[type[BaseModel], list[Handler]] = defaultdict(list)

    def subscribe(self, event_type: type[BaseModel], handler: Handler) -> None:
        self._handlers[event_type].append(handler)

    def publish(self, event: BaseModel) -> int:
        """Deliver ``event`` and return how many handlers saw it."""
        handlers = list(self._handlers.get(type(event), ()))
        logger.debug("domain_event", kind=type(event).__name__, handlers=len(handlers))
        for handler in handlers:
            handler(event)
        return len(handlers)
