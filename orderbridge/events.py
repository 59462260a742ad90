# orderbridge/events.py
"""
Domain events and the in-process bus that carries them.

The order state machine publishes; the channel lifecycle manager, the message
bridge and the verification dispatcher subscribe. None of them import each
other.
"""
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from orderbridge.models import Message, Order

logger = logging.getLogger("orderbridge")


@dataclass(frozen=True)
class ProofSubmitted:
    order: Order
    submitted_by: str


@dataclass(frozen=True)
class OrderApproved:
    order: Order


@dataclass(frozen=True)
class OrderDeclined:
    order: Order


@dataclass(frozen=True)
class OrderDelivered:
    order: Order


@dataclass(frozen=True)
class MessageAppended:
    order_id: str
    message: Message


@dataclass(frozen=True)
class DeliveryChannelOpened:
    """A ticket's payment was confirmed and its delivery channel exists."""
    channel_id: str
    user_id: str
    product_id: str
    product_name: str


Handler = Callable[[Any], Awaitable[None]]


class EventBus:
    def __init__(self) -> None:
        self._handlers: dict[type, list[Handler]] = defaultdict(list)

    def subscribe(self, event_type: type, handler: Handler) -> None:
        self._handlers[event_type].append(handler)

    async def publish(self, event: Any) -> int:
        """
        Await every handler for the event type, in subscription order.

        A failing handler is logged and skipped; it never reaches the
        publisher, whose own write has already happened.
        Returns how many handlers failed.
        """
        failures = 0
        for handler in list(self._handlers.get(type(event), [])):
            try:
                await handler(event)
            except Exception:
                failures += 1
                logger.exception(
                    "Event handler %s failed for %s",
                    getattr(handler, "__qualname__", handler),
                    type(event).__name__,
                )
        return failures

    def handlers_for(self, event_type: type) -> list[Handler]:
        return list(self._handlers.get(event_type, []))

