import logging
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

TICKET_SOLD = 'ticket.sold'
SALE_REJECTED = 'ticket.rejected'
PAYMENT_CHANGED = 'ticket.paid'


@dataclass(frozen=True)
class TicketSold:
    number: int
    buyer: str
    phone: str


@dataclass(frozen=True)
class SaleRejected:
    number: int
    buyer: str
    existing_buyer: str


@dataclass(frozen=True)
class PaymentChanged:
    number: int
    paid: bool


class EventExchange:
    """
    Fans registry events out to subscribers. A failing subscriber is logged
    and skipped.
    """

    def __init__(self):
        self._subscribers: dict[str, list[Callable[[Any], None]]] = defaultdict(list)
        self._disabled: set[str] = set()

    def subscribe(self, name: str, func: Callable[[Any], None]) -> None:
        """
        Call func with every event emitted under name.
        """
        self._subscribers[name].append(func)

    def unsubscribe(self, name: str, func: Callable[[Any], None]) -> None:
        if func in self._subscribers[name]:
            self._subscribers[name].remove(func)

    def emit(self, name: str, event: Any) -> int:
        """
        Emit an event to all subscribers and return how many accepted it.
        """
        if name in self._disabled:
            return 0

        delivered = 0
        for func in list(self._subscribers[name]):
            try:
                func(event)
            except Exception:
                logger.exception(
                    'Delivery failed name=%r func=%r event=%r', name, func, event
                )
            else:
                delivered += 1
        return delivered

    def disable(self, name: str) -> None:
        """
        Prevent events from being sent to subscribers for the given name.
        """
        self._disabled.add(name)

    def enable(self, name: str) -> None:
        """
        Allow events to be sent to subscribers for the given name.
        """
        self._disabled.discard(name)
