"""
The ticket registry: the 100-slot numbering space kept in a document store.

A slot is sold iff its number has a document in the collection. Documents
are keyed by the decimal ticket number and are never deleted. Once created,
only the ``paid`` field of a document changes.

The local snapshot is a read cache. It is written only from live-subscription
callbacks; ``sell`` and ``set_paid`` write through to the store and the cache
catches up when the resulting snapshot arrives.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Literal

import anyio
from pydantic import TypeAdapter, ValidationError

from raffle.errors import (
    AlreadySold,
    DocumentExists,
    InvalidInput,
    NotSold,
    RegistryError,
    Timeout,
)
from raffle.events import (
    PAYMENT_CHANGED,
    SALE_REJECTED,
    TICKET_SOLD,
    EventExchange,
    PaymentChanged,
    SaleRejected,
    TicketSold,
)
from raffle.schemas import (
    TOTAL_TICKETS,
    PaymentUpdate,
    SaleOrder,
    Ticket,
    TicketNumber,
)
from raffle.settings import Settings
from raffle.store import (
    CollectionSnapshot,
    DocumentSnapshot,
    DocumentStore,
    Subscription,
)

logger = logging.getLogger(__name__)

SellStrategy = Literal['atomic', 'check_then_write']
Snapshot = dict[int, Ticket]
ChangeCallback = Callable[[Snapshot], Awaitable[None] | None]

_ticket_number = TypeAdapter(TicketNumber)


def _describe(exc: ValidationError) -> str:
    return '; '.join(
        f'{".".join(str(part) for part in error["loc"]) or "value"}: {error["msg"]}'
        for error in exc.errors()
    )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SubscriptionHandle:
    def __init__(self, registry: TicketRegistry, subscription: Subscription):
        self._registry = registry
        self._subscription = subscription

    @property
    def active(self) -> bool:
        return self._subscription.active

    def unsubscribe(self) -> None:
        self._subscription.cancel()
        self._registry._handles.discard(self)

    async def wait_closed(self) -> None:
        await self._subscription.wait()


class TicketRegistry:
    def __init__(
        self,
        store: DocumentStore,
        *,
        collection: str = 'sold',
        sell_strategy: SellStrategy = 'atomic',
        events: EventExchange | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.collection = collection
        self.sell_strategy = sell_strategy
        self.events = events if events is not None else EventExchange()
        self._clock = clock
        self._snapshot: Snapshot = {}
        self._revision = -1
        self._loaded = asyncio.Event()
        self._handles: set[SubscriptionHandle] = set()
        self._cache_handle: SubscriptionHandle | None = None

    @classmethod
    def from_settings(
        cls,
        store: DocumentStore,
        settings: Settings,
        events: EventExchange | None = None,
    ) -> TicketRegistry:
        return cls(
            store,
            collection=settings.collection_name,
            sell_strategy=settings.sell_strategy,
            events=events,
        )

    # ---------- Live view ----------
    def subscribe(
        self,
        on_change: ChangeCallback,
        on_error: Callable[[RegistryError], Awaitable[None] | None] | None = None,
    ) -> SubscriptionHandle:
        """
        Call on_change with the full snapshot now and after every change.
        """

        async def deliver(collection_snapshot: CollectionSnapshot) -> None:
            snapshot = self._absorb(collection_snapshot)
            result = on_change(snapshot)
            if inspect.isawaitable(result):
                await result

        subscription = self.store.subscribe_collection(
            self.collection, deliver, on_error
        )
        handle = SubscriptionHandle(self, subscription)
        self._handles.add(handle)
        return handle

    def start(self) -> None:
        """
        Keep the snapshot cache live even when nobody else is subscribed.

        If the cache subscription gives up, the registry stops reporting itself
        as loaded and opens a new one after a short delay.
        """
        if self._cache_handle is None or not self._cache_handle.active:
            self._cache_handle = self.subscribe(
                lambda snapshot: None, self._cache_lost
            )

    async def _cache_lost(self, exc: RegistryError) -> None:
        delay = self.store.retry_delay
        logger.error(
            'Snapshot cache for %r lost (%s), restarting in %.2fs',
            self.collection,
            exc,
            delay,
        )
        self._loaded.clear()
        # aclose() cancels this sleep through the still-registered handle.
        await asyncio.sleep(delay)
        if self._cache_handle is not None:
            self._handles.discard(self._cache_handle)
        self._cache_handle = None
        self.start()

    async def aclose(self) -> None:
        handles = list(self._handles)
        for handle in handles:
            handle.unsubscribe()
        for handle in handles:
            await handle.wait_closed()
        self._cache_handle = None

    @property
    def loaded(self) -> bool:
        return self._loaded.is_set()

    async def wait_until_loaded(self, timeout: float | None = None) -> None:
        try:
            with anyio.fail_after(timeout):
                await self._loaded.wait()
        except TimeoutError as exc:
            raise Timeout(f'no snapshot received within {timeout}s') from exc

    def _absorb(self, collection_snapshot: CollectionSnapshot) -> Snapshot:
        snapshot = self._parse(collection_snapshot.documents)
        if collection_snapshot.revision >= self._revision:
            self._snapshot = snapshot
            self._revision = collection_snapshot.revision
        self._loaded.set()
        return dict(snapshot)

    def _parse(self, documents: list[DocumentSnapshot]) -> Snapshot:
        snapshot: Snapshot = {}
        for document in documents:
            key = document.key
            try:
                if not (key.isascii() and key.isdigit() and str(int(key)) == key):
                    raise ValueError(key)
                number = _ticket_number.validate_python(int(key))
                ticket = Ticket.model_validate(
                    {**(document.data or {}), 'number': number}
                )
            except (ValueError, ValidationError):
                logger.warning(
                    'Ignoring malformed document %r in %r',
                    key,
                    self.collection,
                )
                continue
            snapshot[number] = ticket
        return snapshot

    # ---------- Cached reads ----------
    def get_snapshot(self) -> Snapshot:
        return dict(self._snapshot)

    def get_ticket(self, number: int) -> Ticket | None:
        return self._snapshot.get(number)

    def is_sold(self, number: int) -> bool:
        return number in self._snapshot

    @property
    def sold_count(self) -> int:
        return len(self._snapshot)

    @property
    def remaining(self) -> int:
        return TOTAL_TICKETS - len(self._snapshot)

    # ---------- Writes ----------
    @staticmethod
    def validate_sale(number: int, buyer: str, phone: str | None = '') -> SaleOrder:
        try:
            return SaleOrder(
                number=number, buyer=buyer, phone=phone if phone is not None else ''
            )
        except ValidationError as exc:
            raise InvalidInput(_describe(exc)) from exc

    @staticmethod
    def validate_number(number: int) -> int:
        try:
            return _ticket_number.validate_python(number)
        except ValidationError as exc:
            raise InvalidInput(f'number: {exc.errors()[0]["msg"]}') from exc

    async def sell(self, number: int, buyer: str, phone: str | None = '') -> Ticket:
        """
        Sell a free ticket number.

        Raises InvalidInput before any store call when the order is malformed,
        and AlreadySold when the number already has a buyer.
        """
        order = self.validate_sale(number, buyer, phone)
        key = str(order.number)
        ticket = Ticket(
            number=order.number,
            buyer=order.buyer,
            phone=order.phone,
            paid=False,
            sold_at=self._clock(),
        )

        if self.sell_strategy == 'atomic':
            try:
                await self.store.create_document(
                    self.collection, key, ticket.to_document()
                )
            except DocumentExists:
                existing = await self.store.get_document(self.collection, key)
                self._reject(order, existing)
        else:
            existing = await self.store.get_document(self.collection, key)
            if existing.exists:
                self._reject(order, existing)
            # Two concurrent sales can both pass the check above; the later
            # write replaces the earlier one and neither caller sees an error.
            await self.store.write_document(
                self.collection, key, ticket.to_document()
            )

        logger.info('Ticket %d sold to %r', ticket.number, ticket.buyer)
        self.events.emit(
            TICKET_SOLD, TicketSold(ticket.number, ticket.buyer, ticket.phone)
        )
        return ticket

    def _reject(self, order: SaleOrder, existing: DocumentSnapshot) -> None:
        existing_buyer = (existing.data or {}).get('buyer', '')
        logger.info(
            'Ticket %d already belongs to %r, rejecting sale to %r',
            order.number,
            existing_buyer,
            order.buyer,
        )
        self.events.emit(
            SALE_REJECTED, SaleRejected(order.number, order.buyer, existing_buyer)
        )
        raise AlreadySold(order.number, existing_buyer)

    async def _require_sold(self, number: int) -> DocumentSnapshot:
        existing = await self.store.get_document(self.collection, str(number))
        if not existing.exists:
            raise NotSold(number)
        return existing

    async def set_paid(self, number: int, paid: bool) -> Ticket:
        """
        Record whether a sold ticket has been paid for.

        Only the paid field is written. Setting the current value again is a
        no-op for the stored state. Raises NotSold if the number has no buyer.
        """
        number = self.validate_number(number)
        try:
            paid = PaymentUpdate(paid=paid).paid
        except ValidationError as exc:
            raise InvalidInput(_describe(exc)) from exc

        existing = await self._require_sold(number)
        await self.store.write_document(
            self.collection, str(number), {'paid': paid}, merge=True
        )
        if existing.data.get('paid') != paid:
            logger.info('Ticket %d marked %s', number, 'paid' if paid else 'unpaid')
            self.events.emit(PAYMENT_CHANGED, PaymentChanged(number, paid))
        return Ticket.model_validate({**existing.data, 'number': number, 'paid': paid})

    async def toggle_paid(self, number: int) -> Ticket:
        """
        Flip the payment status of a sold ticket.

        The current value is read and its negation written in two separate
        store calls, so two concurrent toggles may cancel into one.
        """
        number = self.validate_number(number)
        existing = await self._require_sold(number)
        paid = not existing.data.get('paid', False)
        await self.store.write_document(
            self.collection, str(number), {'paid': paid}, merge=True
        )
        logger.info('Ticket %d marked %s', number, 'paid' if paid else 'unpaid')
        self.events.emit(PAYMENT_CHANGED, PaymentChanged(number, paid))
        return Ticket.model_validate({**existing.data, 'number': number, 'paid': paid})
