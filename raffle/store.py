"""
Document store with keyed writes and live collection queries.

Documents live in the ``documents`` table. Live subscriptions are fed by
in-process change notifications: each committed write bumps the collection's
revision and wakes every subscription on that collection. Writes made by other
processes are only seen when ``poll_interval`` is set.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any

import anyio
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from raffle.errors import DocumentExists, RegistryError, StoreUnavailable, Timeout
from raffle.models import Document
from raffle.settings import Settings

logger = logging.getLogger(__name__)

SnapshotCallback = Callable[['CollectionSnapshot'], Awaitable[None] | None]
ErrorCallback = Callable[[RegistryError], Awaitable[None] | None]


@dataclass(frozen=True)
class DocumentSnapshot:
    key: str
    exists: bool
    data: dict[str, Any] | None = None


@dataclass(frozen=True)
class CollectionSnapshot:
    collection: str
    revision: int
    documents: list[DocumentSnapshot]


async def _maybe_await(result: Any) -> None:
    if inspect.isawaitable(result):
        await result


class Subscription:
    """
    A live query on one collection.

    Snapshots are delivered from a dedicated task, one at a time and in the
    order they were read. Notifications that pile up while a snapshot is being
    read or delivered collapse into a single refresh.
    """

    def __init__(
        self,
        store: DocumentStore,
        collection: str,
        on_snapshot: SnapshotCallback,
        on_error: ErrorCallback | None = None,
    ):
        self.store = store
        self.collection = collection
        self.on_snapshot = on_snapshot
        self.on_error = on_error
        self._wakeups: asyncio.Queue[None] = asyncio.Queue()
        self._task: asyncio.Task | None = None
        self._last_documents: list[DocumentSnapshot] | None = None

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        self._wakeups.put_nowait(None)
        self._task = asyncio.create_task(
            self._run(), name=f'subscription:{self.collection}'
        )

    def notify(self) -> None:
        self._wakeups.put_nowait(None)

    def cancel(self) -> None:
        self.store._detach(self)
        if self.active:
            self._task.cancel()

    async def wait(self) -> None:
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    async def _next_wakeup(self) -> bool:
        """
        Wait for a change notification. Returns False if the poll interval
        elapsed without one.
        """
        if self.store.poll_interval is None:
            await self._wakeups.get()
            return True
        try:
            await asyncio.wait_for(self._wakeups.get(), self.store.poll_interval)
        except TimeoutError:
            return False
        return True

    def _drain(self) -> None:
        while not self._wakeups.empty():
            self._wakeups.get_nowait()

    async def _run(self) -> None:
        failures = 0
        while True:
            notified = await self._next_wakeup()
            self._drain()
            try:
                snapshot = await self.store.snapshot(self.collection)
            except RegistryError as exc:
                failures += 1
                if failures > self.store.resubscribe_attempts:
                    logger.error(
                        'Subscription to %r gave up after %d failures: %s',
                        self.collection,
                        failures,
                        exc,
                    )
                    self.store._detach(self)
                    if self.on_error is not None:
                        await _maybe_await(self.on_error(exc))
                    return
                delay = self.store.retry_delay * (2 ** (failures - 1))
                logger.warning(
                    'Subscription to %r lost (%s), resubscribing in %.2fs',
                    self.collection,
                    exc,
                    delay,
                )
                await asyncio.sleep(delay)
                self.notify()
                continue

            failures = 0
            if not notified and snapshot.documents == self._last_documents:
                continue
            self._last_documents = snapshot.documents
            try:
                await _maybe_await(self.on_snapshot(snapshot))
            except Exception:
                logger.exception(
                    'Snapshot delivery failed collection=%r revision=%d',
                    self.collection,
                    snapshot.revision,
                )


class DocumentStore:
    def __init__(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        *,
        timeout: float = 5.0,
        retries: int = 2,
        retry_delay: float = 0.2,
        poll_interval: float | None = None,
        resubscribe_attempts: int = 3,
    ):
        self.sessionmaker = sessionmaker
        self.timeout = timeout
        self.retries = retries
        self.retry_delay = retry_delay
        self.poll_interval = poll_interval
        self.resubscribe_attempts = resubscribe_attempts
        self._revisions: dict[str, int] = defaultdict(int)
        self._subscriptions: dict[str, set[Subscription]] = defaultdict(set)

    @classmethod
    def from_settings(
        cls, sessionmaker: async_sessionmaker[AsyncSession], settings: Settings
    ) -> DocumentStore:
        return cls(
            sessionmaker,
            timeout=settings.store_timeout,
            retries=settings.store_retries,
            retry_delay=settings.store_retry_delay,
            poll_interval=settings.poll_interval,
            resubscribe_attempts=settings.resubscribe_attempts,
        )

    # ---------- Public API ----------
    def subscribe_collection(
        self,
        collection: str,
        on_snapshot: SnapshotCallback,
        on_error: ErrorCallback | None = None,
    ) -> Subscription:
        subscription = Subscription(self, collection, on_snapshot, on_error)
        self._subscriptions[collection].add(subscription)
        subscription.start()
        return subscription

    async def get_document(self, collection: str, key: str) -> DocumentSnapshot:
        return await self._call(self._get, collection, key)

    async def list_documents(self, collection: str) -> list[DocumentSnapshot]:
        return await self._call(self._list, collection)

    async def snapshot(self, collection: str) -> CollectionSnapshot:
        # The revision is read before listing and bumped after commit, so a
        # snapshot may already include writes newer than its label, and two
        # snapshots with the same label can differ. Every bump also notifies,
        # so the refresh that follows carries a higher revision and supersedes
        # both.
        revision = self._revisions[collection]
        documents = await self.list_documents(collection)
        return CollectionSnapshot(collection, revision, documents)

    async def write_document(
        self,
        collection: str,
        key: str,
        data: Mapping[str, Any],
        *,
        merge: bool = False,
    ) -> None:
        await self._call(self._write, collection, key, dict(data), merge)
        self._changed(collection)

    async def create_document(
        self, collection: str, key: str, data: Mapping[str, Any]
    ) -> None:
        """
        Insert a document only if the key is free, else raise DocumentExists.
        """
        await self._call(self._create, collection, key, dict(data), idempotent=False)
        self._changed(collection)

    def revision(self, collection: str) -> int:
        return self._revisions[collection]

    async def aclose(self) -> None:
        subscriptions = [s for subs in self._subscriptions.values() for s in subs]
        for subscription in subscriptions:
            subscription.cancel()
        for subscription in subscriptions:
            await subscription.wait()

    # ---------- Notification ----------
    def _changed(self, collection: str) -> None:
        self._revisions[collection] += 1
        for subscription in list(self._subscriptions[collection]):
            subscription.notify()

    def _detach(self, subscription: Subscription) -> None:
        self._subscriptions[subscription.collection].discard(subscription)

    # ---------- Bounded, retried calls ----------
    async def _call(self, operation, *args, idempotent: bool = True):
        attempts = self.retries + 1 if idempotent else 1
        for attempt in range(attempts):
            try:
                with anyio.fail_after(self.timeout):
                    return await operation(*args)
            except TimeoutError as exc:
                error = Timeout(
                    f'{operation.__name__.lstrip("_")} timed out after {self.timeout}s'
                )
                cause = exc
            except (SQLAlchemyError, OSError) as exc:
                error = StoreUnavailable(f'store call failed: {exc}')
                cause = exc

            if attempt + 1 < attempts:
                delay = self.retry_delay * (2**attempt)
                logger.warning(
                    'Store %s failed (%s), retrying in %.2fs',
                    operation.__name__.lstrip('_'),
                    error,
                    delay,
                )
                await anyio.sleep(delay)
        raise error from cause

    # ---------- Session work ----------
    async def _get(self, collection: str, key: str) -> DocumentSnapshot:
        async with self.sessionmaker() as session:
            row = await session.get(Document, (collection, key))
        if row is None:
            return DocumentSnapshot(key, exists=False)
        return DocumentSnapshot(key, exists=True, data=dict(row.data))

    async def _list(self, collection: str) -> list[DocumentSnapshot]:
        async with self.sessionmaker() as session:
            rows = await session.scalars(
                select(Document)
                .where(Document.collection == collection)
                .order_by(Document.key)
            )
            return [DocumentSnapshot(row.key, True, dict(row.data)) for row in rows]

    async def _write(
        self, collection: str, key: str, data: dict[str, Any], merge: bool
    ) -> None:
        try:
            await self._upsert(collection, key, data, merge)
        except IntegrityError:
            # A concurrent writer inserted the key first; apply over its row.
            await self._upsert(collection, key, data, merge)

    async def _upsert(
        self, collection: str, key: str, data: dict[str, Any], merge: bool
    ) -> None:
        async with self.sessionmaker() as session:
            async with session.begin():
                row = await session.get(
                    Document, (collection, key), with_for_update=True
                )
                if row is None:
                    session.add(Document(collection=collection, key=key, data=data))
                elif merge:
                    row.data = {**row.data, **data}
                else:
                    row.data = data

    async def _create(self, collection: str, key: str, data: dict[str, Any]) -> None:
        async with self.sessionmaker() as session:
            try:
                async with session.begin():
                    session.add(Document(collection=collection, key=key, data=data))
            except IntegrityError as exc:
                raise DocumentExists(collection, key) from exc
