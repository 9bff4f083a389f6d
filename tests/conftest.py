import math
import os
import typing
from datetime import datetime, timezone

import anyio
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine
from testcontainers.postgres import PostgresContainer

from raffle.app import create_app, get_registry
from raffle.database import build_engine, build_sessionmaker
from raffle.models import Base
from raffle.registry import TicketRegistry
from raffle.settings import Settings
from raffle.store import DocumentStore

USE_POSTGRES = os.getenv('RAFFLE_TEST_POSTGRES') == '1'


class Collector:
    """
    Callable sink for subscription callbacks that tests can await on.
    """

    def __init__(self):
        self._send, self._receive = anyio.create_memory_object_stream(math.inf)

    def __call__(self, item) -> None:
        self._send.send_nowait(item)

    async def next(self, timeout: float = 2.0):
        with anyio.fail_after(timeout):
            return await self._receive.receive()


@pytest.fixture(scope='session')
def anyio_backend() -> str:
    return 'asyncio'


@pytest.fixture(scope='session')
def postgres_container() -> typing.Generator[PostgresContainer, None, None]:
    with PostgresContainer('postgres:16', driver='asyncpg') as postgres:
        yield postgres


@pytest.fixture
def settings(request: pytest.FixtureRequest, tmp_path) -> Settings:
    if USE_POSTGRES:
        container = request.getfixturevalue('postgres_container')
        database_url = container.get_connection_url()
    else:
        database_url = f'sqlite+aiosqlite:///{tmp_path / "raffle.sqlite3"}'
    return Settings(
        _env_file=None,
        database_url=database_url,
        store_timeout=2.0,
        store_retries=0,
        store_retry_delay=0.01,
    )


@pytest.fixture
async def engine(settings: Settings) -> typing.AsyncGenerator[AsyncEngine, None]:
    async_engine = build_engine(settings)

    async with async_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield async_engine

    await async_engine.dispose()


@pytest.fixture
async def store(
    engine: AsyncEngine, settings: Settings
) -> typing.AsyncGenerator[DocumentStore, None]:
    document_store = DocumentStore.from_settings(build_sessionmaker(engine), settings)
    yield document_store
    await document_store.aclose()


@pytest.fixture
def sold_at() -> datetime:
    return datetime(2024, 11, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
async def registry(
    store: DocumentStore, sold_at: datetime
) -> typing.AsyncGenerator[TicketRegistry, None]:
    ticket_registry = TicketRegistry(store, clock=lambda: sold_at)
    ticket_registry.start()
    await ticket_registry.wait_until_loaded(2.0)
    yield ticket_registry
    await ticket_registry.aclose()


@pytest.fixture
def collector() -> Collector:
    return Collector()


@pytest.fixture
def wait_for():
    async def _wait_for(predicate, timeout: float = 2.0) -> None:
        with anyio.fail_after(timeout):
            while not predicate():
                await anyio.sleep(0.01)

    return _wait_for


@pytest.fixture
async def async_client(
    registry: TicketRegistry, settings: Settings
) -> typing.AsyncGenerator[AsyncClient, None]:
    app = create_app(settings)
    app.dependency_overrides[get_registry] = lambda: registry
    _transport = ASGITransport(app=app)

    async with AsyncClient(
        transport=_transport, base_url='http://test', follow_redirects=True
    ) as client:
        yield client
