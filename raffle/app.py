import logging
import math
from contextlib import asynccontextmanager
from http import HTTPStatus
from typing import Annotated

import anyio
from fastapi import Depends, FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from raffle.database import build_engine, build_sessionmaker, create_schema
from raffle.errors import NotSold, RegistryError
from raffle.registry import Snapshot, TicketRegistry
from raffle.schemas import (
    TOTAL_TICKETS,
    BoardResponse,
    PaymentUpdate,
    SaleOrder,
    Ticket,
    TicketResponse,
)
from raffle.settings import Settings, configure_logging, get_settings
from raffle.store import DocumentStore

logger = logging.getLogger(__name__)


def _ticket_response(ticket: Ticket) -> TicketResponse:
    return TicketResponse(**ticket.model_dump())


def board_from_snapshot(snapshot: Snapshot) -> BoardResponse:
    return BoardResponse(
        tickets=[_ticket_response(snapshot[n]) for n in sorted(snapshot)],
        sold=len(snapshot),
        remaining=TOTAL_TICKETS - len(snapshot),
    )


def get_registry(request: Request) -> TicketRegistry:
    return request.app.state.registry


RegistryDep = Annotated[TicketRegistry, Depends(get_registry)]


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.log_level)
        engine = build_engine(settings)
        await create_schema(engine)
        store = DocumentStore.from_settings(build_sessionmaker(engine), settings)
        registry = TicketRegistry.from_settings(store, settings)
        registry.start()
        app.state.registry = registry
        logger.info(
            'Serving collection %r with %s sales',
            settings.collection_name,
            settings.sell_strategy,
        )
        yield
        await registry.aclose()
        await store.aclose()
        await engine.dispose()

    app = FastAPI(title=settings.app_name, lifespan=lifespan)

    @app.exception_handler(RegistryError)
    async def registry_error_handler(request: Request, exc: RegistryError):
        content = {'detail': str(exc), 'code': exc.code}
        existing_buyer = getattr(exc, 'existing_buyer', None)
        if existing_buyer is not None:
            content['existing_buyer'] = existing_buyer
        return JSONResponse(status_code=exc.status, content=content)

    @app.get('/tickets', response_model=BoardResponse)
    async def get_board(registry: RegistryDep):
        await registry.wait_until_loaded(settings.store_timeout)
        return board_from_snapshot(registry.get_snapshot())

    @app.get('/tickets/{number}', response_model=TicketResponse)
    async def get_ticket(number: int, registry: RegistryDep):
        number = registry.validate_number(number)
        await registry.wait_until_loaded(settings.store_timeout)
        ticket = registry.get_ticket(number)
        if ticket is None:
            raise NotSold(number)
        return _ticket_response(ticket)

    @app.post(
        '/tickets/sell',
        response_model=TicketResponse,
        status_code=HTTPStatus.CREATED,
    )
    async def sell_ticket(order: SaleOrder, registry: RegistryDep):
        ticket = await registry.sell(order.number, order.buyer, order.phone)
        return _ticket_response(ticket)

    @app.put('/tickets/{number}/paid', response_model=TicketResponse)
    async def set_paid(number: int, update: PaymentUpdate, registry: RegistryDep):
        ticket = await registry.set_paid(number, update.paid)
        return _ticket_response(ticket)

    @app.post('/tickets/{number}/toggle-paid', response_model=TicketResponse)
    async def toggle_paid(number: int, registry: RegistryDep):
        ticket = await registry.toggle_paid(number)
        return _ticket_response(ticket)

    @app.websocket('/tickets/live')
    async def live_board(websocket: WebSocket):
        registry: TicketRegistry = websocket.app.state.registry
        await websocket.accept()
        send_stream, receive_stream = anyio.create_memory_object_stream(math.inf)
        handle = registry.subscribe(send_stream.send_nowait)

        async def push() -> None:
            async with receive_stream:
                async for snapshot in receive_stream:
                    board = board_from_snapshot(snapshot)
                    await websocket.send_json(board.model_dump(mode='json'))

        try:
            async with anyio.create_task_group() as tg:
                tg.start_soon(push)
                try:
                    while True:
                        await websocket.receive_text()
                except WebSocketDisconnect:
                    pass
                tg.cancel_scope.cancel()
        finally:
            handle.unsubscribe()
            send_stream.close()

    return app


app = create_app()
