"""
Order Service: FastAPI エントリーポイント

Command (POST) と Query (GET) のエンドポイントを分離する。
Order Store / Order Cache / Event Channel はプロセスごとに一度だけ開き、
app.state.components に入れて各ハンドラへ依存として渡す。

┌──────────┐  POST /orders   ┌───────────────┐   ┌──────────┐
│  Client  │ ──────────────▶ │ Order Service │──▶│ Postgres │ (orders + outbox)
└──────────┘                 │               │──▶│  Redis   │ (order:<id>)
                             └───────┬───────┘   └──────────┘
                                     │ 非同期 (リクエストを待たせない)
                             ┌───────▼───────┐
                             │   RabbitMQ    │ orders / order.created
                             └───────────────┘
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass

import redis.asyncio as aioredis
import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from services.common import errors
from services.common.config import Settings
from services.common.consumer import log_task_failure
from services.common.health import check_health
from services.common.http import register_error_handlers
from services.common.log import configure_logging
from services.common.messaging import EventChannel

from . import commands, queries
from .cache import OrderCache
from .models import CreateOrderRequest, Order
from .publisher import EventPublisher, OutboxRelay
from .repository import OrderRepository
from .schema import init_schema

logger = logging.getLogger(__name__)

SERVICE_NAME = "order-service"


@dataclass
class OrderComponents:
    repository: OrderRepository
    cache: OrderCache
    channel: EventChannel
    publisher: EventPublisher
    relay: OutboxRelay | None = None
    engine: AsyncEngine | None = None
    redis: aioredis.Redis | None = None


async def build_components(settings: Settings) -> OrderComponents:
    engine = create_async_engine(settings.database_url, echo=False, pool_pre_ping=True)
    await init_schema(engine)
    session_factory = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    redis = aioredis.from_url(settings.redis_url, decode_responses=True)
    channel = EventChannel(
        settings.rabbitmq_url,
        exchange_name=settings.exchange_name,
        routing_key=settings.routing_key,
        dead_letter_exchange=settings.dead_letter_exchange,
        connect_attempts=settings.broker_connect_attempts,
        connect_delay=settings.broker_connect_delay,
    )

    repository = OrderRepository(session_factory)
    publisher = EventPublisher(channel, repository)
    relay = OutboxRelay(
        repository,
        publisher,
        poll_interval=settings.outbox_poll_interval,
        grace_seconds=settings.outbox_grace_seconds,
    )
    return OrderComponents(
        repository=repository,
        cache=OrderCache(redis, ttl_seconds=settings.order_cache_ttl),
        channel=channel,
        publisher=publisher,
        relay=relay,
        engine=engine,
        redis=redis,
    )


async def close_components(components: OrderComponents) -> None:
    await components.channel.close()
    if components.redis is not None:
        await components.redis.aclose()
    if components.engine is not None:
        await components.engine.dispose()


async def _connect_channel(channel: EventChannel) -> None:
    """ブローカーが落ちていても注文作成は受け付けるので、接続は裏で行う。"""
    try:
        await channel.connect()
    except errors.TransportError as exc:
        logger.error("Running without RabbitMQ, events stay in the outbox: %s", exc)


def get_components(request: Request) -> OrderComponents:
    return request.app.state.components


router = APIRouter()


# ── Command Endpoints (Write 側) ─────────────────


@router.post("/orders", status_code=201, response_model=Order)
async def cmd_create_order(
    req: CreateOrderRequest,
    components: OrderComponents = Depends(get_components),
):
    """注文作成コマンド"""
    return await commands.create_order(
        components.repository, components.cache, components.publisher, req
    )


# ── Query Endpoints (Read 側) ────────────────────


@router.get("/orders", response_model=list[Order])
async def query_list_orders(
    limit: str | None = None,
    offset: str | None = None,
    components: OrderComponents = Depends(get_components),
):
    """注文一覧 (作成日時の降順)。不正な limit / offset は既定値になる。"""
    return await queries.list_orders(components.repository, limit, offset)


@router.get("/orders/{order_id}", response_model=Order)
async def query_get_order(
    order_id: str,
    components: OrderComponents = Depends(get_components),
):
    """指定注文を取得 (cache-aside)"""
    return await queries.get_order(components.repository, components.cache, order_id)


@router.get("/health")
async def health(components: OrderComponents = Depends(get_components)):
    status_code, body = await check_health(
        SERVICE_NAME,
        {
            "database": components.repository.ping,
            "cache": components.cache.ping,
            "mq": components.channel.health_check,
        },
    )
    return JSONResponse(status_code=status_code, content=body)


def create_app(
    settings: Settings | None = None,
    components: OrderComponents | None = None,
) -> FastAPI:
    settings = settings or Settings.from_env(SERVICE_NAME, default_port=8080)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = components is None
        if owned:
            app.state.components = await build_components(settings)
        comps: OrderComponents = app.state.components

        shutdown_event = asyncio.Event()
        connect_task = asyncio.create_task(_connect_channel(comps.channel)) if owned else None
        relay_task = None
        if comps.relay is not None:
            relay_task = asyncio.create_task(
                comps.relay.run(shutdown_event), name="outbox-relay"
            )
            relay_task.add_done_callback(log_task_failure)
        yield
        shutdown_event.set()
        if connect_task is not None:
            connect_task.cancel()
            await asyncio.gather(connect_task, return_exceptions=True)
        if relay_task is not None:
            await asyncio.gather(relay_task, return_exceptions=True)
        await comps.publisher.drain()
        if owned:
            await close_components(comps)

    app = FastAPI(title="Order Service", lifespan=lifespan)
    app.state.settings = settings
    if components is not None:
        app.state.components = components
    register_error_handlers(app)
    app.include_router(router)
    return app


def run() -> None:
    settings = Settings.from_env(SERVICE_NAME, default_port=8080)
    configure_logging(settings.log_level, SERVICE_NAME)
    uvicorn.run(create_app(settings), host="0.0.0.0", port=settings.service_port)
