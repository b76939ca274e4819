"""
Analytics Service: FastAPI エントリーポイント

起動時に RabbitMQ サブスクライバをバックグラウンドタスクとして開始し、
order.created イベントを集計ストアに投影する。HTTP では集計サマリーを返す。

┌──────────────┐  order.created   ┌───────────────────┐
│ Order Service │ ─── RabbitMQ ──▶ │ Analytics Service │
└──────────────┘  analytics.orders └────────┬──────────┘
                                            │
                                   ┌────────▼──────────┐
                                   │  order_metrics    │
                                   │  + summary cache  │
                                   └───────────────────┘
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

from services.common.config import Settings
from services.common.consumer import RetryPolicy, log_task_failure
from services.common.health import check_health, task_check
from services.common.http import register_error_handlers
from services.common.log import configure_logging
from services.common.messaging import EventChannel

from . import queries
from .cache import SummaryCache
from .models import AnalyticsSummary
from .repository import MetricsRepository
from .schema import init_schema
from .subscriber import QUEUE_NAME, run_subscriber

logger = logging.getLogger(__name__)

SERVICE_NAME = "analytics-service"


@dataclass
class AnalyticsComponents:
    repository: MetricsRepository
    cache: SummaryCache
    channel: EventChannel
    engine: AsyncEngine | None = None
    redis: aioredis.Redis | None = None


async def build_components(settings: Settings) -> AnalyticsComponents:
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
    await channel.connect()
    return AnalyticsComponents(
        repository=MetricsRepository(session_factory),
        cache=SummaryCache(redis, ttl_seconds=settings.summary_cache_ttl),
        channel=channel,
        engine=engine,
        redis=redis,
    )


async def close_components(components: AnalyticsComponents) -> None:
    await components.channel.close()
    if components.redis is not None:
        await components.redis.aclose()
    if components.engine is not None:
        await components.engine.dispose()


def get_components(request: Request) -> AnalyticsComponents:
    return request.app.state.components


router = APIRouter()


@router.get("/analytics/summary", response_model=AnalyticsSummary)
async def query_summary(components: AnalyticsComponents = Depends(get_components)):
    """件数・売上合計・平均注文額 (cache-aside)"""
    return await queries.get_summary(components.repository, components.cache)


@router.get("/health")
async def health(
    request: Request,
    components: AnalyticsComponents = Depends(get_components),
):
    checks = {
        "database": components.repository.ping,
        "cache": components.cache.ping,
        "mq": components.channel.health_check,
    }
    subscriber_task = getattr(request.app.state, "subscriber_task", None)
    if subscriber_task is not None:
        checks["consumer"] = task_check(subscriber_task)
    status_code, body = await check_health(SERVICE_NAME, checks)
    return JSONResponse(status_code=status_code, content=body)


def create_app(
    settings: Settings | None = None,
    components: AnalyticsComponents | None = None,
    *,
    start_consumer: bool = True,
) -> FastAPI:
    settings = settings or Settings.from_env(
        SERVICE_NAME, default_port=8081, default_queue=QUEUE_NAME
    )
    policy = RetryPolicy(
        max_deliveries=settings.max_deliveries,
        requeue_malformed=settings.requeue_malformed,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = components is None
        if owned:
            app.state.components = await build_components(settings)
        comps: AnalyticsComponents = app.state.components

        shutdown_event = asyncio.Event()
        subscriber_task = None
        if start_consumer:
            # 購読に失敗したら起動させない
            try:
                subscription = await comps.channel.subscribe(
                    settings.queue_name or QUEUE_NAME,
                    max_deliveries=policy.max_deliveries,
                )
            except Exception:
                if owned:
                    await close_components(comps)
                raise
            subscriber_task = asyncio.create_task(
                run_subscriber(
                    subscription,
                    comps.repository,
                    comps.cache,
                    shutdown_event,
                    policy=policy,
                    deduplicate=settings.deduplicate_events,
                ),
                name="analytics-subscriber",
            )
            subscriber_task.add_done_callback(log_task_failure)
        app.state.subscriber_task = subscriber_task
        yield
        # 処理中のメッセージは最後まで処理してから止まる
        shutdown_event.set()
        if subscriber_task is not None:
            await asyncio.gather(subscriber_task, return_exceptions=True)
        if owned:
            await close_components(comps)

    app = FastAPI(title="Analytics Service", lifespan=lifespan)
    app.state.settings = settings
    if components is not None:
        app.state.components = components
    register_error_handlers(app)
    app.include_router(router)
    return app


def run() -> None:
    settings = Settings.from_env(SERVICE_NAME, default_port=8081, default_queue=QUEUE_NAME)
    configure_logging(settings.log_level, SERVICE_NAME)
    uvicorn.run(create_app(settings), host="0.0.0.0", port=settings.service_port)
