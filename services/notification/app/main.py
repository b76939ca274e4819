"""
Notification Worker: FastAPI エントリーポイント

HTTP はヘルスチェックと送信履歴の参照だけ。本体はバックグラウンドの
サブスクライバで、order.created を受けるたびに通知を送る。
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from services.common.config import Settings
from services.common.consumer import RetryPolicy, log_task_failure
from services.common.health import check_health, task_check
from services.common.http import register_error_handlers
from services.common.log import configure_logging
from services.common.messaging import EventChannel

from .notifier import Notifier
from .subscriber import QUEUE_NAME, run_subscriber

logger = logging.getLogger(__name__)

SERVICE_NAME = "notification-worker"


@dataclass
class NotificationComponents:
    channel: EventChannel
    notifier: Notifier


def get_components(request: Request) -> NotificationComponents:
    return request.app.state.components


router = APIRouter()


@router.get("/notifications")
async def list_notifications(
    order_id: str | None = None,
    components: NotificationComponents = Depends(get_components),
):
    """送信済み通知 (直近分)"""
    return [r.to_dict() for r in components.notifier.records(order_id)]


@router.get("/health")
async def health(
    request: Request,
    components: NotificationComponents = Depends(get_components),
):
    checks = {"mq": components.channel.health_check}
    subscriber_task = getattr(request.app.state, "subscriber_task", None)
    if subscriber_task is not None:
        checks["consumer"] = task_check(subscriber_task)
    status_code, body = await check_health(SERVICE_NAME, checks)
    return JSONResponse(status_code=status_code, content=body)


def create_app(
    settings: Settings | None = None,
    components: NotificationComponents | None = None,
    *,
    start_consumer: bool = True,
) -> FastAPI:
    settings = settings or Settings.from_env(
        SERVICE_NAME, default_port=8082, default_queue=QUEUE_NAME
    )
    policy = RetryPolicy(
        max_deliveries=settings.max_deliveries,
        requeue_malformed=settings.requeue_malformed,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = components is None
        if owned:
            channel = EventChannel(
                settings.rabbitmq_url,
                exchange_name=settings.exchange_name,
                routing_key=settings.routing_key,
                dead_letter_exchange=settings.dead_letter_exchange,
                connect_attempts=settings.broker_connect_attempts,
                connect_delay=settings.broker_connect_delay,
            )
            await channel.connect()
            app.state.components = NotificationComponents(
                channel=channel,
                notifier=Notifier(delay_seconds=settings.notification_delay),
            )
        comps: NotificationComponents = app.state.components

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
                    await comps.channel.close()
                raise
            subscriber_task = asyncio.create_task(
                run_subscriber(
                    subscription,
                    comps.notifier,
                    shutdown_event,
                    policy=policy,
                ),
                name="notification-subscriber",
            )
            subscriber_task.add_done_callback(log_task_failure)
        app.state.subscriber_task = subscriber_task
        yield
        shutdown_event.set()
        if subscriber_task is not None:
            await asyncio.gather(subscriber_task, return_exceptions=True)
        if owned:
            await comps.channel.close()

    app = FastAPI(title="Notification Worker", lifespan=lifespan)
    app.state.settings = settings
    if components is not None:
        app.state.components = components
    register_error_handlers(app)
    app.include_router(router)
    return app


def run() -> None:
    settings = Settings.from_env(SERVICE_NAME, default_port=8082, default_queue=QUEUE_NAME)
    configure_logging(settings.log_level, SERVICE_NAME)
    uvicorn.run(create_app(settings), host="0.0.0.0", port=settings.service_port)
