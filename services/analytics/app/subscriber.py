"""
Analytics Service: イベントサブスクライバー

analytics.orders キューを購読し、受信したイベントを集計ストアに投影する。
Redis Pub/Sub と違い、キューは durable なのでサービス停止中の
イベントも失われず、再起動後に処理される。

キューの宣言と購読開始は lifespan 側で行う (失敗したら起動させない)。
ここでは開始済みの購読 を受け取って消費し続けるだけ。
"""

import asyncio
import functools
import logging

from services.common.consumer import RetryPolicy, Subscriber, run_consumer

from . import projections
from .cache import SummaryCache
from .repository import MetricsRepository

logger = logging.getLogger(__name__)

QUEUE_NAME = "analytics.orders"


async def run_subscriber(
    subscription: Subscriber,
    repository: MetricsRepository,
    cache: SummaryCache,
    shutdown_event: asyncio.Event,
    *,
    policy: RetryPolicy | None = None,
    deduplicate: bool = False,
    poll_interval: float = 1.0,
) -> None:
    """shutdown_event がセットされるまで order.created を投影し続ける。"""
    handler = functools.partial(
        projections.handle_order_created,
        repository,
        cache,
        deduplicate=deduplicate,
    )
    await run_consumer(
        subscription,
        handler,
        shutdown_event,
        policy=policy or RetryPolicy(),
        consumer_name="analytics",
        poll_interval=poll_interval,
    )
