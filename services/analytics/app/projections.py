"""
Analytics Service: イベント投影 (Projection)

OrderCreated を受け取るたびに order_metrics へ1行追記し、
サマリーキャッシュを無条件に無効化する。次の GetSummary で再計算される。

再配送されたイベントはもう一度追記される (at-least-once)。
deduplicate=True のときだけ、同じ event_id の行がすでにあればスキップする。
"""

import logging

from services.common import errors
from services.common.events import OrderCreatedEvent

from .cache import SummaryCache
from .models import AggregateMetric
from .repository import MetricsRepository

logger = logging.getLogger(__name__)


async def handle_order_created(
    repository: MetricsRepository,
    cache: SummaryCache,
    event: OrderCreatedEvent,
    *,
    deduplicate: bool = False,
) -> AggregateMetric | None:
    """
    OrderCreated イベントの投影。

    ストアへの書き込みに失敗したら HandlerError を送出する
    (コンシューマループが requeue する)。キャッシュ無効化の失敗はログだけ。
    """
    try:
        if deduplicate and await repository.has_event(event.event_id):
            logger.info(
                "Skipping already processed event %s for order %s",
                event.event_id,
                event.order_id,
            )
            return None

        metric = AggregateMetric.from_event(event)
        await repository.save_metric(metric)
    except errors.PersistenceError as exc:
        raise errors.HandlerError(
            f"failed to project order {event.order_id}: {exc}"
        ) from exc

    try:
        await cache.invalidate()
    except errors.TransportError as exc:
        logger.warning("Failed to invalidate summary cache: %s", exc)

    logger.info(
        "Recorded order metric: order_id=%s amount=%s",
        event.order_id,
        event.total_amount,
    )
    return metric
