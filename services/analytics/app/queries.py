"""
Analytics Service: クエリハンドラ

サマリーは cache-aside。キャッシュにあればそれを返し、なければ
order_metrics の全行から件数・合計・平均を再計算してキャッシュに書き戻す。
"""

import logging

from services.common import errors

from .cache import SummaryCache
from .models import AnalyticsSummary
from .repository import MetricsRepository

logger = logging.getLogger(__name__)


async def get_summary(
    repository: MetricsRepository, cache: SummaryCache
) -> AnalyticsSummary:
    try:
        summary = await cache.get()
    except errors.TransportError as exc:
        logger.warning("Summary cache unavailable: %s", exc)
        summary = None
    if summary is not None:
        logger.debug("Cache hit for analytics summary")
        return summary

    logger.debug("Cache miss for analytics summary, computing from database")
    summary = await repository.summarize()

    try:
        await cache.set(summary)
    except errors.TransportError as exc:
        logger.warning("Failed to cache summary: %s", exc)
    return summary
