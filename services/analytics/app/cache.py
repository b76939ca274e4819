"""Analytics Service: サマリーキャッシュ (Redis)"""

import logging

import pydantic
import redis.asyncio as aioredis
from redis.exceptions import RedisError

from services.common import errors

from .models import AnalyticsSummary

logger = logging.getLogger(__name__)

SUMMARY_KEY = "analytics:summary"
SUMMARY_TTL_SECONDS = 5 * 60


class SummaryCache:
    def __init__(
        self, redis: aioredis.Redis, ttl_seconds: int = SUMMARY_TTL_SECONDS
    ) -> None:
        self.redis = redis
        self.ttl_seconds = ttl_seconds

    async def get(self) -> AnalyticsSummary | None:
        try:
            data = await self.redis.get(SUMMARY_KEY)
        except RedisError as exc:
            raise errors.TransportError(f"failed to get summary from cache: {exc}") from exc
        if data is None:
            return None
        try:
            return AnalyticsSummary.model_validate_json(data)
        except pydantic.ValidationError:
            logger.warning("Discarding unreadable cached summary")
            return None

    async def set(self, summary: AnalyticsSummary) -> None:
        try:
            await self.redis.set(SUMMARY_KEY, summary.model_dump_json(), ex=self.ttl_seconds)
        except RedisError as exc:
            raise errors.TransportError(f"failed to set summary in cache: {exc}") from exc

    async def invalidate(self) -> None:
        try:
            await self.redis.delete(SUMMARY_KEY)
        except RedisError as exc:
            raise errors.TransportError(
                f"failed to invalidate summary cache: {exc}"
            ) from exc

    async def ping(self) -> None:
        await self.redis.ping()
