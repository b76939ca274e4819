"""
Order Service: Order Cache (Redis)

最近読み書きした注文を TTL 付きで保持する。キャッシュは助言的な
ものなので、呼び出し側は TransportError を受けたらログに残して先へ進む。
"""

import logging

import pydantic
import redis.asyncio as aioredis
from redis.exceptions import RedisError

from services.common import errors

from .models import Order

logger = logging.getLogger(__name__)

ORDER_KEY_PREFIX = "order:"
ORDER_TTL_SECONDS = 15 * 60


class OrderCache:
    def __init__(self, redis: aioredis.Redis, ttl_seconds: int = ORDER_TTL_SECONDS) -> None:
        self.redis = redis
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def key(order_id: str) -> str:
        return f"{ORDER_KEY_PREFIX}{order_id}"

    async def get(self, order_id: str) -> Order | None:
        """キャッシュにあれば Order を返す。なければ None。"""
        try:
            data = await self.redis.get(self.key(order_id))
        except RedisError as exc:
            raise errors.TransportError(f"failed to get order from cache: {exc}") from exc
        if data is None:
            return None
        try:
            return Order.model_validate_json(data)
        except pydantic.ValidationError:
            # 壊れたエントリはミス扱い。次の set で上書きされる
            logger.warning("Discarding unreadable cache entry for order %s", order_id)
            return None

    async def set(self, order: Order) -> None:
        try:
            await self.redis.set(
                self.key(order.id), order.model_dump_json(), ex=self.ttl_seconds
            )
        except RedisError as exc:
            raise errors.TransportError(f"failed to set order in cache: {exc}") from exc

    async def delete(self, order_id: str) -> None:
        try:
            await self.redis.delete(self.key(order_id))
        except RedisError as exc:
            raise errors.TransportError(
                f"failed to delete order from cache: {exc}"
            ) from exc

    async def ping(self) -> None:
        await self.redis.ping()
