"""
Order Service: クエリハンドラ (Read 側)

単一注文の取得は cache-aside。一覧はキャッシュを通さない。
"""

import logging

from services.common import errors

from .cache import OrderCache
from .models import Order
from .repository import OrderRepository

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 10
MAX_LIMIT = 100


def _to_int(value: int | str | None) -> int | None:
    if value is None or isinstance(value, int):
        return value
    try:
        return int(value.strip())
    except ValueError:
        return None


def clamp_page(
    limit: int | str | None, offset: int | str | None
) -> tuple[int, int]:
    """
    limit を [1, 100] (既定 10)、offset を [0, ∞) に丸める。
    数値として読めないクエリ文字列はエラーにせず既定値を使う。
    """
    limit = _to_int(limit)
    offset = _to_int(offset)
    if limit is None or limit <= 0:
        limit = DEFAULT_LIMIT
    limit = min(limit, MAX_LIMIT)
    if offset is None or offset < 0:
        offset = 0
    return limit, offset


async def get_order(
    repository: OrderRepository, cache: OrderCache, order_id: str
) -> Order:
    """
    キャッシュを先に見る。ヒットすればストアは読まない。
    ミスならストアから読み、見つかればキャッシュに入れてから返す。
    """
    try:
        order = await cache.get(order_id)
    except errors.TransportError as exc:
        logger.warning("Cache unavailable for order %s: %s", order_id, exc)
        order = None
    if order is not None:
        logger.debug("Cache hit for order: %s", order_id)
        return order

    logger.debug("Cache miss for order: %s, fetching from database", order_id)
    order = await repository.get(order_id)
    if order is None:
        raise errors.NotFoundError(f"order {order_id} not found")

    try:
        await cache.set(order)
    except errors.TransportError as exc:
        logger.warning("Failed to cache order %s: %s", order_id, exc)
    return order


async def list_orders(
    repository: OrderRepository,
    limit: int | str | None = None,
    offset: int | str | None = None,
) -> list[Order]:
    limit, offset = clamp_page(limit, offset)
    return await repository.list_orders(limit, offset)
