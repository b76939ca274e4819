"""
Order Service: コマンドハンドラ (Write 側)

注文作成の流れ:

1. リクエストを検証する (違反はフィールド名付き ValidationError、書き込みなし)
   Order Store の列に収まらない値 (桁あふれ、長すぎる ID) もここで弾く
2. Order Store に同期で保存する (失敗したら PersistenceError で注文は作られない)
3. Order Cache に書く (失敗してもログだけ。保存はロールバックしない)
4. OrderCreated イベントをリクエストから切り離して発行する
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

from services.common import errors

from .cache import OrderCache
from .models import CreateOrderRequest, Order, OrderStatus
from .publisher import EventPublisher
from .repository import OrderRepository

logger = logging.getLogger(__name__)


# Order Store の列定義 (schema.py) に合わせた上限
MAX_REFERENCE_LENGTH = 64
MAX_QUANTITY = 2**31 - 1
MAX_TOTAL_AMOUNT = Decimal("9999999999.99")
CENT = Decimal("0.01")


def _validate_reference(field: str, value: str) -> None:
    if not value or not value.strip():
        raise errors.ValidationError(field, f"{field} is required")
    if len(value) > MAX_REFERENCE_LENGTH:
        raise errors.ValidationError(
            field, f"{field} must be at most {MAX_REFERENCE_LENGTH} characters"
        )


def validate_request(req: CreateOrderRequest) -> None:
    _validate_reference("customer_id", req.customer_id)
    _validate_reference("product_id", req.product_id)
    if req.quantity <= 0:
        raise errors.ValidationError("quantity", "quantity must be greater than 0")
    if req.quantity > MAX_QUANTITY:
        raise errors.ValidationError(
            "quantity", f"quantity must be at most {MAX_QUANTITY}"
        )
    amount = req.total_amount
    if not amount.is_finite() or amount <= Decimal("0"):
        raise errors.ValidationError(
            "total_amount", "total_amount must be greater than 0"
        )
    if amount > MAX_TOTAL_AMOUNT:
        raise errors.ValidationError(
            "total_amount", f"total_amount must be at most {MAX_TOTAL_AMOUNT}"
        )
    if amount != amount.quantize(CENT):
        raise errors.ValidationError(
            "total_amount", "total_amount must have at most 2 decimal places"
        )


async def create_order(
    repository: OrderRepository,
    cache: OrderCache,
    publisher: EventPublisher,
    req: CreateOrderRequest,
) -> Order:
    """注文作成コマンド"""
    validate_request(req)

    now = datetime.now(timezone.utc)
    order = Order(
        id=str(uuid4()),
        customer_id=req.customer_id,
        product_id=req.product_id,
        quantity=req.quantity,
        total_amount=req.total_amount.quantize(CENT),
        status=OrderStatus.PENDING,
        created_at=now,
        updated_at=now,
    )
    event = order.to_event()

    # 1. 保存 (注文 + outbox 行)
    await repository.create(order, event)

    # 2. キャッシュ (助言的)
    try:
        await cache.set(order)
    except errors.TransportError as exc:
        logger.warning("Failed to cache order %s: %s", order.id, exc)

    # 3. 発行 (リクエストから切り離す)
    publisher.publish_detached(event)

    logger.info("Order created successfully: %s", order.id)
    return order
