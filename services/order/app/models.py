"""
Order Service: 注文モデル

Order は作成時に ID が振られ、以後 ID は変わらない (frozen)。
状態遷移は単調で、pending に戻ることはない:

    PENDING → CONFIRMED
    PENDING → CANCELLED
    CONFIRMED → CANCELLED

Order Store が正本 (system of record) で、Order Cache は TTL で消える派生コピー。
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict

from services.common import errors
from services.common.events import Money, OrderCreatedEvent


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


_ALLOWED_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.CONFIRMED, OrderStatus.CANCELLED},
    OrderStatus.CONFIRMED: {OrderStatus.CANCELLED},
    OrderStatus.CANCELLED: set(),
}


class Order(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    customer_id: str
    product_id: str
    quantity: int
    total_amount: Money
    status: OrderStatus
    created_at: datetime
    updated_at: datetime

    def transition(self, status: OrderStatus, now: datetime | None = None) -> "Order":
        """新しい状態の Order を返す。逆戻りする遷移は ValidationError。"""
        if status not in _ALLOWED_TRANSITIONS[self.status]:
            raise errors.ValidationError(
                "status",
                f"cannot transition order from {self.status.value} to {status.value}",
            )
        return self.model_copy(
            update={"status": status, "updated_at": now or datetime.now(timezone.utc)}
        )

    def to_event(self) -> OrderCreatedEvent:
        return OrderCreatedEvent(
            order_id=self.id,
            customer_id=self.customer_id,
            product_id=self.product_id,
            quantity=self.quantity,
            total_amount=self.total_amount,
            status=self.status.value,
            created_at=self.created_at,
        )


# ── Request Models ───────────────────────────────


class CreateOrderRequest(BaseModel):
    """
    注文作成リクエスト。

    値の妥当性 (空文字、0 以下) はここでは検査しない。
    commands.validate_request がフィールド名付きの ValidationError を返す。
    """

    customer_id: str = ""
    product_id: str = ""
    quantity: int = 0
    total_amount: Decimal = Decimal("0")
