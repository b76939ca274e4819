"""
Analytics Service: 集計モデル

AggregateMetric は処理したイベント1件につき1行。追記のみで、更新も削除もしない。
AnalyticsSummary は行の集計から都度計算する派生値で、短い TTL でキャッシュされる。
"""

from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal

from pydantic import BaseModel, ConfigDict, Field

from services.common.events import Money, OrderCreatedEvent

CENTS = Decimal("0.01")


class AggregateMetric(BaseModel):
    model_config = ConfigDict(frozen=True)

    event_id: str
    order_id: str
    customer_id: str
    product_id: str
    quantity: int
    total_amount: Money
    processed_at: datetime

    @classmethod
    def from_event(
        cls, event: OrderCreatedEvent, processed_at: datetime | None = None
    ) -> "AggregateMetric":
        return cls(
            event_id=event.event_id,
            order_id=event.order_id,
            customer_id=event.customer_id,
            product_id=event.product_id,
            quantity=event.quantity,
            total_amount=event.total_amount,
            processed_at=processed_at or datetime.now(timezone.utc),
        )


class AnalyticsSummary(BaseModel):
    total_orders: int = 0
    total_revenue: Money = Decimal("0.00")
    average_order_size: Money = Decimal("0.00")
    last_updated: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_totals(
        cls, count: int, revenue: Decimal, last_updated: datetime | None = None
    ) -> "AnalyticsSummary":
        revenue = Decimal(revenue).quantize(CENTS, rounding=ROUND_HALF_UP)
        average = (
            (revenue / count).quantize(CENTS, rounding=ROUND_HALF_UP)
            if count
            else Decimal("0.00")
        )
        return cls(
            total_orders=count,
            total_revenue=revenue,
            average_order_size=average,
            last_updated=last_updated or datetime.now(timezone.utc),
        )
