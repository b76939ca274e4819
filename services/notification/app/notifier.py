"""
Notification Worker: 通知送信 (シミュレーション)

実際のメール / SMS ゲートウェイの代わりに、一定時間待ってから
通知内容をログに出す。冪等キーも外部からの確認もないので、
再配送されたイベントは重複した通知になる。

送った通知は直近 history_size 件をメモリに保持し、/notifications で参照できる。
"""

import asyncio
import logging
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone

from services.common.events import OrderCreatedEvent

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NotificationRecord:
    event_id: str
    order_id: str
    customer_id: str
    message: str
    channel: str = "email"
    sent_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        data = asdict(self)
        data["sent_at"] = self.sent_at.isoformat()
        return data


class Notifier:
    def __init__(self, delay_seconds: float = 0.5, history_size: int = 1000) -> None:
        self.delay_seconds = delay_seconds
        self._history: deque[NotificationRecord] = deque(maxlen=history_size)

    async def notify(self, event: OrderCreatedEvent) -> NotificationRecord:
        await asyncio.sleep(self.delay_seconds)

        message = (
            f"Order {event.order_id} created: product {event.product_id}, "
            f"quantity {event.quantity}, total ${event.total_amount}"
        )
        record = NotificationRecord(
            event_id=event.event_id,
            order_id=event.order_id,
            customer_id=event.customer_id,
            message=message,
        )
        self._history.append(record)
        logger.info("[NOTIFICATION] to customer %s: %s", event.customer_id, message)
        return record

    def records(self, order_id: str | None = None) -> list[NotificationRecord]:
        if order_id is None:
            return list(self._history)
        return [r for r in self._history if r.order_id == order_id]
