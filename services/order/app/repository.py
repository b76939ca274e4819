"""
Order Service: Order Store

PostgreSQL 上の orders テーブルと order_outbox テーブルを扱う。

注文の INSERT と OrderCreated イベントの outbox 行の INSERT は同じ
トランザクションで行う (Outbox パターン)。これにより「注文は保存されたが
イベントは記録されていない」という状態が起こらない。発行そのものは
非同期に行い、発行に成功した outbox 行に published_at を付ける。
"""

import json
import logging
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from services.common import errors
from services.common.events import OrderCreatedEvent, decode_event

from .models import Order, OrderStatus

logger = logging.getLogger(__name__)

_DB_ERRORS = (SQLAlchemyError, OSError)

# PostgreSQL SQLSTATE
_UNIQUE_VIOLATION = "23505"


def _integrity_message(order_id: str, exc: IntegrityError) -> str:
    code = getattr(exc.orig, "sqlstate", None) or getattr(exc.orig, "pgcode", None)
    if code == _UNIQUE_VIOLATION:
        return f"order {order_id} already exists; order was not created"
    return "order violates store constraints; order was not created"


_ORDER_COLUMNS = (
    "id, customer_id, product_id, quantity, total_amount, status, created_at, updated_at"
)


def _row_to_order(row) -> Order:
    return Order(
        id=str(row.id),
        customer_id=row.customer_id,
        product_id=row.product_id,
        quantity=row.quantity,
        total_amount=Decimal(str(row.total_amount)),
        status=OrderStatus(row.status),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class OrderRepository:
    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    async def create(self, order: Order, event: OrderCreatedEvent) -> None:
        """注文と outbox 行を1トランザクションで INSERT する。"""
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    await session.execute(
                        text(f"""
                            INSERT INTO orders ({_ORDER_COLUMNS})
                            VALUES
                                (:id, :customer_id, :product_id, :quantity,
                                 :total_amount, :status, :created_at, :updated_at)
                        """),
                        {
                            "id": order.id,
                            "customer_id": order.customer_id,
                            "product_id": order.product_id,
                            "quantity": order.quantity,
                            "total_amount": order.total_amount,
                            "status": order.status.value,
                            "created_at": order.created_at,
                            "updated_at": order.updated_at,
                        },
                    )
                    await session.execute(
                        text("""
                            INSERT INTO order_outbox
                                (event_id, order_id, event_type, payload, created_at)
                            VALUES
                                (:event_id, :order_id, :event_type, :payload, :created_at)
                        """),
                        {
                            "event_id": event.event_id,
                            "order_id": order.id,
                            "event_type": event.event_type,
                            "payload": event.model_dump_json(),
                            "created_at": order.created_at,
                        },
                    )
        except IntegrityError as exc:
            logger.error("Order %s rejected by the store: %s", order.id, exc.orig)
            raise errors.PersistenceError(_integrity_message(order.id, exc)) from exc
        except _DB_ERRORS as exc:
            logger.error("Failed to insert order %s: %s", order.id, exc)
            raise errors.PersistenceError(
                "failed to create order: order was not created"
            ) from exc

    async def get(self, order_id: str) -> Order | None:
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    text(f"SELECT {_ORDER_COLUMNS} FROM orders WHERE id = :id"),
                    {"id": order_id},
                )
                row = result.fetchone()
        except _DB_ERRORS as exc:
            logger.error("Failed to read order %s: %s", order_id, exc)
            raise errors.PersistenceError("failed to get order") from exc
        if not row:
            return None
        return _row_to_order(row)

    async def list_orders(self, limit: int, offset: int) -> list[Order]:
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    text(f"""
                        SELECT {_ORDER_COLUMNS}
                        FROM orders
                        ORDER BY created_at DESC
                        LIMIT :limit OFFSET :offset
                    """),
                    {"limit": limit, "offset": offset},
                )
                rows = result.fetchall()
        except _DB_ERRORS as exc:
            logger.error("Failed to list orders: %s", exc)
            raise errors.PersistenceError("failed to list orders") from exc
        return [_row_to_order(row) for row in rows]

    # ── Outbox ───────────────────────────────────

    async def pending_events(
        self, older_than: datetime, limit: int = 100
    ) -> list[OrderCreatedEvent]:
        """older_than より前に作られ、まだ発行されていないイベント。"""
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    text("""
                        SELECT event_id, payload
                        FROM order_outbox
                        WHERE published_at IS NULL AND created_at <= :cutoff
                        ORDER BY created_at ASC
                        LIMIT :limit
                    """),
                    {"cutoff": older_than, "limit": limit},
                )
                rows = result.fetchall()
        except _DB_ERRORS as exc:
            raise errors.PersistenceError("failed to read outbox") from exc

        events = []
        for row in rows:
            payload = row.payload if isinstance(row.payload, str) else json.dumps(row.payload)
            try:
                events.append(decode_event(payload.encode("utf-8")))
            except errors.ParseError as exc:
                logger.error("Skipping unreadable outbox row %s: %s", row.event_id, exc)
        return events

    async def mark_published(self, event_id: str) -> None:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    await session.execute(
                        text("""
                            UPDATE order_outbox
                            SET published_at = :now
                            WHERE event_id = :event_id AND published_at IS NULL
                        """),
                        {"event_id": event_id, "now": datetime.now(timezone.utc)},
                    )
        except _DB_ERRORS as exc:
            raise errors.PersistenceError(
                f"failed to mark event {event_id} published"
            ) from exc

    async def ping(self) -> None:
        async with self._session_factory() as session:
            await session.execute(text("SELECT 1"))
