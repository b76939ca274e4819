"""
Analytics Service: 集計ストア

order_metrics テーブルへの追記と、全行からのサマリー計算。
Order Service のストアとは独立しており、結果整合でしか一致しない。
"""

import logging
from decimal import Decimal

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from services.common import errors

from .models import AggregateMetric, AnalyticsSummary

logger = logging.getLogger(__name__)

_DB_ERRORS = (SQLAlchemyError, OSError)


class MetricsRepository:
    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    async def save_metric(self, metric: AggregateMetric) -> None:
        """1行追記する。event_id の一意制約は置かない (再配送は重複行になる)。"""
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    await session.execute(
                        text("""
                            INSERT INTO order_metrics
                                (event_id, order_id, customer_id, product_id,
                                 quantity, total_amount, processed_at)
                            VALUES
                                (:event_id, :order_id, :customer_id, :product_id,
                                 :quantity, :total_amount, :processed_at)
                        """),
                        metric.model_dump(),
                    )
        except _DB_ERRORS as exc:
            raise errors.PersistenceError(
                f"failed to save order metric for order {metric.order_id}"
            ) from exc

    async def has_event(self, event_id: str) -> bool:
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    text("SELECT 1 FROM order_metrics WHERE event_id = :event_id LIMIT 1"),
                    {"event_id": event_id},
                )
                return result.fetchone() is not None
        except _DB_ERRORS as exc:
            raise errors.PersistenceError("failed to look up processed event") from exc

    async def summarize(self) -> AnalyticsSummary:
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    text("""
                        SELECT
                            COUNT(*) AS total_orders,
                            COALESCE(SUM(total_amount), 0) AS total_revenue
                        FROM order_metrics
                    """)
                )
                row = result.fetchone()
        except _DB_ERRORS as exc:
            raise errors.PersistenceError("failed to compute summary") from exc
        return AnalyticsSummary.from_totals(
            int(row.total_orders), Decimal(str(row.total_revenue))
        )

    async def ping(self) -> None:
        async with self._session_factory() as session:
            await session.execute(text("SELECT 1"))
