"""Analytics Service: テーブル定義"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS order_metrics (
        id           BIGSERIAL PRIMARY KEY,
        event_id     VARCHAR(36) NOT NULL,
        order_id     VARCHAR(36) NOT NULL,
        customer_id  VARCHAR(64) NOT NULL,
        product_id   VARCHAR(64) NOT NULL,
        quantity     INTEGER NOT NULL,
        total_amount NUMERIC(12, 2) NOT NULL,
        processed_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_order_metrics_event_id ON order_metrics (event_id)",
    "CREATE INDEX IF NOT EXISTS idx_order_metrics_order_id ON order_metrics (order_id)",
    "CREATE INDEX IF NOT EXISTS idx_order_metrics_processed_at ON order_metrics (processed_at)",
]


async def init_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        for statement in STATEMENTS:
            await conn.execute(text(statement))
