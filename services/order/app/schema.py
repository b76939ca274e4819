"""Order Service: テーブル定義 (起動時に CREATE TABLE IF NOT EXISTS を流す)"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS orders (
        id           VARCHAR(36) PRIMARY KEY,
        customer_id  VARCHAR(64) NOT NULL,
        product_id   VARCHAR(64) NOT NULL,
        quantity     INTEGER NOT NULL CHECK (quantity > 0),
        total_amount NUMERIC(12, 2) NOT NULL CHECK (total_amount > 0),
        status       VARCHAR(20) NOT NULL,
        created_at   TIMESTAMPTZ NOT NULL,
        updated_at   TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_orders_created_at ON orders (created_at DESC)",
    "CREATE INDEX IF NOT EXISTS idx_orders_customer_id ON orders (customer_id)",
    """
    CREATE TABLE IF NOT EXISTS order_outbox (
        event_id     VARCHAR(36) PRIMARY KEY,
        order_id     VARCHAR(36) NOT NULL REFERENCES orders (id),
        event_type   VARCHAR(64) NOT NULL,
        payload      TEXT NOT NULL,
        created_at   TIMESTAMPTZ NOT NULL,
        published_at TIMESTAMPTZ
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_order_outbox_unpublished
        ON order_outbox (created_at) WHERE published_at IS NULL
    """,
]


async def init_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        for statement in STATEMENTS:
            await conn.execute(text(statement))
