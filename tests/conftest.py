"""
テスト共通フィクスチャ

PostgreSQL / Redis / RabbitMQ の代わりにメモリ上のテストダブルを使う。
各ダブルは本物のアダプタと同じメソッド名・同じ例外 (PersistenceError /
TransportError / redis.exceptions.ConnectionError) でふるまう。
"""

import asyncio
from datetime import datetime, timezone
from decimal import Decimal

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from services.analytics.app.cache import SummaryCache
from services.analytics.app.models import AggregateMetric, AnalyticsSummary
from services.common import errors
from services.common.consumer import DELIVERY_COUNT_HEADER
from services.common.events import OrderCreatedEvent, encode_event
from services.notification.app.notifier import Notifier
from services.order.app.cache import OrderCache
from services.order.app.models import Order
from services.order.app.publisher import EventPublisher, OutboxRelay


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.01) -> None:
    """predicate() が真になるまで待つ。タイムアウトしたら AssertionError。"""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


def make_event(**overrides) -> OrderCreatedEvent:
    data = {
        "order_id": "order-1",
        "customer_id": "customer-1",
        "product_id": "product-1",
        "quantity": 2,
        "total_amount": Decimal("99.99"),
        "status": "pending",
        "created_at": datetime(2026, 1, 1, tzinfo=timezone.utc),
    }
    data.update(overrides)
    return OrderCreatedEvent(**data)


# ── Redis ────────────────────────────────────────


class FakeRedis:
    """redis.asyncio.Redis (decode_responses=True) の必要部分だけ。"""

    def __init__(self) -> None:
        self.data: dict[str, str] = {}
        self.ttls: dict[str, int | None] = {}
        self.fail = False

    def _check(self) -> None:
        if self.fail:
            raise RedisConnectionError("redis is down")

    async def get(self, key: str) -> str | None:
        self._check()
        return self.data.get(key)

    async def set(self, key: str, value: str, ex: int | None = None) -> bool:
        self._check()
        self.data[key] = value
        self.ttls[key] = ex
        return True

    async def delete(self, *keys: str) -> int:
        self._check()
        removed = 0
        for key in keys:
            if self.data.pop(key, None) is not None:
                removed += 1
            self.ttls.pop(key, None)
        return removed

    async def ping(self) -> bool:
        self._check()
        return True

    async def aclose(self) -> None:
        pass


# ── Order Store ──────────────────────────────────


class InMemoryOrderRepository:
    def __init__(self) -> None:
        self.orders: dict[str, Order] = {}
        self.outbox: dict[str, dict] = {}
        self.get_calls = 0
        self.fail = False

    def _check(self) -> None:
        if self.fail:
            raise errors.PersistenceError("failed to create order: order was not created")

    async def create(self, order: Order, event: OrderCreatedEvent) -> None:
        self._check()
        if order.id in self.orders:
            raise errors.PersistenceError(f"order {order.id} already exists")
        self.orders[order.id] = order
        self.outbox[event.event_id] = {
            "event": event,
            "created_at": order.created_at,
            "published_at": None,
        }

    async def get(self, order_id: str) -> Order | None:
        self.get_calls += 1
        self._check()
        return self.orders.get(order_id)

    async def list_orders(self, limit: int, offset: int) -> list[Order]:
        self._check()
        # 同時刻の注文は後から挿入したものを先に並べる
        indexed = list(enumerate(self.orders.values()))
        indexed.sort(key=lambda item: (item[1].created_at, item[0]), reverse=True)
        return [order for _, order in indexed[offset : offset + limit]]

    async def pending_events(
        self, older_than: datetime, limit: int = 100
    ) -> list[OrderCreatedEvent]:
        self._check()
        rows = [
            row
            for row in self.outbox.values()
            if row["published_at"] is None and row["created_at"] <= older_than
        ]
        rows.sort(key=lambda row: row["created_at"])
        return [row["event"] for row in rows[:limit]]

    async def mark_published(self, event_id: str) -> None:
        self._check()
        row = self.outbox.get(event_id)
        if row is not None and row["published_at"] is None:
            row["published_at"] = datetime.now(timezone.utc)

    def unpublished(self) -> list[str]:
        return [eid for eid, row in self.outbox.items() if row["published_at"] is None]

    async def ping(self) -> None:
        self._check()


# ── Aggregate Store ──────────────────────────────


class InMemoryMetricsRepository:
    def __init__(self) -> None:
        self.rows: list[AggregateMetric] = []
        self.summarize_calls = 0
        self.fail = False

    def _check(self) -> None:
        if self.fail:
            raise errors.PersistenceError("database is down")

    async def save_metric(self, metric: AggregateMetric) -> None:
        self._check()
        self.rows.append(metric)

    async def has_event(self, event_id: str) -> bool:
        self._check()
        return any(row.event_id == event_id for row in self.rows)

    async def summarize(self) -> AnalyticsSummary:
        self.summarize_calls += 1
        self._check()
        revenue = sum((row.total_amount for row in self.rows), Decimal("0"))
        return AnalyticsSummary.from_totals(len(self.rows), revenue)

    async def ping(self) -> None:
        self._check()


# ── Event Channel ────────────────────────────────


class FakeMessage:
    """aio_pika.IncomingMessage 相当。nack(requeue=True) で x-delivery-count を進めて戻す。"""

    def __init__(self, queue: "FakeQueue", body: bytes, headers: dict | None = None) -> None:
        self.queue = queue
        self.body = body
        self.headers = dict(headers or {})
        self.settled: str | None = None

    async def ack(self) -> None:
        self.settled = "ack"
        self.queue.acked.append(self)

    async def nack(self, requeue: bool = True) -> None:
        self.settled = "requeue" if requeue else "reject"
        if requeue:
            count = int(self.headers.get(DELIVERY_COUNT_HEADER, 0)) + 1
            self.queue.put(self.body, {**self.headers, DELIVERY_COUNT_HEADER: count})
        else:
            self.queue.dead.append(self)


class FakeQueue:
    def __init__(self, name: str) -> None:
        self.name = name
        self.inbox: asyncio.Queue[FakeMessage] = asyncio.Queue()
        self.acked: list[FakeMessage] = []
        self.dead: list[FakeMessage] = []
        self.deliveries = 0

    def put(self, body: bytes, headers: dict | None = None) -> FakeMessage:
        message = FakeMessage(self, body, headers)
        self.inbox.put_nowait(message)
        return message

    @property
    def ready(self) -> int:
        return self.inbox.qsize()


class FakeSubscription:
    def __init__(self, queue: FakeQueue) -> None:
        self.queue = queue
        self.cancelled = False
        self.error: Exception | None = None

    @property
    def name(self) -> str:
        return self.queue.name

    async def get(self, timeout: float) -> FakeMessage | None:
        # 実ブローカー同様、受信のたびにイベントループへ制御を返す
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        try:
            message = await asyncio.wait_for(self.queue.inbox.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None
        self.queue.deliveries += 1
        return message

    async def cancel(self) -> None:
        self.cancelled = True


class InMemoryBroker:
    """EventChannel のテストダブル。バインド済みの全キューへ fan-out する。"""

    def __init__(self) -> None:
        self.queues: dict[str, FakeQueue] = {}
        self.published: list[OrderCreatedEvent] = []
        self.subscriptions: list[FakeSubscription] = []
        self.max_deliveries: dict[str, int] = {}
        self.connected = False
        self.fail = False

    def declare(self, queue_name: str) -> FakeQueue:
        if queue_name not in self.queues:
            self.queues[queue_name] = FakeQueue(queue_name)
        return self.queues[queue_name]

    async def connect(self) -> None:
        if self.fail:
            raise errors.TransportError("failed to connect to RabbitMQ")
        self.connected = True

    async def close(self) -> None:
        self.connected = False

    async def health_check(self) -> None:
        if self.fail or not self.connected:
            raise errors.TransportError("not connected")

    async def publish(self, event: OrderCreatedEvent) -> None:
        if self.fail:
            raise errors.TransportError(f"failed to publish event {event.event_id}")
        self.published.append(event)
        body = encode_event(event)
        for queue in self.queues.values():
            queue.put(body)

    async def subscribe(self, queue_name: str, *, max_deliveries: int = 0) -> FakeSubscription:
        if self.fail:
            raise errors.TransportError(f"failed to subscribe {queue_name}")
        self.max_deliveries[queue_name] = max_deliveries
        subscription = FakeSubscription(self.declare(queue_name))
        self.subscriptions.append(subscription)
        return subscription


# ── Fixtures ─────────────────────────────────────


@pytest.fixture
def redis():
    return FakeRedis()


@pytest.fixture
def broker():
    return InMemoryBroker()


@pytest.fixture
def order_repository():
    return InMemoryOrderRepository()


@pytest.fixture
def order_cache(redis):
    return OrderCache(redis)


@pytest.fixture
async def publisher(broker, order_repository):
    publisher = EventPublisher(broker, order_repository)
    yield publisher
    await publisher.drain()


@pytest.fixture
def relay(order_repository, publisher):
    return OutboxRelay(order_repository, publisher, poll_interval=0.01, grace_seconds=0)


@pytest.fixture
def metrics_repository():
    return InMemoryMetricsRepository()


@pytest.fixture
def summary_cache(redis):
    return SummaryCache(redis)


@pytest.fixture
def notifier():
    return Notifier(delay_seconds=0)
