"""
Common: Event Channel (RabbitMQ)

Order Service とコンシューマ群をつなぐ永続的な pub/sub トランスポート。

  ┌──────────────┐  order.created  ┌───────────────┐   ┌────────────────────┐
  │ Order Service │ ─────────────▶ │ orders (topic) │──▶│ analytics.orders    │
  └──────────────┘                 │   exchange     │──▶│ notifications.orders│
                                   └───────────────┘   └────────────────────┘

- exchange は durable な topic exchange。発行側は固定のルーティングキーで
  送るだけで、どのキューが購読しているかを知らない (fan-out)。
- 各コンシューマは自分専用の durable キューを宣言してバインドする。
  コンシューマが停止していてもキューにイベントが溜まる。
- メッセージは persistent で送る (ブローカー再起動後も残る)。
- 再配送の上限を超えたメッセージと、破棄したメッセージは
  dead-letter exchange 経由で <queue>.dead に送られる。
- 接続は connect_robust で張る。切断時は aio-pika が再接続する。
  初回接続だけは tenacity で一定間隔の再試行をかける。
"""

import asyncio
import logging
from datetime import datetime, timezone

import aio_pika
from aio_pika import DeliveryMode, ExchangeType, Message
from aio_pika.abc import (
    AbstractChannel,
    AbstractExchange,
    AbstractIncomingMessage,
    AbstractQueue,
    AbstractRobustConnection,
)
from aio_pika.exceptions import AMQPError, ChannelInvalidStateError
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from .errors import TransportError
from .events import OrderCreatedEvent, encode_event

logger = logging.getLogger(__name__)

EXCHANGE_NAME = "orders"
ROUTING_KEY = "order.created"
DEAD_LETTER_EXCHANGE = "orders.dlx"

_BROKER_ERRORS = (AMQPError, ChannelInvalidStateError, OSError, asyncio.TimeoutError)


def _log_connect_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "RabbitMQ not ready (attempt %d): %s", retry_state.attempt_number, exc
    )


def queue_arguments(
    queue_name: str, dead_letter_exchange: str, max_deliveries: int
) -> dict:
    """
    コンシューマキューの宣言引数。

    max_deliveries > 0 のときは quorum キューにして x-delivery-limit を付ける。
    quorum キューは再配送時に x-delivery-count ヘッダを付与するので、
    コンシューマ側でも試行回数を判定できる。
    """
    arguments = {
        "x-dead-letter-exchange": dead_letter_exchange,
        "x-dead-letter-routing-key": queue_name,
    }
    if max_deliveries > 0:
        arguments["x-queue-type"] = "quorum"
        arguments["x-delivery-limit"] = max_deliveries
    return arguments


class Subscription:
    """
    1つのキューに対する購読。

    prefetch=1 のチャネル上で consume し、届いたメッセージを内部キューに積む。
    get() はタイムアウト付きで1件取り出すので、呼び出し側はメッセージの
    合間に停止フラグを確認できる。
    """

    def __init__(self, queue: AbstractQueue) -> None:
        self._queue = queue
        self._inbox: asyncio.Queue[AbstractIncomingMessage] = asyncio.Queue()
        self._consumer_tag: str | None = None

    @property
    def name(self) -> str:
        return self._queue.name

    async def start(self) -> None:
        self._consumer_tag = await self._queue.consume(self._inbox.put, no_ack=False)

    async def get(self, timeout: float) -> AbstractIncomingMessage | None:
        try:
            return await asyncio.wait_for(self._inbox.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    async def cancel(self) -> None:
        if self._consumer_tag is None:
            return
        try:
            await self._queue.cancel(self._consumer_tag)
        except _BROKER_ERRORS as exc:
            # 未 ack のメッセージはチャネルクローズ時にキューへ戻る
            logger.warning("Failed to cancel consumer on %s: %s", self.name, exc)
        self._consumer_tag = None


class EventChannel:
    """RabbitMQ への接続とトポロジ宣言、発行、購読をまとめたもの。"""

    def __init__(
        self,
        url: str,
        *,
        exchange_name: str = EXCHANGE_NAME,
        routing_key: str = ROUTING_KEY,
        dead_letter_exchange: str = DEAD_LETTER_EXCHANGE,
        connect_attempts: int = 10,
        connect_delay: float = 5.0,
    ) -> None:
        self.url = url
        self.exchange_name = exchange_name
        self.routing_key = routing_key
        self.dead_letter_exchange = dead_letter_exchange
        self.connect_attempts = max(1, connect_attempts)
        self.connect_delay = connect_delay

        self._connection: AbstractRobustConnection | None = None
        self._channel: AbstractChannel | None = None
        self._exchange: AbstractExchange | None = None
        self._lock = asyncio.Lock()

    # ── 接続 ─────────────────────────────────────

    async def connect(self) -> None:
        """
        ブローカーへ接続し exchange を宣言する。

        起動直後はブローカーがまだ立ち上がっていないことがあるので、
        connect_attempts 回まで connect_delay 秒おきに再試行する。
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.connect_attempts),
            wait=wait_fixed(self.connect_delay),
            retry=retry_if_exception_type(_BROKER_ERRORS),
            before_sleep=_log_connect_retry,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    await self._open()
        except _BROKER_ERRORS as exc:
            raise TransportError(
                f"failed to connect to RabbitMQ after {self.connect_attempts} attempts"
            ) from exc
        logger.info("RabbitMQ connected and exchange '%s' declared", self.exchange_name)

    async def _open(self) -> None:
        async with self._lock:
            if self._exchange is not None:
                return
            connection = await aio_pika.connect_robust(self.url)
            try:
                channel = await connection.channel()
                exchange = await channel.declare_exchange(
                    self.exchange_name, ExchangeType.TOPIC, durable=True
                )
            except BaseException:
                await connection.close()
                raise
            self._connection = connection
            self._channel = channel
            self._exchange = exchange

    async def close(self) -> None:
        if self._connection is not None:
            await self._connection.close()
        self._connection = None
        self._channel = None
        self._exchange = None

    async def health_check(self) -> None:
        if self._connection is None:
            raise TransportError("not connected")
        if self._connection.is_closed:
            raise TransportError("connection is closed")

    # ── 発行 ─────────────────────────────────────

    async def publish(self, event: OrderCreatedEvent) -> None:
        """
        イベントを exchange に発行する。

        未接続なら一度だけ接続を試みる。ブローカー起因の失敗はすべて
        TransportError に変換する。メッセージ単位の再送はここでは行わない
        (未送信のイベントは outbox リレーが拾い直す)。
        """
        try:
            if self._exchange is None:
                await self._open()
            message = Message(
                body=encode_event(event),
                content_type="application/json",
                delivery_mode=DeliveryMode.PERSISTENT,
                message_id=event.event_id,
                type=event.event_type,
                timestamp=datetime.now(timezone.utc),
            )
            await self._exchange.publish(message, routing_key=self.routing_key)
        except _BROKER_ERRORS as exc:
            raise TransportError(
                f"failed to publish event {event.event_id}: {exc}"
            ) from exc
        logger.info(
            "Published %s event for order: %s", event.event_type, event.order_id
        )

    # ── 購読 ─────────────────────────────────────

    async def subscribe(
        self, queue_name: str, *, max_deliveries: int = 0
    ) -> Subscription:
        """
        queue_name の durable キューを宣言して exchange にバインドし、
        prefetch=1 で購読を開始する。
        """
        try:
            if self._channel is None:
                await self._open()
            channel = self._channel
            await channel.set_qos(prefetch_count=1)

            dead_letters = await channel.declare_exchange(
                self.dead_letter_exchange, ExchangeType.TOPIC, durable=True
            )
            dead_queue = await channel.declare_queue(f"{queue_name}.dead", durable=True)
            await dead_queue.bind(dead_letters, routing_key=queue_name)

            queue = await channel.declare_queue(
                queue_name,
                durable=True,
                arguments=queue_arguments(
                    queue_name, self.dead_letter_exchange, max_deliveries
                ),
            )
            await queue.bind(self._exchange, routing_key=self.routing_key)

            subscription = Subscription(queue)
            await subscription.start()
        except _BROKER_ERRORS as exc:
            raise TransportError(f"failed to subscribe {queue_name}: {exc}") from exc

        logger.info(
            "Queue '%s' bound to exchange '%s' with key '%s'",
            queue_name,
            self.exchange_name,
            self.routing_key,
        )
        return subscription
