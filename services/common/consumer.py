"""
Common: コンシューマループ

Analytics / Notification の両コンシューマが共有する受信ループ。
メッセージごとの状態遷移:

    received → parsed → handled → acked
    received → parse-failed → dropped        (nack, requeue しない)
    received → parsed → handle-failed → requeued      (nack, requeue)
    received → parsed → handle-failed → dead-lettered (再配送上限に到達)

- 1 コンシューマにつき未 ack メッセージは常に1件 (prefetch=1)。
  処理は厳密に逐次で、同一キュー内では FIFO。
- 停止は協調的。shutdown_event はメッセージの合間にだけ確認するので、
  処理中のハンドラは最後まで実行される。
- 配送は at-least-once。ハンドラが失敗して再配送されたイベントは
  もう一度処理されるので、重複はハンドラ側で許容するか排除する。
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

from aio_pika.exceptions import AMQPError, ChannelInvalidStateError

from .errors import ParseError
from .events import OrderCreatedEvent, decode_event

logger = logging.getLogger(__name__)

DELIVERY_COUNT_HEADER = "x-delivery-count"

EventHandler = Callable[[OrderCreatedEvent], Awaitable[Any]]


class Delivery(Protocol):
    body: bytes
    headers: dict

    async def ack(self) -> None: ...

    async def nack(self, requeue: bool = True) -> None: ...


class Outcome(str, Enum):
    ACKED = "acked"
    DROPPED = "dropped"
    REQUEUED = "requeued"
    DEAD_LETTERED = "dead_lettered"


@dataclass(frozen=True)
class RetryPolicy:
    """
    失敗時の扱い。

    max_deliveries: 1 メッセージを何回まで配送するか。0 なら上限なしで
        requeue し続ける。上限に達したら requeue せずに nack し、
        dead-letter exchange に送る。
    requeue_malformed: 壊れた本文を requeue するか。既定では破棄する
        (毒メッセージによる無限ループを避けるため)。
    """

    max_deliveries: int = 5
    requeue_malformed: bool = False

    def should_requeue(self, attempt: int) -> bool:
        if self.max_deliveries <= 0:
            return True
        return attempt < self.max_deliveries


def delivery_attempt(message: Delivery) -> int:
    """この配送が何回目か (1 始まり)。"""
    headers = message.headers or {}
    try:
        previous = int(headers.get(DELIVERY_COUNT_HEADER, 0))
    except (TypeError, ValueError):
        previous = 0
    return previous + 1


class Subscriber(Protocol):
    name: str

    async def get(self, timeout: float) -> Delivery | None: ...

    async def cancel(self) -> None: ...


async def process_message(
    message: Delivery,
    handler: EventHandler,
    policy: RetryPolicy,
    consumer_name: str,
) -> Outcome:
    """1件のメッセージを処理し、ack / nack まで行う。"""
    try:
        event = decode_event(message.body)
    except ParseError as exc:
        logger.error("[%s] Dropping malformed message: %s", consumer_name, exc)
        await message.nack(requeue=policy.requeue_malformed)
        return Outcome.DROPPED

    attempt = delivery_attempt(message)
    logger.info(
        "[%s] Received %s event: order_id=%s customer_id=%s attempt=%d",
        consumer_name,
        event.event_type,
        event.order_id,
        event.customer_id,
        attempt,
    )

    try:
        await handler(event)
    except Exception:
        if policy.should_requeue(attempt):
            logger.exception(
                "[%s] Failed to process event for order %s, requeueing",
                consumer_name,
                event.order_id,
            )
            await message.nack(requeue=True)
            return Outcome.REQUEUED
        logger.exception(
            "[%s] Giving up on order %s after %d deliveries, dead-lettering",
            consumer_name,
            event.order_id,
            attempt,
        )
        await message.nack(requeue=False)
        return Outcome.DEAD_LETTERED

    await message.ack()
    logger.info(
        "[%s] Successfully processed event for order: %s",
        consumer_name,
        event.order_id,
    )
    return Outcome.ACKED


def log_task_failure(task: asyncio.Task) -> None:
    """バックグラウンドタスクが例外で終わったらログに残す (add_done_callback 用)。"""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Background task %s stopped", task.get_name(), exc_info=exc)


async def run_consumer(
    subscription: Subscriber,
    handler: EventHandler,
    shutdown_event: asyncio.Event,
    *,
    policy: RetryPolicy | None = None,
    consumer_name: str = "consumer",
    poll_interval: float = 1.0,
) -> None:
    """
    shutdown_event がセットされるまでメッセージを1件ずつ処理する。
    終了時に購読を解除する。未 ack のメッセージはブローカーのキューに戻る。
    """
    policy = policy or RetryPolicy()
    logger.info("[%s] Consuming from %s", consumer_name, subscription.name)
    try:
        while not shutdown_event.is_set():
            message = await subscription.get(timeout=poll_interval)
            if message is None:
                continue
            try:
                await process_message(message, handler, policy, consumer_name)
            except (AMQPError, ChannelInvalidStateError) as exc:
                # ack / nack できなかったメッセージは再接続後に再配送される
                logger.warning("[%s] Could not settle message: %s", consumer_name, exc)
    finally:
        await subscription.cancel()
        logger.info("[%s] Consumer stopped", consumer_name)
