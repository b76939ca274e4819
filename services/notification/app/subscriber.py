"""
Notification Worker: イベントサブスクライバー

notifications.orders キューを購読する。Analytics とは別のキューなので、
どちらかが停止・遅延・失敗しても、もう一方への配送には影響しない。
"""

import asyncio
import logging

from services.common.consumer import RetryPolicy, Subscriber, run_consumer

from .notifier import Notifier

logger = logging.getLogger(__name__)

QUEUE_NAME = "notifications.orders"


async def run_subscriber(
    subscription: Subscriber,
    notifier: Notifier,
    shutdown_event: asyncio.Event,
    *,
    policy: RetryPolicy | None = None,
    poll_interval: float = 1.0,
) -> None:
    await run_consumer(
        subscription,
        notifier.notify,
        shutdown_event,
        policy=policy or RetryPolicy(),
        consumer_name="notification",
        poll_interval=poll_interval,
    )
