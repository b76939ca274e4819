"""
Order Service: イベント発行

注文作成リクエストは発行の完了を待たない。EventPublisher は発行を
リクエストから切り離した asyncio タスクとして実行し、失敗はログにだけ残す。
Event Channel が落ちていても、縮退するのは分析と通知であって注文作成ではない。

発行に失敗したイベントは outbox に未発行のまま残る。OutboxRelay が
一定時間 (grace) 経っても未発行の行を定期的に拾い直して再発行する。
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone

from services.common import errors
from services.common.events import OrderCreatedEvent
from services.common.messaging import EventChannel

from .repository import OrderRepository

logger = logging.getLogger(__name__)


class EventPublisher:
    def __init__(self, channel: EventChannel, repository: OrderRepository) -> None:
        self.channel = channel
        self.repository = repository
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def publish_detached(self, event: OrderCreatedEvent) -> asyncio.Task:
        """発行をバックグラウンドタスクとして起動し、すぐに返す。"""
        task = asyncio.create_task(self.publish(event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def publish(self, event: OrderCreatedEvent) -> bool:
        try:
            await self.channel.publish(event)
        except errors.TransportError as exc:
            logger.error(
                "Failed to publish %s event for order %s: %s",
                event.event_type,
                event.order_id,
                exc,
            )
            return False

        try:
            await self.repository.mark_published(event.event_id)
        except errors.PersistenceError as exc:
            # 次のリレーで再発行される。コンシューマ側は重複を許容する
            logger.warning("Published event %s but outbox not updated: %s", event.event_id, exc)
        return True

    async def drain(self) -> None:
        """実行中の発行タスクがすべて終わるまで待つ (シャットダウン用)。"""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)


class OutboxRelay:
    def __init__(
        self,
        repository: OrderRepository,
        publisher: EventPublisher,
        *,
        poll_interval: float = 5.0,
        grace_seconds: float = 10.0,
        batch_size: int = 100,
    ) -> None:
        self.repository = repository
        self.publisher = publisher
        self.poll_interval = poll_interval
        self.grace_seconds = grace_seconds
        self.batch_size = batch_size

    async def relay_once(self) -> int:
        """未発行のイベントを1バッチ再発行し、成功件数を返す。"""
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=self.grace_seconds)
        events = await self.repository.pending_events(cutoff, limit=self.batch_size)
        published = 0
        for event in events:
            if not await self.publisher.publish(event):
                # ブローカーが落ちているなら残りも失敗するので次回に回す
                break
            published += 1
        if events:
            logger.info("Outbox relay republished %d/%d event(s)", published, len(events))
        return published

    async def run(self, shutdown_event: asyncio.Event) -> None:
        logger.info("Outbox relay started (interval=%.1fs)", self.poll_interval)
        while not shutdown_event.is_set():
            try:
                await self.relay_once()
            except errors.PersistenceError as exc:
                logger.error("Outbox relay could not read outbox: %s", exc)
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Outbox relay stopped")
