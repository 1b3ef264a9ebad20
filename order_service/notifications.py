"""
Order Service — 通知 (Redis Pub/Sub)

注文イベントを order_events チャネルに発行する。
発行はバックグラウンドタスクとして投げっぱなし (fire-and-forget) で行い、
失敗してもログに残すだけで注文処理には影響させない。
"""

import asyncio
import json
import logging
from datetime import datetime, timezone

import redis.asyncio as aioredis
from pydantic import BaseModel

from .aggregate import OrderAggregate
from .events import OrderDeleted, OrderLine, OrderPlaced, OrderStatusChanged

logger = logging.getLogger(__name__)


class OrderNotifier:
    """Redis が None の場合は何も発行しない。"""

    def __init__(self, redis: aioredis.Redis | None, channel: str = "order_events") -> None:
        self.redis = redis
        self.channel = channel
        self._pending: set[asyncio.Task] = set()

    def order_placed(self, order: OrderAggregate) -> None:
        self._schedule(
            "OrderPlaced",
            OrderPlaced(
                order_id=order.id,
                owner_id=order.owner_id,
                owner_display_name=order.owner_display_name,
                line_items=[
                    OrderLine(
                        product_id=item.product_id,
                        name=item.name,
                        unit_price=item.unit_price,
                        quantity=item.quantity,
                    )
                    for item in order.line_items
                ],
                total_price=order.total_price,
                timestamp=datetime.now(timezone.utc),
            ),
        )

    def status_changed(
        self, order: OrderAggregate, previous_status: str, restocked: bool
    ) -> None:
        self._schedule(
            "OrderStatusChanged",
            OrderStatusChanged(
                order_id=order.id,
                previous_status=previous_status,
                status=order.status.value,
                restocked=restocked,
                timestamp=datetime.now(timezone.utc),
            ),
        )

    def order_deleted(self, order_id: int) -> None:
        self._schedule(
            "OrderDeleted",
            OrderDeleted(order_id=order_id, timestamp=datetime.now(timezone.utc)),
        )

    async def drain(self) -> None:
        """未完了の発行タスクを待つ（シャットダウン時・テスト用）。"""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)

    # ── 内部処理 ─────────────────────────────────

    def _schedule(self, event_type: str, event: BaseModel) -> None:
        if self.redis is None:
            return
        task = asyncio.create_task(self._publish(event_type, event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _publish(self, event_type: str, event: BaseModel) -> None:
        payload = json.dumps(
            {"event_type": event_type, "data": event.model_dump(mode="json")},
            default=str,
        )
        try:
            await self.redis.publish(self.channel, payload)
        except Exception:
            logger.exception("Failed to publish %s to %s", event_type, self.channel)
