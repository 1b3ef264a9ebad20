"""
Order Service — コマンドハンドラ (ステータス遷移・削除・保守)

ステータス変更は「読み込み → 遷移表で検証 → 直前ステータスを条件に保存」の順で行う。
保存時に他のリクエストが先にステータスを変えていた場合は InvalidTransition。

出荷前 (pending / processing) のキャンセルは在庫を戻す。
キャンセルは restock_pending=True で先に確定し、明細ごとに予約してから戻す。
途中で失敗しても、もう一度キャンセルすれば未処理の明細だけが戻される。
削除は物理削除のみで、在庫は戻さない。
"""

import asyncio
import logging

from .aggregate import RESTOCKABLE, OrderAggregate, OrderStatus
from .errors import InvalidTransition, OrderNotFound
from .notifications import OrderNotifier
from .placement import ORDER_SEQUENCE
from .ports import OrderRepository, ProductLedger, SequenceGenerator

logger = logging.getLogger(__name__)


class OrderCommands:
    def __init__(
        self,
        orders: OrderRepository,
        ledger: ProductLedger,
        sequence: SequenceGenerator,
        notifier: OrderNotifier,
    ) -> None:
        self.orders = orders
        self.ledger = ledger
        self.sequence = sequence
        self.notifier = notifier

    async def update_status(self, order_id: int, status: OrderStatus) -> OrderAggregate:
        order = await self.orders.get(order_id)
        if order is None:
            raise OrderNotFound(order_id)

        if status == OrderStatus.CANCELLED and order.restock_pending:
            return await self._resume_restock(order)

        previous = order.status
        order.change_status(status)
        order.restock_pending = (
            order.status == OrderStatus.CANCELLED and previous in RESTOCKABLE
        )

        saved = await self.orders.save_status(order, expected=previous)
        if saved is None:
            if await self.orders.get(order_id) is None:
                raise OrderNotFound(order_id)
            raise InvalidTransition(
                previous.value, status.value, "order was modified concurrently"
            )

        restocked = saved.restock_pending
        if restocked:
            saved = await self._restock(saved)

        logger.info(
            "Order %s status %s -> %s%s",
            order_id,
            previous.value,
            saved.status.value,
            " (restocked)" if restocked else "",
        )
        self.notifier.status_changed(saved, previous.value, restocked)
        return saved

    async def mark_processing(self, order_id: int) -> OrderAggregate:
        """支払い済みにする (pending → processing)"""
        return await self.update_status(order_id, OrderStatus.PROCESSING)

    async def mark_shipped(self, order_id: int) -> OrderAggregate:
        return await self.update_status(order_id, OrderStatus.SHIPPED)

    async def mark_delivered(self, order_id: int) -> OrderAggregate:
        return await self.update_status(order_id, OrderStatus.DELIVERED)

    async def cancel(self, order_id: int) -> OrderAggregate:
        return await self.update_status(order_id, OrderStatus.CANCELLED)

    async def delete_order(self, order_id: int) -> bool:
        """物理削除。見つからなければ False。"""
        deleted = await self.orders.delete(order_id)
        if deleted:
            logger.info("Order %s deleted", order_id)
            self.notifier.order_deleted(order_id)
        return deleted

    async def reset_order_sequence_if_empty(self) -> bool:
        """
        注文が 1 件も無い場合のみ orderId シーケンスを 0 に戻す（保守用）。

        注文作成と同時に実行すると ID が重複しうるため、
        注文フローからは呼ばない。
        """
        if await self.orders.count() > 0:
            return False
        await self.sequence.reset(ORDER_SEQUENCE)
        logger.info("Sequence %s reset to 0", ORDER_SEQUENCE)
        return True

    async def _resume_restock(self, order: OrderAggregate) -> OrderAggregate:
        """前回のキャンセルで戻しきれなかった明細の在庫を戻す。"""
        logger.info("Order %s: resuming restock after an earlier failure", order.id)
        saved = await self._restock(order)
        self.notifier.status_changed(saved, OrderStatus.CANCELLED.value, True)
        return saved

    async def _restock(self, order: OrderAggregate) -> OrderAggregate:
        for index, item in enumerate(order.line_items):
            if item.product_id is None:
                continue
            if not await self.orders.claim_restock(order.id, index):
                continue
            try:
                await self.ledger.restore_stock(item.product_id, item.quantity)
            except BaseException:
                logger.exception(
                    "Failed to restock product %s (quantity %d) for cancelled order %s",
                    item.product_id,
                    item.quantity,
                    order.id,
                )
                await asyncio.shield(self.orders.release_restock(order.id, index))
                raise
        completed = await self.orders.complete_restock(order.id)
        if completed is None:
            raise OrderNotFound(order.id)
        return completed
