"""参照・ステータス遷移・キャンセル時の在庫戻し・削除。"""

import json
from decimal import Decimal

import pytest

from order_service.aggregate import OrderStatus
from order_service.commands import OrderCommands
from order_service.errors import InvalidTransition, OrderNotFound, PersistenceFailure
from order_service.memory_store import InMemoryProductLedger
from order_service.placement import LineItemRequest, OrderPlacementService


@pytest.fixture
async def product(ledger):
    return await ledger.add_product("Keyboard", Decimal("49.90"), 10)


@pytest.fixture
async def order(placement, product):
    return await placement.place_order(1, [LineItemRequest(quantity=3, product_id=product.id)])


async def test_get_by_id_is_repeatable(queries, order):
    first = await queries.get_by_id(order.id)
    second = await queries.get_by_id(order.id)
    assert first == second


async def test_get_by_id_unknown(queries):
    with pytest.raises(OrderNotFound):
        await queries.get_by_id(404)


async def test_list_by_owner_and_all_are_ordered_by_id(placement, queries, product):
    for owner_id in (2, 1, 2):
        await placement.place_order(owner_id, [LineItemRequest(product_id=product.id)])
    assert [o.id for o in await queries.get_by_owner(2)] == [1, 3]
    assert [o.id for o in await queries.list_all()] == [1, 2, 3]
    assert await queries.get_by_owner(42) == []


async def test_status_happy_path(commands, order):
    assert (await commands.mark_processing(order.id)).status == OrderStatus.PROCESSING
    assert (await commands.mark_shipped(order.id)).status == OrderStatus.SHIPPED
    assert (await commands.mark_delivered(order.id)).status == OrderStatus.DELIVERED


async def test_pending_to_delivered_is_rejected(commands, queries, order):
    with pytest.raises(InvalidTransition):
        await commands.update_status(order.id, OrderStatus.DELIVERED)
    assert (await queries.get_by_id(order.id)).status == OrderStatus.PENDING


async def test_update_status_unknown_order(commands):
    with pytest.raises(OrderNotFound):
        await commands.mark_processing(12345)


async def test_cancel_before_shipping_restocks(commands, ledger, product, order):
    assert (await ledger.find_by_id(product.id)).stock == 7
    cancelled = await commands.cancel(order.id)
    assert cancelled.status == OrderStatus.CANCELLED
    assert (await ledger.find_by_id(product.id)).stock == 10


async def test_cancel_after_delivery_does_not_restock(commands, ledger, product, order):
    await commands.mark_processing(order.id)
    await commands.mark_shipped(order.id)
    await commands.mark_delivered(order.id)
    await commands.cancel(order.id)
    assert (await ledger.find_by_id(product.id)).stock == 7


async def test_cancelled_is_terminal(commands, ledger, product, order):
    await commands.cancel(order.id)
    with pytest.raises(InvalidTransition):
        await commands.cancel(order.id)
    assert (await ledger.find_by_id(product.id)).stock == 10


async def test_lost_status_race_is_rejected(commands, orders, order):
    stale = await orders.get(order.id)
    await commands.mark_processing(order.id)
    stale.change_status(OrderStatus.CANCELLED)
    assert await orders.save_status(stale, expected=OrderStatus.PENDING) is None


async def test_status_change_is_published(commands, notifier, fake_redis, order):
    await commands.mark_processing(order.id)
    await notifier.drain()
    event = json.loads(fake_redis.published[-1][1])
    assert event["event_type"] == "OrderStatusChanged"
    assert event["data"]["previous_status"] == "pending"
    assert event["data"]["status"] == "processing"


async def test_delete_is_hard_and_does_not_restock(commands, queries, ledger, product, order):
    assert await commands.delete_order(order.id) is True
    with pytest.raises(OrderNotFound):
        await queries.get_by_id(order.id)
    assert await commands.delete_order(order.id) is False
    assert (await ledger.find_by_id(product.id)).stock == 7


async def test_sequence_reset_only_when_no_orders(commands, placement, product, order):
    assert await commands.reset_order_sequence_if_empty() is False
    await commands.delete_order(order.id)
    assert await commands.reset_order_sequence_if_empty() is True
    again = await placement.place_order(1, [LineItemRequest(product_id=product.id)])
    assert again.id == 1


async def test_returned_orders_do_not_share_line_items(orders, queries, order):
    loaded = await orders.get(order.id)
    loaded.line_items.clear()
    assert len((await queries.get_by_id(order.id)).line_items) == 1


# ── キャンセル時の在庫戻しの再開 ─────────────────


class RestoreFailsOnceLedger(InMemoryProductLedger):
    """指定した商品の在庫戻しを 1 回だけ失敗させる。"""

    def __init__(self, sequence, fail_on: str) -> None:
        super().__init__(sequence)
        self.fail_on = fail_on

    async def restore_stock(self, product_id, quantity):
        product = await self.find_by_id(product_id)
        if product.name == self.fail_on:
            self.fail_on = None
            raise PersistenceFailure("Storage error during stock restore")
        return await super().restore_stock(product_id, quantity)


async def test_failed_restock_is_finished_by_retrying_cancel(owners, sequence, orders, notifier):
    ledger = RestoreFailsOnceLedger(sequence, fail_on="B")
    a = await ledger.add_product("A", Decimal("10.00"), 10)
    b = await ledger.add_product("B", Decimal("5.00"), 10)
    placement = OrderPlacementService(owners, ledger, sequence, orders, notifier)
    commands = OrderCommands(orders, ledger, sequence, notifier)
    placed = await placement.place_order(
        1, [LineItemRequest(quantity=2, product_id=a.id), LineItemRequest(quantity=3, product_id=b.id)]
    )

    with pytest.raises(PersistenceFailure):
        await commands.cancel(placed.id)
    stored = await orders.get(placed.id)
    assert stored.status == OrderStatus.CANCELLED
    assert stored.restock_pending is True
    assert (await ledger.find_by_id(a.id)).stock == 10
    assert (await ledger.find_by_id(b.id)).stock == 7

    retried = await commands.cancel(placed.id)
    assert retried.status == OrderStatus.CANCELLED
    assert retried.restock_pending is False
    assert (await ledger.find_by_id(a.id)).stock == 10
    assert (await ledger.find_by_id(b.id)).stock == 10

    with pytest.raises(InvalidTransition):
        await commands.cancel(placed.id)
    assert (await ledger.find_by_id(b.id)).stock == 10


async def test_restock_claims_are_cleared_on_delete(orders, order):
    assert await orders.claim_restock(order.id, 0) is True
    assert await orders.claim_restock(order.id, 0) is False
    await orders.delete(order.id)
    assert await orders.claim_restock(order.id, 0) is True
