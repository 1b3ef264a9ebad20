"""注文集約: 合計計算・明細検証・状態遷移表。"""

from decimal import Decimal

import pytest

from order_service.aggregate import (
    LineItem,
    OrderAggregate,
    OrderStatus,
    compute_total,
    find_transition,
    to_money,
)
from order_service.errors import InvalidLineItem, InvalidTransition, ValidationError


def _order(*items: LineItem) -> OrderAggregate:
    return OrderAggregate.create(owner_id=1, owner_display_name="Alice", line_items=list(items))


def test_total_is_sum_of_price_times_quantity():
    order = _order(
        LineItem(name="A", unit_price=Decimal("10"), quantity=2),
        LineItem(name="B", unit_price=Decimal("5"), quantity=1),
    )
    assert order.total_price == Decimal("25.00")
    assert order.status == OrderStatus.PENDING
    assert order.id is None


def test_total_is_exact_to_the_cent():
    items = [
        LineItem(name="X", unit_price=0.1, quantity=3),
        LineItem(name="Y", unit_price="19.99", quantity=3),
    ]
    assert compute_total(items) == Decimal("60.27")


def test_line_item_order_is_preserved():
    order = _order(
        LineItem(name="second", unit_price=1),
        LineItem(name="first", unit_price=2),
    )
    assert [i.name for i in order.line_items] == ["second", "first"]


def test_order_requires_at_least_one_item():
    with pytest.raises(InvalidLineItem):
        OrderAggregate.create(owner_id=1, owner_display_name="Alice", line_items=[])


@pytest.mark.parametrize("quantity", [0, -1])
def test_line_item_rejects_non_positive_quantity(quantity):
    with pytest.raises(InvalidLineItem, match="must be positive"):
        LineItem(name="A", unit_price=Decimal("1"), quantity=quantity)


def test_line_item_rejects_negative_price():
    with pytest.raises(InvalidLineItem, match="must not be negative"):
        LineItem(name="A", unit_price=Decimal("-0.01"))


def test_line_item_default_quantity_is_one():
    assert LineItem(name="A", unit_price=Decimal("3.50")).subtotal == Decimal("3.50")


def test_to_money_rejects_garbage():
    with pytest.raises(InvalidLineItem):
        to_money("ten dollars")


def test_line_item_record_round_trip_keeps_product_id():
    item = LineItem(name="GPU-X", unit_price=Decimal("500.00"), quantity=1, product_id=7)
    assert LineItem.from_record(item.to_record()) == item


@pytest.mark.parametrize(
    "current, target",
    [
        (OrderStatus.PENDING, OrderStatus.PROCESSING),
        (OrderStatus.PENDING, OrderStatus.CANCELLED),
        (OrderStatus.PROCESSING, OrderStatus.SHIPPED),
        (OrderStatus.SHIPPED, OrderStatus.DELIVERED),
        (OrderStatus.DELIVERED, OrderStatus.CANCELLED),
    ],
)
def test_allowed_transitions(current, target):
    assert find_transition(current, target).target == target


@pytest.mark.parametrize(
    "current, target",
    [
        (OrderStatus.PENDING, OrderStatus.DELIVERED),
        (OrderStatus.PENDING, OrderStatus.SHIPPED),
        (OrderStatus.PROCESSING, OrderStatus.PENDING),
        (OrderStatus.DELIVERED, OrderStatus.SHIPPED),
        (OrderStatus.CANCELLED, OrderStatus.CANCELLED),
        (OrderStatus.CANCELLED, OrderStatus.PROCESSING),
    ],
)
def test_rejected_transitions(current, target):
    with pytest.raises(InvalidTransition):
        find_transition(current, target)


def test_change_status_walks_the_happy_path():
    order = _order(LineItem(name="A", unit_price=1))
    assert [order.apply(name).name for name in ("pay", "ship", "deliver")] == [
        "pay",
        "ship",
        "deliver",
    ]
    assert order.status == OrderStatus.DELIVERED


def test_failed_transition_leaves_status_untouched():
    order = _order(LineItem(name="A", unit_price=1))
    with pytest.raises(InvalidTransition):
        order.change_status(OrderStatus.DELIVERED)
    assert order.status == OrderStatus.PENDING


def test_parse_unknown_status():
    with pytest.raises(ValidationError, match="Valid status is required"):
        OrderStatus.parse("completed")
