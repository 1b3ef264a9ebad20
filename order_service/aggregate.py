"""
Order Service — 注文集約 (Order Aggregate)

注文は一度だけ作成され、その後はステータス遷移でのみ変更される。
合計金額は明細から必ず再計算し、クライアントから受け取らない。

状態遷移 (厳格モデル):
    pending    → processing  (pay: 支払い済み)
    processing → shipped     (ship)
    shipped    → delivered   (deliver)
    cancelled 以外 → cancelled (cancel: 管理者による強制キャンセルを含む)
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum

from .errors import InvalidLineItem, InvalidTransition, ValidationError

CENT = Decimal("0.01")


def to_money(value) -> Decimal:
    """金額を Decimal に変換し、最小通貨単位 (0.01) に丸める。"""
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise InvalidLineItem(f"Invalid price: {value!r}")
    if not amount.is_finite():
        raise InvalidLineItem(f"Invalid price: {value!r}")
    return amount.quantize(CENT)


class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"

    @classmethod
    def parse(cls, value: str) -> "OrderStatus":
        try:
            return cls(value)
        except ValueError:
            allowed = ", ".join(s.value for s in cls)
            raise ValidationError(f"Valid status is required ({allowed})")


@dataclass(frozen=True)
class Transition:
    name: str
    sources: frozenset
    target: OrderStatus


TRANSITIONS: dict[str, Transition] = {
    "pay": Transition(
        "pay", frozenset({OrderStatus.PENDING}), OrderStatus.PROCESSING
    ),
    "ship": Transition(
        "ship", frozenset({OrderStatus.PROCESSING}), OrderStatus.SHIPPED
    ),
    "deliver": Transition(
        "deliver", frozenset({OrderStatus.SHIPPED}), OrderStatus.DELIVERED
    ),
    "cancel": Transition(
        "cancel",
        frozenset(
            {
                OrderStatus.PENDING,
                OrderStatus.PROCESSING,
                OrderStatus.SHIPPED,
                OrderStatus.DELIVERED,
            }
        ),
        OrderStatus.CANCELLED,
    ),
}

# 在庫を戻してよいのは出荷前のキャンセルのみ
RESTOCKABLE = frozenset({OrderStatus.PENDING, OrderStatus.PROCESSING})


def find_transition(current: OrderStatus, target: OrderStatus) -> Transition:
    """current → target に対応する遷移を返す。遷移表にない場合は InvalidTransition。"""
    for transition in TRANSITIONS.values():
        if transition.target == target and current in transition.sources:
            return transition
    raise InvalidTransition(current.value, target.value)


@dataclass(frozen=True)
class LineItem:
    """購入時点の商品スナップショット。カタログの後続変更には追従しない。"""
    name: str
    unit_price: Decimal
    quantity: int = 1
    product_id: int | None = None

    def __post_init__(self) -> None:
        if not self.name:
            raise InvalidLineItem("Line item name is required")
        if isinstance(self.quantity, bool) or not isinstance(self.quantity, int):
            raise InvalidLineItem(f"Quantity for '{self.name}' must be an integer")
        if self.quantity <= 0:
            raise InvalidLineItem(
                f"Quantity for '{self.name}' must be positive, got {self.quantity}"
            )
        price = to_money(self.unit_price)
        if price < 0:
            raise InvalidLineItem(
                f"Price for '{self.name}' must not be negative, got {price}"
            )
        object.__setattr__(self, "unit_price", price)

    @property
    def subtotal(self) -> Decimal:
        return (self.unit_price * self.quantity).quantize(CENT)

    def to_record(self) -> dict:
        return {
            "product_id": self.product_id,
            "name": self.name,
            "unit_price": str(self.unit_price),
            "quantity": self.quantity,
        }

    @classmethod
    def from_record(cls, data: dict) -> "LineItem":
        return cls(
            name=data["name"],
            unit_price=Decimal(data["unit_price"]),
            quantity=data["quantity"],
            product_id=data.get("product_id"),
        )


@dataclass
class OrderAggregate:
    owner_id: int
    owner_display_name: str
    line_items: list[LineItem]
    total_price: Decimal
    status: OrderStatus = OrderStatus.PENDING
    id: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    # 出荷前キャンセルで在庫戻しが未完了の間だけ True
    restock_pending: bool = False

    # ── 生成 ─────────────────────────────────────

    @classmethod
    def create(
        cls,
        owner_id: int,
        owner_display_name: str,
        line_items: list[LineItem],
    ) -> "OrderAggregate":
        """
        新しい注文を pending 状態で生成する。

        明細が 1 件以上あること、合計金額は明細から再計算することを保証する。
        ID とタイムスタンプは永続化時に付与される。
        """
        if not line_items:
            raise InvalidLineItem("At least one order item is required")
        items = list(line_items)
        return cls(
            owner_id=owner_id,
            owner_display_name=owner_display_name,
            line_items=items,
            total_price=compute_total(items),
        )

    # ── 状態遷移 ─────────────────────────────────

    def change_status(self, target: OrderStatus) -> Transition:
        """遷移表に従ってステータスを変更し、適用した遷移を返す。"""
        transition = find_transition(self.status, target)
        self.status = transition.target
        return transition

    def apply(self, transition_name: str) -> Transition:
        return self.change_status(TRANSITIONS[transition_name].target)

    @property
    def item_count(self) -> int:
        return sum(item.quantity for item in self.line_items)


def compute_total(line_items: list[LineItem]) -> Decimal:
    total = sum((item.subtotal for item in line_items), Decimal("0"))
    return total.quantize(CENT)
