"""
Order Service — 注文確定 Saga (PlaceOrder)

在庫引き落としと注文作成を 1 つの論理的な処理単位として扱う。
複数ドキュメントにまたがるトランザクションは使わず、
補償トランザクション (Compensating Transaction) で all-or-nothing を保証する。

  フロー:
  ┌──────────────────────────────────────────────────────────┐
  │  1. リクエスト検証 (数量 > 0, 単価 >= 0)                   │
  │  2. 注文者の存在確認                                       │
  │  3. 商品の解決 (ID または名前) と在庫の事前チェック         │
  │  4. 明細ごとに条件付きで在庫を減らす                       │
  │     └─ 成功するたびに補償アクション (在庫戻し) を記録        │
  │  5. 合計金額を計算                                         │
  │  6. シーケンスから注文 ID を採番                            │
  │  7. 注文を pending で永続化                                 │
  │  4〜7 で失敗・キャンセル → 補償を逆順に実行して再送出       │
  │  8. 通知 (投げっぱなし)                                     │
  └──────────────────────────────────────────────────────────┘
"""

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass
from decimal import Decimal
from functools import partial
from typing import Awaitable, Callable

from .aggregate import LineItem, OrderAggregate, to_money
from .errors import InsufficientStock, InvalidLineItem, OwnerNotFound, ProductNotFound
from .notifications import OrderNotifier
from .ports import OrderRepository, OwnerDirectory, Product, ProductLedger, SequenceGenerator

logger = logging.getLogger(__name__)

ORDER_SEQUENCE = "orderId"


@dataclass(frozen=True)
class LineItemRequest:
    """注文リクエストの 1 明細。商品は product_id か name のどちらかで指定する。"""
    quantity: int = 1
    product_id: int | None = None
    name: str | None = None
    unit_price: Decimal | None = None

    @property
    def reference(self) -> int | str:
        return self.product_id if self.product_id is not None else self.name


@dataclass
class _Compensation:
    description: str
    action: Callable[[], Awaitable]


def validate_requests(requests: list[LineItemRequest]) -> None:
    if not requests:
        raise InvalidLineItem("At least one order item is required")
    for req in requests:
        if req.product_id is None and not req.name:
            raise InvalidLineItem("Each order item needs a product id or a name")
        if isinstance(req.quantity, bool) or not isinstance(req.quantity, int):
            raise InvalidLineItem(f"Quantity for '{req.reference}' must be an integer")
        if req.quantity <= 0:
            raise InvalidLineItem(
                f"Quantity for '{req.reference}' must be positive, got {req.quantity}"
            )
        if req.unit_price is not None and to_money(req.unit_price) < 0:
            raise InvalidLineItem(
                f"Price for '{req.reference}' must not be negative, got {req.unit_price}"
            )


class OrderPlacementService:
    def __init__(
        self,
        owners: OwnerDirectory,
        ledger: ProductLedger,
        sequence: SequenceGenerator,
        orders: OrderRepository,
        notifier: OrderNotifier,
    ) -> None:
        self.owners = owners
        self.ledger = ledger
        self.sequence = sequence
        self.orders = orders
        self.notifier = notifier

    async def place_order(
        self,
        owner_id: int,
        requests: list[LineItemRequest],
        display_name: str | None = None,
    ) -> OrderAggregate:
        """
        注文を確定する。

        成功時は pending の注文を返す。失敗時は在庫・注文のどちらも
        変更されていない状態で OrderServiceError を送出する。
        """
        validate_requests(requests)

        owner = await self.owners.find_owner(owner_id)
        if owner is None:
            logger.warning("Order rejected: owner %s not found", owner_id)
            raise OwnerNotFound(owner_id)

        resolved = [(await self._resolve_product(req), req) for req in requests]
        self._check_availability(owner_id, resolved)

        compensations: list[_Compensation] = []
        try:
            # ── Step 4: 条件付き在庫引き落とし ──────────
            for product, req in resolved:
                await self.ledger.decrement_stock(product.id, req.quantity)
                compensations.append(
                    _Compensation(
                        f"RestoreStock(product={product.id}, quantity={req.quantity})",
                        partial(self.ledger.restore_stock, product.id, req.quantity),
                    )
                )

            # ── Step 5: 合計金額 (集約側で再計算) ──────
            order = OrderAggregate.create(
                owner_id=owner.id,
                owner_display_name=display_name or owner.name,
                line_items=[
                    LineItem(
                        name=product.name,
                        unit_price=product.unit_price,
                        quantity=req.quantity,
                        product_id=product.id,
                    )
                    for product, req in resolved
                ],
            )

            # ── Step 6, 7: 採番と永続化 ───────────────
            order.id = await self.sequence.next_value(ORDER_SEQUENCE)
            order = await self.orders.add(order)
        except BaseException as exc:
            # タイムアウト・切断によるキャンセルでも補償する
            logger.warning(
                "Order placement for owner %s failed (%r); compensating %d step(s)",
                owner_id,
                exc,
                len(compensations),
            )
            await asyncio.shield(self._compensate(compensations))
            raise

        logger.info(
            "Order %s placed for owner %s: %d item(s), total %s",
            order.id,
            owner_id,
            len(order.line_items),
            order.total_price,
        )
        self.notifier.order_placed(order)
        return order

    # ── 内部処理 ─────────────────────────────────

    async def _resolve_product(self, req: LineItemRequest) -> Product:
        if req.product_id is not None:
            product = await self.ledger.find_by_id(req.product_id)
        else:
            product = await self.ledger.find_by_name(req.name)
        if product is None:
            logger.warning("Order rejected: product %r not found", req.reference)
            raise ProductNotFound(req.reference)
        # カタログ価格が正。クライアントの単価は検証にのみ使う
        if req.unit_price is not None and to_money(req.unit_price) != product.unit_price:
            raise InvalidLineItem(
                f"Price for '{product.name}' is {product.unit_price}, got {to_money(req.unit_price)}"
            )
        return product

    def _check_availability(
        self, owner_id: int, resolved: list[tuple[Product, LineItemRequest]]
    ) -> None:
        """事前チェック。同じ商品が複数明細にある場合は数量を合算する。"""
        requested: dict[int, int] = defaultdict(int)
        by_id: dict[int, Product] = {}
        for product, req in resolved:
            requested[product.id] += req.quantity
            by_id[product.id] = product
        for product_id, quantity in requested.items():
            product = by_id[product_id]
            if product.stock < quantity:
                logger.warning(
                    "Order rejected for owner %s: product %s (%s) has %d, requested %d",
                    owner_id,
                    product.id,
                    product.name,
                    product.stock,
                    quantity,
                )
                raise InsufficientStock(product.name, product.stock, quantity)

    async def _compensate(self, compensations: list[_Compensation]) -> None:
        """記録した補償アクションを逆順に実行する。"""
        for compensation in reversed(compensations):
            try:
                await compensation.action()
                logger.info("Compensated: %s", compensation.description)
            except Exception:
                logger.exception("Compensation failed: %s", compensation.description)
