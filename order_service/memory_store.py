"""
Order Service — インメモリストア

テストとローカル実行用。各操作は await の後、チェックと書き込みを
中断点なしで行うため、同時実行されても単一ステートメントと同じく振る舞う。
"""

import asyncio
from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal

from .aggregate import OrderAggregate, OrderStatus, to_money
from .errors import InsufficientStock, ProductNotFound
from .ports import (
    Owner,
    OwnerDirectory,
    OrderRepository,
    Product,
    ProductLedger,
    SequenceGenerator,
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _copy(order: OrderAggregate) -> OrderAggregate:
    return replace(order, line_items=list(order.line_items))


class InMemorySequenceGenerator(SequenceGenerator):
    def __init__(self) -> None:
        self._counters: dict[str, int] = {}

    async def next_value(self, name: str) -> int:
        await asyncio.sleep(0)
        value = self._counters.get(name, 0) + 1
        self._counters[name] = value
        return value

    async def reset(self, name: str) -> None:
        self._counters[name] = 0

    def current(self, name: str) -> int:
        return self._counters.get(name, 0)


class InMemoryProductLedger(ProductLedger):
    def __init__(self, sequence: SequenceGenerator) -> None:
        self._sequence = sequence
        self._products: dict[int, Product] = {}

    async def find_by_id(self, product_id: int) -> Product | None:
        await asyncio.sleep(0)
        return self._products.get(product_id)

    async def find_by_name(self, name: str) -> Product | None:
        await asyncio.sleep(0)
        for product in self._products.values():
            if product.name == name:
                return product
        return None

    async def decrement_stock(self, product_id: int, quantity: int) -> Product:
        await asyncio.sleep(0)
        # チェックと書き込みの間に中断点を置かない
        product = self._products.get(product_id)
        if product is None:
            raise ProductNotFound(product_id)
        if product.stock < quantity:
            raise InsufficientStock(product.name, product.stock, quantity)
        updated = replace(product, stock=product.stock - quantity, updated_at=_now())
        self._products[product_id] = updated
        return updated

    async def restore_stock(self, product_id: int, quantity: int) -> Product:
        await asyncio.sleep(0)
        product = self._products.get(product_id)
        if product is None:
            raise ProductNotFound(product_id)
        updated = replace(product, stock=product.stock + quantity, updated_at=_now())
        self._products[product_id] = updated
        return updated

    async def add_product(self, name: str, unit_price: Decimal, stock: int) -> Product:
        product_id = await self._sequence.next_value("productId")
        now = _now()
        product = Product(
            id=product_id,
            name=name,
            unit_price=to_money(unit_price),
            stock=stock,
            created_at=now,
            updated_at=now,
        )
        self._products[product_id] = product
        return product


class InMemoryOrderRepository(OrderRepository):
    def __init__(self) -> None:
        self._orders: dict[int, OrderAggregate] = {}
        self._restock_claims: set[tuple[int, int]] = set()

    async def add(self, order: OrderAggregate) -> OrderAggregate:
        await asyncio.sleep(0)
        now = _now()
        stored = replace(
            order, line_items=list(order.line_items), created_at=now, updated_at=now
        )
        self._orders[stored.id] = stored
        return _copy(stored)

    async def get(self, order_id: int) -> OrderAggregate | None:
        order = self._orders.get(order_id)
        return _copy(order) if order else None

    async def list_by_owner(self, owner_id: int) -> list[OrderAggregate]:
        return [
            _copy(o)
            for o in sorted(self._orders.values(), key=lambda o: o.id)
            if o.owner_id == owner_id
        ]

    async def list_all(self) -> list[OrderAggregate]:
        return [_copy(o) for o in sorted(self._orders.values(), key=lambda o: o.id)]

    async def save_status(
        self, order: OrderAggregate, expected: OrderStatus
    ) -> OrderAggregate | None:
        await asyncio.sleep(0)
        stored = self._orders.get(order.id)
        if stored is None or stored.status != expected:
            return None
        updated = replace(
            stored,
            status=order.status,
            restock_pending=order.restock_pending,
            updated_at=_now(),
        )
        self._orders[order.id] = updated
        return _copy(updated)

    async def delete(self, order_id: int) -> bool:
        # ID はシーケンスのリセット後に再利用されうる
        self._restock_claims = {c for c in self._restock_claims if c[0] != order_id}
        return self._orders.pop(order_id, None) is not None

    async def count(self) -> int:
        return len(self._orders)

    async def claim_restock(self, order_id: int, line_index: int) -> bool:
        await asyncio.sleep(0)
        key = (order_id, line_index)
        if key in self._restock_claims:
            return False
        self._restock_claims.add(key)
        return True

    async def release_restock(self, order_id: int, line_index: int) -> None:
        self._restock_claims.discard((order_id, line_index))

    async def complete_restock(self, order_id: int) -> OrderAggregate | None:
        stored = self._orders.get(order_id)
        if stored is None:
            return None
        updated = replace(stored, restock_pending=False, updated_at=_now())
        self._orders[order_id] = updated
        return _copy(updated)


class InMemoryOwnerDirectory(OwnerDirectory):
    def __init__(self, owners: dict[int, str] | None = None) -> None:
        self._owners = dict(owners or {})

    def register(self, owner_id: int, name: str) -> Owner:
        self._owners[owner_id] = name
        return Owner(id=owner_id, name=name)

    async def find_owner(self, owner_id: int) -> Owner | None:
        await asyncio.sleep(0)
        name = self._owners.get(owner_id)
        return Owner(id=owner_id, name=name) if name is not None else None
