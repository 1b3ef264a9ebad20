"""
Order Service — SQL ストア

PostgreSQL (asyncpg) 上のシーケンス・在庫台帳・注文リポジトリ。
テストでは aiosqlite でも同じ SQL が動く。

並行性の担保は DB 側で行う:
  - シーケンス: INSERT ... ON CONFLICT DO UPDATE ... RETURNING による
    単一ステートメントのインクリメント
  - 在庫: "stock >= :qty" を条件にした UPDATE（条件付き更新）
  - 注文ステータス: 直前のステータスを条件にした UPDATE（CAS）
  - キャンセル時の在庫戻し: 明細ごとの INSERT ... ON CONFLICT DO NOTHING で予約

ストレージ層の例外はすべて PersistenceFailure に変換する。
"""

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import delete, func, insert, select, text, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession
from sqlalchemy.orm import sessionmaker

from .aggregate import LineItem, OrderAggregate, OrderStatus, to_money
from .errors import InsufficientStock, PersistenceFailure, ProductNotFound
from .ports import (
    Owner,
    OwnerDirectory,
    OrderRepository,
    Product,
    ProductLedger,
    SequenceGenerator,
)
from .schema import metadata, order_restocks, orders, owners, products

logger = logging.getLogger(__name__)


async def create_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class _SqlStore:
    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    @asynccontextmanager
    async def _session(self, operation: str):
        """1 操作 = 1 セッション。ドライバ・SQLAlchemy の例外を PersistenceFailure に変換する。"""
        try:
            async with self._session_factory() as session:
                yield session
        except (SQLAlchemyError, OSError) as exc:
            logger.error("Storage error during %s: %s", operation, exc)
            raise PersistenceFailure(f"Storage error during {operation}") from exc


# ── シーケンス ───────────────────────────────────


class SqlSequenceGenerator(_SqlStore, SequenceGenerator):
    async def next_value(self, name: str) -> int:
        """
        名前付きカウンタをアトミックにインクリメントして返す。

        行が無ければ seq=1 で作成される（初回発行値は 1）。
        同時に呼ばれても同じ値が返ることはない。
        """
        async with self._session("sequence allocation") as session:
            result = await session.execute(
                text("""
                    INSERT INTO counters (name, seq)
                    VALUES (:name, 1)
                    ON CONFLICT (name) DO UPDATE SET seq = counters.seq + 1
                    RETURNING seq
                """),
                {"name": name},
            )
            value = result.scalar_one()
            await session.commit()
            return value

    async def reset(self, name: str) -> None:
        async with self._session("sequence reset") as session:
            await session.execute(
                text("""
                    INSERT INTO counters (name, seq)
                    VALUES (:name, 0)
                    ON CONFLICT (name) DO UPDATE SET seq = 0
                """),
                {"name": name},
            )
            await session.commit()


# ── 在庫台帳 ─────────────────────────────────────


def _row_to_product(row) -> Product:
    return Product(
        id=row.id,
        name=row.name,
        unit_price=to_money(row.unit_price),
        stock=row.stock,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class SqlProductLedger(_SqlStore, ProductLedger):
    def __init__(self, session_factory: sessionmaker, sequence: SequenceGenerator) -> None:
        super().__init__(session_factory)
        self._sequence = sequence

    async def find_by_id(self, product_id: int) -> Product | None:
        async with self._session("product lookup") as session:
            result = await session.execute(
                select(products).where(products.c.id == product_id)
            )
            row = result.first()
            return _row_to_product(row) if row else None

    async def find_by_name(self, name: str) -> Product | None:
        async with self._session("product lookup") as session:
            result = await session.execute(
                select(products).where(products.c.name == name).order_by(products.c.id)
            )
            row = result.first()
            return _row_to_product(row) if row else None

    async def decrement_stock(self, product_id: int, quantity: int) -> Product:
        """
        条件付き更新で在庫を減らす。

        "stock >= quantity" の条件と書き込みは 1 ステートメントで評価されるため、
        最後の 1 個を同時に購入しようとしても成功するのは片方だけ。
        条件を満たさない場合は何も変更せず InsufficientStock を送出する。
        """
        async with self._session("stock decrement") as session:
            result = await session.execute(
                update(products)
                .where(products.c.id == product_id, products.c.stock >= quantity)
                .values(stock=products.c.stock - quantity, updated_at=_now())
                .returning(*products.c)
            )
            row = result.first()
            if row is not None:
                await session.commit()
                return _row_to_product(row)

            await session.rollback()
            current = await session.execute(
                select(products.c.name, products.c.stock).where(products.c.id == product_id)
            )
            current_row = current.first()
            if current_row is None:
                raise ProductNotFound(product_id)
            raise InsufficientStock(current_row.name, current_row.stock, quantity)

    async def restore_stock(self, product_id: int, quantity: int) -> Product:
        """在庫を戻す（補償トランザクション）。"""
        async with self._session("stock restore") as session:
            result = await session.execute(
                update(products)
                .where(products.c.id == product_id)
                .values(stock=products.c.stock + quantity, updated_at=_now())
                .returning(*products.c)
            )
            row = result.first()
            if row is None:
                raise ProductNotFound(product_id)
            await session.commit()
            return _row_to_product(row)

    async def add_product(self, name: str, unit_price: Decimal, stock: int) -> Product:
        product_id = await self._sequence.next_value("productId")
        now = _now()
        async with self._session("product insert") as session:
            await session.execute(
                insert(products).values(
                    id=product_id,
                    name=name,
                    unit_price=to_money(unit_price),
                    stock=stock,
                    created_at=now,
                    updated_at=now,
                )
            )
            await session.commit()
        return Product(
            id=product_id,
            name=name,
            unit_price=to_money(unit_price),
            stock=stock,
            created_at=now,
            updated_at=now,
        )


# ── 注文リポジトリ ───────────────────────────────


def _row_to_order(row) -> OrderAggregate:
    items = json.loads(row.line_items) if isinstance(row.line_items, str) else row.line_items
    return OrderAggregate(
        id=row.id,
        owner_id=row.owner_id,
        owner_display_name=row.owner_display_name,
        line_items=[LineItem.from_record(item) for item in items],
        total_price=to_money(row.total_price),
        status=OrderStatus(row.status),
        restock_pending=bool(row.restock_pending),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class SqlOrderRepository(_SqlStore, OrderRepository):
    async def add(self, order: OrderAggregate) -> OrderAggregate:
        now = _now()
        async with self._session("order insert") as session:
            await session.execute(
                insert(orders).values(
                    id=order.id,
                    owner_id=order.owner_id,
                    owner_display_name=order.owner_display_name,
                    line_items=json.dumps([item.to_record() for item in order.line_items]),
                    total_price=order.total_price,
                    status=order.status.value,
                    restock_pending=order.restock_pending,
                    created_at=now,
                    updated_at=now,
                )
            )
            await session.commit()
        order.created_at = now
        order.updated_at = now
        return order

    async def get(self, order_id: int) -> OrderAggregate | None:
        async with self._session("order lookup") as session:
            result = await session.execute(select(orders).where(orders.c.id == order_id))
            row = result.first()
            return _row_to_order(row) if row else None

    async def list_by_owner(self, owner_id: int) -> list[OrderAggregate]:
        async with self._session("order listing") as session:
            result = await session.execute(
                select(orders).where(orders.c.owner_id == owner_id).order_by(orders.c.id.asc())
            )
            return [_row_to_order(row) for row in result.fetchall()]

    async def list_all(self) -> list[OrderAggregate]:
        async with self._session("order listing") as session:
            result = await session.execute(select(orders).order_by(orders.c.id.asc()))
            return [_row_to_order(row) for row in result.fetchall()]

    async def save_status(
        self, order: OrderAggregate, expected: OrderStatus
    ) -> OrderAggregate | None:
        async with self._session("order status update") as session:
            result = await session.execute(
                update(orders)
                .where(orders.c.id == order.id, orders.c.status == expected.value)
                .values(
                    status=order.status.value,
                    restock_pending=order.restock_pending,
                    updated_at=_now(),
                )
                .returning(*orders.c)
            )
            row = result.first()
            if row is None:
                await session.rollback()
                return None
            await session.commit()
            return _row_to_order(row)

    async def delete(self, order_id: int) -> bool:
        async with self._session("order delete") as session:
            result = await session.execute(delete(orders).where(orders.c.id == order_id))
            deleted = result.rowcount > 0
            # ID はシーケンスのリセット後に再利用されうる
            await session.execute(
                delete(order_restocks).where(order_restocks.c.order_id == order_id)
            )
            await session.commit()
            return deleted

    async def count(self) -> int:
        async with self._session("order count") as session:
            result = await session.execute(select(func.count()).select_from(orders))
            return result.scalar_one()

    async def claim_restock(self, order_id: int, line_index: int) -> bool:
        async with self._session("restock claim") as session:
            result = await session.execute(
                text("""
                    INSERT INTO order_restocks (order_id, line_index)
                    VALUES (:order_id, :line_index)
                    ON CONFLICT DO NOTHING
                """),
                {"order_id": order_id, "line_index": line_index},
            )
            claimed = result.rowcount == 1
            await session.commit()
            return claimed

    async def release_restock(self, order_id: int, line_index: int) -> None:
        async with self._session("restock release") as session:
            await session.execute(
                delete(order_restocks).where(
                    order_restocks.c.order_id == order_id,
                    order_restocks.c.line_index == line_index,
                )
            )
            await session.commit()

    async def complete_restock(self, order_id: int) -> OrderAggregate | None:
        async with self._session("restock completion") as session:
            result = await session.execute(
                update(orders)
                .where(orders.c.id == order_id)
                .values(restock_pending=False, updated_at=_now())
                .returning(*orders.c)
            )
            row = result.first()
            await session.commit()
            return _row_to_order(row) if row else None


# ── 注文者 ───────────────────────────────────────


class SqlOwnerDirectory(_SqlStore, OwnerDirectory):
    async def find_owner(self, owner_id: int) -> Owner | None:
        async with self._session("owner lookup") as session:
            result = await session.execute(
                select(owners.c.id, owners.c.name).where(owners.c.id == owner_id)
            )
            row = result.first()
            return Owner(id=row.id, name=row.name) if row else None

    async def add_owner(self, owner_id: int, name: str) -> Owner:
        async with self._session("owner insert") as session:
            await session.execute(insert(owners).values(id=owner_id, name=name))
            await session.commit()
        return Owner(id=owner_id, name=name)
