"""
Order Service — ストレージのポート定義

注文フローが依存するストアの抽象インターフェース。
実装は sql_store (PostgreSQL / SQLite) と memory_store (テスト・ローカル実行用)。
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from .aggregate import OrderAggregate, OrderStatus


@dataclass(frozen=True)
class Product:
    id: int
    name: str
    unit_price: Decimal
    stock: int
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class Owner:
    id: int
    name: str


class SequenceGenerator(ABC):
    """名前付きカウンタ。1, 2, 3, ... をアトミックに発行する。"""

    @abstractmethod
    async def next_value(self, name: str) -> int:
        ...

    @abstractmethod
    async def reset(self, name: str) -> None:
        ...


class ProductLedger(ABC):
    """商品カタログのうち注文フローが触れてよい部分。"""

    @abstractmethod
    async def find_by_id(self, product_id: int) -> Product | None:
        ...

    @abstractmethod
    async def find_by_name(self, name: str) -> Product | None:
        ...

    @abstractmethod
    async def decrement_stock(self, product_id: int, quantity: int) -> Product:
        """条件付き減算。stock >= quantity のときだけ適用し、それ以外は InsufficientStock。"""

    @abstractmethod
    async def restore_stock(self, product_id: int, quantity: int) -> Product:
        ...

    @abstractmethod
    async def add_product(self, name: str, unit_price: Decimal, stock: int) -> Product:
        ...


class OrderRepository(ABC):
    @abstractmethod
    async def add(self, order: OrderAggregate) -> OrderAggregate:
        """採番済みの注文を保存し、タイムスタンプを付けて返す。"""

    @abstractmethod
    async def get(self, order_id: int) -> OrderAggregate | None:
        ...

    @abstractmethod
    async def list_by_owner(self, owner_id: int) -> list[OrderAggregate]:
        ...

    @abstractmethod
    async def list_all(self) -> list[OrderAggregate]:
        ...

    @abstractmethod
    async def save_status(
        self, order: OrderAggregate, expected: OrderStatus
    ) -> OrderAggregate | None:
        """
        ステータスの CAS。保存済みステータスが expected でなければ None を返す。

        restock_pending も同時に書き込む。
        """

    @abstractmethod
    async def delete(self, order_id: int) -> bool:
        ...

    @abstractmethod
    async def count(self) -> int:
        ...

    # ── キャンセル時の在庫戻し ───────────────────

    @abstractmethod
    async def claim_restock(self, order_id: int, line_index: int) -> bool:
        """
        明細 1 件分の在庫戻しを予約する。

        既に予約済み (戻し済み) なら False。同じ明細を二重に戻さないための排他。
        """

    @abstractmethod
    async def release_restock(self, order_id: int, line_index: int) -> None:
        """在庫戻しに失敗した明細の予約を取り消し、再試行できるようにする。"""

    @abstractmethod
    async def complete_restock(self, order_id: int) -> OrderAggregate | None:
        ...


class OwnerDirectory(ABC):
    @abstractmethod
    async def find_owner(self, owner_id: int) -> Owner | None:
        ...
