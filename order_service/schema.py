"""
Order Service — テーブル定義

counters : 名前付きシーケンス (orderId / productId) の最終発行値
products : 在庫台帳（注文フローが更新するのは stock のみ）
owners   : 注文者の参照用スナップショット
orders   : 注文。明細は JSON テキストとして保持する
order_restocks : キャンセル時に在庫を戻した (戻し中の) 明細。二重戻しを防ぐ
"""

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
)

metadata = MetaData()

counters = Table(
    "counters",
    metadata,
    Column("name", String(64), primary_key=True),
    Column("seq", Integer, nullable=False, default=0),
)

products = Table(
    "products",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=False),
    Column("name", String(255), nullable=False, index=True),
    Column("unit_price", Numeric(12, 2), nullable=False),
    Column("stock", Integer, nullable=False, default=0),
    Column("created_at", DateTime(timezone=True)),
    Column("updated_at", DateTime(timezone=True)),
    CheckConstraint("stock >= 0", name="ck_products_stock_non_negative"),
    CheckConstraint("unit_price >= 0", name="ck_products_price_non_negative"),
)

owners = Table(
    "owners",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=False),
    Column("name", String(255), nullable=False),
)

orders = Table(
    "orders",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=False),
    Column("owner_id", Integer, nullable=False, index=True),
    Column("owner_display_name", String(255), nullable=False),
    Column("line_items", Text, nullable=False),
    Column("total_price", Numeric(12, 2), nullable=False),
    Column("status", String(16), nullable=False, default="pending"),
    Column("restock_pending", Boolean, nullable=False, default=False),
    Column("created_at", DateTime(timezone=True)),
    Column("updated_at", DateTime(timezone=True)),
)

order_restocks = Table(
    "order_restocks",
    metadata,
    Column("order_id", Integer, primary_key=True, autoincrement=False),
    Column("line_index", Integer, primary_key=True, autoincrement=False),
)
