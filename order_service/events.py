"""
Order Service — イベント定義

注文に関する事実を過去形で定義する。
Redis Pub/Sub の order_events チャネルに JSON として発行される。
"""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel


class OrderLine(BaseModel):
    product_id: int | None
    name: str
    unit_price: Decimal
    quantity: int


class OrderPlaced(BaseModel):
    """注文が確定し、在庫が引き落とされた"""
    order_id: int
    owner_id: int
    owner_display_name: str
    line_items: list[OrderLine]
    total_price: Decimal
    timestamp: datetime


class OrderStatusChanged(BaseModel):
    """注文ステータスが変更された"""
    order_id: int
    previous_status: str
    status: str
    restocked: bool = False
    timestamp: datetime


class OrderDeleted(BaseModel):
    """注文が物理削除された（在庫は戻さない）"""
    order_id: int
    timestamp: datetime
