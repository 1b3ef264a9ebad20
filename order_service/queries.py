"""
Order Service — クエリハンドラ (Read 側)

読み取りは常に注文 ID の昇順で返す（ページングや表示の再現性のため）。
"""

from .aggregate import OrderAggregate
from .errors import OrderNotFound
from .ports import OrderRepository


class OrderQueries:
    def __init__(self, orders: OrderRepository) -> None:
        self.orders = orders

    async def get_by_id(self, order_id: int) -> OrderAggregate:
        order = await self.orders.get(order_id)
        if order is None:
            raise OrderNotFound(order_id)
        return order

    async def get_by_owner(self, owner_id: int) -> list[OrderAggregate]:
        return await self.orders.list_by_owner(owner_id)

    async def list_all(self) -> list[OrderAggregate]:
        return await self.orders.list_all()


def order_to_dict(order: OrderAggregate) -> dict:
    """API レスポンス用の表現 (既存クライアント互換の camelCase)。"""
    return {
        "id": order.id,
        "ownerId": order.owner_id,
        "ownerDisplayName": order.owner_display_name,
        "lineItems": [
            {
                "productId": item.product_id,
                "name": item.name,
                "unitPrice": float(item.unit_price),
                "quantity": item.quantity,
                "subtotal": float(item.subtotal),
            }
            for item in order.line_items
        ],
        "totalPrice": float(order.total_price),
        "status": order.status.value,
        "createdAt": order.created_at.isoformat() if order.created_at else None,
        "updatedAt": order.updated_at.isoformat() if order.updated_at else None,
    }
