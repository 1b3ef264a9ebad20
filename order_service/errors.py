"""
Order Service — エラー定義

すべてのドメインエラーは OrderServiceError を継承する。
code は機械判定用、status_code は HTTP 層でのレスポンスコード。
リトライ可能なのは PersistenceFailure のみ。
"""


class OrderServiceError(Exception):
    code = "order_service_error"
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


# ── クライアントエラー ────────────────────────────


class ValidationError(OrderServiceError):
    code = "validation_error"
    status_code = 400


class InvalidLineItem(ValidationError):
    """数量が 0 以下、または単価が負の明細"""
    code = "invalid_line_item"


class NotFoundError(OrderServiceError):
    code = "not_found"
    status_code = 404


class OwnerNotFound(NotFoundError):
    code = "owner_not_found"

    def __init__(self, owner_id: int) -> None:
        super().__init__(f"User with ID {owner_id} not found")
        self.owner_id = owner_id


class ProductNotFound(NotFoundError):
    code = "product_not_found"

    def __init__(self, reference: int | str) -> None:
        super().__init__(f"Product '{reference}' not found")
        self.reference = reference


class OrderNotFound(NotFoundError):
    code = "order_not_found"

    def __init__(self, order_id: int) -> None:
        super().__init__(f"Order {order_id} not found")
        self.order_id = order_id


class InsufficientStock(OrderServiceError):
    """
    在庫不足。診断用に在庫数と要求数を保持する。
    呼び出し側は数量を減らして再試行できるが、サービス側では自動リトライしない。
    """
    code = "insufficient_stock"
    status_code = 409

    def __init__(self, product_name: str, available: int, requested: int) -> None:
        super().__init__(
            f"Not enough stock for '{product_name}'. "
            f"In stock: {available}, requested: {requested}"
        )
        self.product_name = product_name
        self.available = available
        self.requested = requested


class InvalidTransition(OrderServiceError):
    code = "invalid_transition"
    status_code = 409

    def __init__(self, current: str, target: str, reason: str = "") -> None:
        message = f"Cannot change order status from '{current}' to '{target}'"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.current = current
        self.target = target


# ── サーバーエラー ────────────────────────────────


class PersistenceFailure(OrderServiceError):
    """ストレージ層の失敗（タイムアウト・接続断など）。呼び出し側でリトライ可能。"""
    code = "persistence_failure"
    status_code = 500
