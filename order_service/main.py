"""
Order Service — FastAPI エントリーポイント

注文の確定 (在庫引き落とし付き)、参照、ステータス変更、削除を提供する。

レスポンスは既存クライアント互換のエンベロープ:
  成功: {"success": true, "data": ...}
  失敗: {"success": false, "message": ..., "code": ...}
        (本番以外では "stack" も含める)
"""

import logging
import traceback
from contextlib import asynccontextmanager
from dataclasses import dataclass
from decimal import Decimal

import redis.asyncio as aioredis
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from .aggregate import OrderStatus
from .commands import OrderCommands
from .config import Settings, load_settings
from .errors import InsufficientStock, OrderNotFound, OrderServiceError
from .notifications import OrderNotifier
from .placement import LineItemRequest, OrderPlacementService
from .ports import OrderRepository, OwnerDirectory, ProductLedger, SequenceGenerator
from .queries import OrderQueries, order_to_dict
from .sql_store import (
    SqlOrderRepository,
    SqlOwnerDirectory,
    SqlProductLedger,
    SqlSequenceGenerator,
    create_schema,
)

logger = logging.getLogger(__name__)


@dataclass
class Services:
    placement: OrderPlacementService
    commands: OrderCommands
    queries: OrderQueries
    notifier: OrderNotifier


def build_services(
    owners: OwnerDirectory,
    ledger: ProductLedger,
    sequence: SequenceGenerator,
    orders: OrderRepository,
    notifier: OrderNotifier,
) -> Services:
    return Services(
        placement=OrderPlacementService(owners, ledger, sequence, orders, notifier),
        commands=OrderCommands(orders, ledger, sequence, notifier),
        queries=OrderQueries(orders),
        notifier=notifier,
    )


# ── Request Models ───────────────────────────────


class LineItemIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    product_id: int | None = Field(default=None, alias="productId")
    name: str | None = None
    quantity: int = 1
    unit_price: Decimal | None = Field(default=None, alias="unitPrice")


class PlaceOrderRequest(BaseModel):
    """
    注文リクエスト。明細は lineItems で複数指定するか、
    旧形式の itemName / itemPrice / quantity で 1 件だけ指定する。
    """
    model_config = ConfigDict(populate_by_name=True)

    owner_id: int = Field(validation_alias=AliasChoices("ownerId", "userId", "owner_id"))
    line_items: list[LineItemIn] | None = Field(
        default=None, validation_alias=AliasChoices("lineItems", "items", "line_items")
    )
    item_name: str | None = Field(default=None, alias="itemName")
    item_price: Decimal | None = Field(default=None, alias="itemPrice")
    quantity: int = 1
    display_name: str | None = Field(
        default=None, validation_alias=AliasChoices("displayName", "username", "display_name")
    )

    def to_requests(self) -> list[LineItemRequest]:
        if self.line_items is not None:
            return [
                LineItemRequest(
                    quantity=item.quantity,
                    product_id=item.product_id,
                    name=item.name,
                    unit_price=item.unit_price,
                )
                for item in self.line_items
            ]
        if self.item_name is None:
            return []
        return [
            LineItemRequest(
                quantity=self.quantity, name=self.item_name, unit_price=self.item_price
            )
        ]


class UpdateStatusRequest(BaseModel):
    status: str


# ── App Factory ──────────────────────────────────


def create_app(services: Services | None = None, settings: Settings | None = None) -> FastAPI:
    """
    services を渡した場合はそれを使う (テスト・インメモリ実行)。
    省略時は起動時に DATABASE_URL / REDIS_URL から SQL ストアと Redis を構築する。
    """
    settings = settings or load_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.services is not None:
            yield
            await app.state.services.notifier.drain()
            return

        engine = create_async_engine(settings.database_url, echo=False)
        await create_schema(engine)
        async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        redis_pool = aioredis.from_url(settings.redis_url, decode_responses=True)

        sequence = SqlSequenceGenerator(async_session)
        app.state.services = build_services(
            owners=SqlOwnerDirectory(async_session),
            ledger=SqlProductLedger(async_session, sequence),
            sequence=sequence,
            orders=SqlOrderRepository(async_session),
            notifier=OrderNotifier(redis_pool, settings.order_events_channel),
        )
        logger.info("Order service started (env=%s)", settings.app_env)
        yield
        await app.state.services.notifier.drain()
        await redis_pool.aclose()
        await engine.dispose()

    app = FastAPI(title="Order Service", lifespan=lifespan)
    app.state.services = services
    app.state.settings = settings

    _register_error_handlers(app, settings)
    _register_routes(app)
    return app


def _services(request: Request) -> Services:
    return request.app.state.services


# ── Error Handlers ───────────────────────────────


def _error_body(message: str, code: str, exc: Exception, settings: Settings) -> dict:
    body = {"success": False, "message": message, "code": code}
    if not settings.is_production:
        body["stack"] = "".join(traceback.format_exception(exc))
    return body


def _register_error_handlers(app: FastAPI, settings: Settings) -> None:
    @app.exception_handler(OrderServiceError)
    async def handle_order_error(request: Request, exc: OrderServiceError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        body = _error_body(exc.message, exc.code, exc, settings)
        if isinstance(exc, InsufficientStock):
            body["detail"] = {
                "productName": exc.product_name,
                "available": exc.available,
                "requested": exc.requested,
            }
        return JSONResponse(status_code=exc.status_code, content=body)

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        message = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
        )
        logger.info("Rejected %s %s: %s", request.method, request.url.path, message)
        return JSONResponse(
            status_code=400, content=_error_body(message, "validation_error", exc, settings)
        )

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content=_error_body("Internal server error", "internal_error", exc, settings),
        )


# ── Endpoints ────────────────────────────────────


def _register_routes(app: FastAPI) -> None:
    @app.post("/orders", status_code=201)
    async def place_order(req: PlaceOrderRequest, request: Request):
        """注文を確定する（在庫引き落とし付き）"""
        order = await _services(request).placement.place_order(
            req.owner_id, req.to_requests(), req.display_name
        )
        return {"success": True, "data": order_to_dict(order)}

    @app.get("/orders")
    async def list_orders(request: Request):
        orders = await _services(request).queries.list_all()
        return {"success": True, "count": len(orders), "data": [order_to_dict(o) for o in orders]}

    @app.get("/orders/user/{owner_id}")
    async def list_orders_by_owner(owner_id: int, request: Request):
        orders = await _services(request).queries.get_by_owner(owner_id)
        return {"success": True, "count": len(orders), "data": [order_to_dict(o) for o in orders]}

    @app.post("/orders/sequence/reset")
    async def reset_order_sequence(request: Request):
        """注文が 0 件のときだけ orderId シーケンスを戻す（保守用）"""
        reset = await _services(request).commands.reset_order_sequence_if_empty()
        return {"success": True, "data": {"reset": reset}}

    @app.get("/orders/{order_id}")
    async def get_order(order_id: int, request: Request):
        order = await _services(request).queries.get_by_id(order_id)
        return {"success": True, "data": order_to_dict(order)}

    @app.put("/orders/{order_id}")
    async def update_order_status(order_id: int, req: UpdateStatusRequest, request: Request):
        status = OrderStatus.parse(req.status)
        order = await _services(request).commands.update_status(order_id, status)
        return {"success": True, "data": order_to_dict(order)}

    @app.put("/orders/{order_id}/pay")
    async def mark_order_paid(order_id: int, request: Request):
        order = await _services(request).commands.mark_processing(order_id)
        return {"success": True, "data": order_to_dict(order)}

    @app.put("/orders/{order_id}/ship")
    async def mark_order_shipped(order_id: int, request: Request):
        order = await _services(request).commands.mark_shipped(order_id)
        return {"success": True, "data": order_to_dict(order)}

    @app.put("/orders/{order_id}/deliver")
    async def mark_order_delivered(order_id: int, request: Request):
        order = await _services(request).commands.mark_delivered(order_id)
        return {"success": True, "data": order_to_dict(order)}

    @app.put("/orders/{order_id}/cancel")
    async def cancel_order(order_id: int, request: Request):
        order = await _services(request).commands.cancel(order_id)
        return {"success": True, "data": order_to_dict(order)}

    @app.delete("/orders/{order_id}")
    async def delete_order(order_id: int, request: Request):
        if not await _services(request).commands.delete_order(order_id):
            raise OrderNotFound(order_id)
        return {"success": True, "message": "Order deleted successfully"}

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "order-service"}


settings = load_settings()
logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = create_app(settings=settings)
