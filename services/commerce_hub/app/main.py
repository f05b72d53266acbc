"""
Commerce Hub: FastAPI エントリーポイント

チェックアウト・在庫調整・注文ライフサイクルを提供するサービス。
PostgreSQL (商品・注文・監査ログ) と Redis (冪等キー・イベントストリーム) を使う。

コマンド (POST/PUT/PATCH) はコマンドハンドラとチェックアウト・オーケストレーターへ、
クエリ (GET) はストアを直接読む。
"""


import logging
import os
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from . import commands
from .audit import AuditSink
from .checkout import CheckoutOrchestrator
from .db import init_db
from .idempotency import IdempotencyStore
from .models import LineRequest, Order, OrderStatus, Product, ProductStock
from .order_store import OrderStore
from .product_store import ProductStore
from .publisher import EventPublisher
from .results import ErrorKind, Result

DATABASE_URL = os.environ["DATABASE_URL"]
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")
EVENT_STREAM_PREFIX = os.environ.get("EVENT_STREAM_PREFIX", "commerce_hub")
ORDER_CREATED_ROUTING_KEY = os.environ.get("ORDER_CREATED_ROUTING_KEY", "order.created")
IDEMPOTENCY_TTL_SECONDS = int(os.environ.get("IDEMPOTENCY_TTL_SECONDS", "86400"))
SEED_PRODUCTS = os.environ.get("SEED_PRODUCTS", "false").lower() in ("1", "true", "yes")
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

engine = create_async_engine(DATABASE_URL, echo=False, pool_pre_ping=True)
async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
audit_sink = AuditSink(async_session)
redis_pool: aioredis.Redis | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global redis_pool
    redis_pool = aioredis.from_url(REDIS_URL, decode_responses=True)
    await init_db(engine, seed=SEED_PRODUCTS)
    yield
    await audit_sink.drain()
    await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(title="Commerce Hub", lifespan=lifespan)


@app.exception_handler(Exception)
async def unhandled_exception(request: Request, exc: Exception):
    logger.error(
        "Unhandled exception for %s %s", request.method, request.url.path, exc_info=exc
    )
    return JSONResponse(status_code=500, content={"detail": "An unexpected error occurred."})


# ── Dependencies ─────────────────────────────────


def get_product_store() -> ProductStore:
    return ProductStore(async_session)


def get_order_store() -> OrderStore:
    return OrderStore(async_session)


def get_idempotency_store() -> IdempotencyStore:
    return IdempotencyStore(redis_pool, ttl_seconds=IDEMPOTENCY_TTL_SECONDS)


def get_audit_sink() -> AuditSink:
    return audit_sink


def get_publisher() -> EventPublisher:
    return EventPublisher(redis_pool, stream_prefix=EVENT_STREAM_PREFIX)


# ── Request Models ───────────────────────────────


class LineItem(LineRequest):
    product_id: str = Field(min_length=1, max_length=24)
    quantity: int = Field(ge=1)


class CheckoutRequest(BaseModel):
    customer_id: str = Field(min_length=1, max_length=50)
    items: list[LineItem] = Field(min_length=1)


class UpdateOrderRequest(BaseModel):
    customer_id: str = Field(min_length=1, max_length=50)
    items: list[LineItem]
    status: OrderStatus


class StockAdjustmentRequest(BaseModel):
    delta: int


STATUS_CODES = {
    ErrorKind.INVALID_ARGUMENT: 422,
    ErrorKind.INSUFFICIENT_STOCK: 422,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.INTERNAL: 500,
}


def unwrap(result: Result):
    if not result.success:
        raise HTTPException(status_code=STATUS_CODES[result.error], detail=result.reason)
    return result.value


# ── Command Endpoints (write side) ──────────────


@app.post("/api/orders/checkout", response_model=Order, status_code=201)
async def cmd_checkout(
    req: CheckoutRequest,
    idempotency_key: str | None = Header(default=None),
    products: ProductStore = Depends(get_product_store),
    orders: OrderStore = Depends(get_order_store),
    idempotency: IdempotencyStore = Depends(get_idempotency_store),
    audit: AuditSink = Depends(get_audit_sink),
    publisher: EventPublisher = Depends(get_publisher),
):
    """全明細の在庫を引き当て、注文を作成して発行する"""
    orchestrator = CheckoutOrchestrator(
        products,
        orders,
        idempotency,
        audit,
        publisher,
        routing_key=ORDER_CREATED_ROUTING_KEY,
    )
    result = await orchestrator.execute(req.customer_id, req.items, idempotency_key)
    return unwrap(result)


@app.put("/api/orders/{order_id}", response_model=Order)
async def cmd_update_order(
    order_id: str,
    req: UpdateOrderRequest,
    orders: OrderStore = Depends(get_order_store),
    audit: AuditSink = Depends(get_audit_sink),
):
    """注文を置き換え、新しいステータスへ遷移させる"""
    result = await commands.update_order(
        orders, audit, order_id, req.customer_id, req.items, req.status
    )
    return unwrap(result)


@app.patch("/api/products/{product_id}/stock", response_model=ProductStock)
async def cmd_adjust_stock(
    product_id: str,
    req: StockAdjustmentRequest,
    products: ProductStore = Depends(get_product_store),
    audit: AuditSink = Depends(get_audit_sink),
):
    """入荷 (正の delta) または廃棄 (負の delta)"""
    result = await commands.adjust_stock(products, audit, product_id, req.delta)
    return unwrap(result)


# ── Query Endpoints (read side) ─────────────────


@app.get("/api/products", response_model=list[Product])
async def query_list_products(products: ProductStore = Depends(get_product_store)):
    return await products.list_all()


@app.get("/api/orders", response_model=list[Order])
async def query_list_orders(
    customer_id: str | None = None,
    orders: OrderStore = Depends(get_order_store),
):
    return await orders.find_all(customer_id)


@app.get("/api/orders/{order_id}", response_model=Order)
async def query_get_order(order_id: str, orders: OrderStore = Depends(get_order_store)):
    order = await orders.get(order_id)
    if not order:
        raise HTTPException(404, "Order not found")
    return order


@app.get("/health")
async def health():
    try:
        async with async_session() as session:
            await session.execute(text("SELECT 1"))
        await redis_pool.ping()
    except Exception:
        logger.exception("Health check failed")
        return JSONResponse(
            status_code=503,
            content={"status": "Unhealthy", "service": "commerce-hub"},
        )
    return {"status": "Healthy", "service": "commerce-hub"}
