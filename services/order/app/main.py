"""
Order Service — FastAPI エントリーポイント

注文の受付と Saga オーケストレーション。
POST /orders は Saga を最後まで同期的に実行し、confirmed / failed の注文を返す。
起動時には、前回のプロセスで中断した Saga を再開する。
"""

import asyncio
import os
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import FastAPI
from pydantic import BaseModel, Field

from services.shared.db import create_engine, create_session_factory, create_tables
from services.shared.errors import NotFound, install_error_handlers
from services.shared.messaging import configure_logging

from . import queries
from .clients import InventoryClient, PaymentClient, UserClient
from .orchestrator import OrderSagaOrchestrator
from .schema import metadata

DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite+aiosqlite:///./orders.db")
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")
USER_SERVICE_URL = os.environ.get("USER_SERVICE_URL", "http://localhost:8001")
INVENTORY_SERVICE_URL = os.environ.get("INVENTORY_SERVICE_URL", "http://localhost:8002")
PAYMENT_SERVICE_URL = os.environ.get("PAYMENT_SERVICE_URL", "http://localhost:8003")
HTTP_TIMEOUT_SECONDS = float(os.environ.get("HTTP_TIMEOUT_SECONDS", "10"))
STEP_TIMEOUT_SECONDS = float(os.environ.get("STEP_TIMEOUT_SECONDS", "30"))
UPSTREAM_RETRY_ATTEMPTS = int(os.environ.get("UPSTREAM_RETRY_ATTEMPTS", "3"))

engine = create_engine(DATABASE_URL)
async_session = create_session_factory(engine)
redis_pool: aioredis.Redis | None = None
orchestrator: OrderSagaOrchestrator | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global redis_pool, orchestrator
    configure_logging("order-service")
    await create_tables(engine, metadata)
    redis_pool = aioredis.from_url(REDIS_URL, decode_responses=True)

    client_options = {"timeout": HTTP_TIMEOUT_SECONDS, "attempts": UPSTREAM_RETRY_ATTEMPTS}
    users = UserClient(USER_SERVICE_URL, **client_options)
    inventory = InventoryClient(INVENTORY_SERVICE_URL, **client_options)
    payments = PaymentClient(PAYMENT_SERVICE_URL, **client_options)
    orchestrator = OrderSagaOrchestrator(
        async_session, redis_pool, users, inventory, payments, step_timeout=STEP_TIMEOUT_SECONDS
    )
    resume_task = asyncio.create_task(orchestrator.resume_pending())
    yield
    await resume_task
    for client in (users, inventory, payments):
        await client.aclose()
    await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(title="Order Service", lifespan=lifespan)
install_error_handlers(app)


# ── Request Models ───────────────────────────────


class OrderItemRequest(BaseModel):
    product_id: str
    quantity: int = Field(gt=0, strict=True)
    unit_price: float = Field(ge=0)


class CreateOrderRequest(BaseModel):
    user_id: str
    items: list[OrderItemRequest]
    shipping_address: str | None = None
    currency: str = "VND"
    payment_method: str = "credit_card"
    metadata: dict | None = None


# ── Command Endpoints (Write 側) ─────────────────


@app.post("/orders", status_code=201)
async def cmd_create_order(req: CreateOrderRequest):
    """注文作成コマンド（Saga を開始して結果まで待つ）"""
    return await orchestrator.create_order(
        req.user_id,
        [item.model_dump() for item in req.items],
        shipping_address=req.shipping_address,
        currency=req.currency,
        payment_method=req.payment_method,
        metadata=req.metadata,
    )


@app.post("/orders/{order_id}/cancel")
async def cmd_cancel_order(order_id: str):
    """注文キャンセルコマンド（補償トランザクションを実行）"""
    return await orchestrator.cancel_order(order_id)


# ── Query Endpoints (Read 側) ────────────────────


@app.get("/orders")
async def query_list_orders(user_id: str | None = None):
    async with async_session() as session:
        if user_id:
            return await queries.list_orders_by_user(session, user_id)
        return await queries.list_orders(session)


@app.get("/orders/{order_id}")
async def query_get_order(order_id: str):
    """注文と明細を取得"""
    async with async_session() as session:
        order = await queries.get_order(session, order_id)
        if not order:
            raise NotFound(f"Order {order_id} not found")
        return order


@app.get("/health")
async def health():
    return {"status": "ok", "service": "order-service"}
