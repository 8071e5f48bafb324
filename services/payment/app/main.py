"""
Payment Service — FastAPI エントリーポイント

支払いの状態機械 (authorize → capture / cancel) を HTTP API として公開する。
ゲートウェイの失敗は 200 + {"success": false, "error": ..., "payment": ...} で返し、
ビジネスルール違反だけをエラーステータスにする。
"""

import os
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import FastAPI
from pydantic import BaseModel

from services.shared.db import create_engine, create_session_factory, create_tables
from services.shared.errors import NotFound, install_error_handlers
from services.shared.messaging import configure_logging

from . import commands, queries
from .gateway import PaymentGateway, SimulatedGateway
from .schema import metadata

DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite+aiosqlite:///./payments.db")
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")
GATEWAY_FAILURE_RATE = float(os.environ.get("GATEWAY_FAILURE_RATE", "0.1"))
GATEWAY_LATENCY_SECONDS = float(os.environ.get("GATEWAY_LATENCY_SECONDS", "1.0"))
GATEWAY_TIMEOUT_SECONDS = float(os.environ.get("GATEWAY_TIMEOUT_SECONDS", "10"))

engine = create_engine(DATABASE_URL)
async_session = create_session_factory(engine)
redis_pool: aioredis.Redis | None = None
gateway: PaymentGateway = SimulatedGateway(
    failure_rate=GATEWAY_FAILURE_RATE,
    latency=(GATEWAY_LATENCY_SECONDS / 2, GATEWAY_LATENCY_SECONDS * 1.5),
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    global redis_pool
    configure_logging("payment-service")
    await create_tables(engine, metadata)
    redis_pool = aioredis.from_url(REDIS_URL, decode_responses=True)
    yield
    await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(title="Payment Service", lifespan=lifespan)
install_error_handlers(app)


# ── Request Models ───────────────────────────────


class AuthorizeRequest(BaseModel):
    order_id: str
    user_id: str
    amount: float
    currency: str = "VND"
    payment_method: str = "credit_card"
    idempotency_key: str | None = None
    metadata: dict | None = None


class CaptureRequest(BaseModel):
    amount: float | None = None


class CancelRequest(BaseModel):
    reason: str = "Cancelled by user"


# ── Command Endpoints (Write 側) ─────────────────


@app.post("/commands/payments/authorize")
async def cmd_authorize(req: AuthorizeRequest):
    """与信コマンド"""
    async with async_session() as session:
        result = await commands.authorize_payment(
            session,
            redis_pool,
            gateway,
            req.order_id,
            req.user_id,
            req.amount,
            currency=req.currency,
            payment_method=req.payment_method,
            idempotency_key=req.idempotency_key,
            metadata=req.metadata,
            timeout=GATEWAY_TIMEOUT_SECONDS,
        )
        return result.model_dump()


@app.post("/commands/payments/{payment_id}/capture")
async def cmd_capture(payment_id: str, req: CaptureRequest | None = None):
    """売上確定コマンド"""
    async with async_session() as session:
        result = await commands.capture_payment(
            session,
            redis_pool,
            gateway,
            payment_id,
            amount=req.amount if req else None,
            timeout=GATEWAY_TIMEOUT_SECONDS,
        )
        return result.model_dump()


@app.post("/commands/payments/{payment_id}/cancel")
async def cmd_cancel(payment_id: str, req: CancelRequest | None = None):
    """取消コマンド（Saga の補償トランザクション）"""
    async with async_session() as session:
        result = await commands.cancel_payment(
            session,
            redis_pool,
            gateway,
            payment_id,
            reason=req.reason if req else "Cancelled by user",
            timeout=GATEWAY_TIMEOUT_SECONDS,
        )
        return result.model_dump()


# ── Query Endpoints (Read 側) ────────────────────


@app.get("/queries/payments")
async def query_list_payments():
    async with async_session() as session:
        return await queries.list_payments(session)


@app.get("/queries/payments/{payment_id}")
async def query_get_payment(payment_id: str):
    """支払いと取引履歴を取得"""
    async with async_session() as session:
        payment = await queries.get_payment(session, payment_id)
        if not payment:
            raise NotFound(f"Payment {payment_id} not found")
        return payment


@app.get("/queries/orders/{order_id}/payments")
async def query_payments_by_order(order_id: str):
    async with async_session() as session:
        return await queries.list_payments_by_order(session, order_id)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "payment-service"}
