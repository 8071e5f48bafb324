"""
Inventory Service — FastAPI エントリーポイント

在庫の予約台帳 (Reservation Ledger)。
Saga オーケストレーターから reserve / commit / release / restock が呼ばれる。
起動時に期限切れ予約のスイーパーをバックグラウンドタスクとして開始する。
"""

import asyncio
import os
from contextlib import asynccontextmanager
from datetime import timedelta

import redis.asyncio as aioredis
from fastapi import FastAPI
from pydantic import BaseModel, Field

from services.shared.db import create_engine, create_session_factory, create_tables
from services.shared.errors import NotFound, install_error_handlers
from services.shared.messaging import configure_logging

from . import commands, queries
from .schema import metadata
from .sweeper import run_sweeper

DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite+aiosqlite:///./inventory.db")
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")
RESERVATION_TTL = timedelta(seconds=int(os.environ.get("RESERVATION_TTL_SECONDS", "900")))
SWEEP_INTERVAL_SECONDS = float(os.environ.get("SWEEP_INTERVAL_SECONDS", "300"))

engine = create_engine(DATABASE_URL)
async_session = create_session_factory(engine)
redis_pool: aioredis.Redis | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global redis_pool
    configure_logging("inventory-service")
    await create_tables(engine, metadata)
    redis_pool = aioredis.from_url(REDIS_URL, decode_responses=True)

    shutdown_event = asyncio.Event()
    sweeper_task = asyncio.create_task(
        run_sweeper(async_session, redis_pool, shutdown_event, SWEEP_INTERVAL_SECONDS)
    )
    yield
    shutdown_event.set()
    await sweeper_task
    await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(title="Inventory Service", lifespan=lifespan)
install_error_handlers(app)


# ── Request Models ───────────────────────────────


class CreateProductRequest(BaseModel):
    product_id: str | None = None
    name: str
    price: float = 0
    stock_quantity: int = Field(ge=0)


class ReserveRequest(BaseModel):
    quantity: int
    request_key: str | None = None


class RestockRequest(BaseModel):
    quantity: int


# ── Command Endpoints (Write 側) ─────────────────


@app.post("/commands/products", status_code=201)
async def cmd_create_product(req: CreateProductRequest):
    """商品登録コマンド"""
    async with async_session() as session:
        return await commands.create_product(
            session, req.name, req.price, req.stock_quantity, req.product_id
        )


@app.post("/commands/inventory/{product_id}/reserve")
async def cmd_reserve(product_id: str, req: ReserveRequest):
    """在庫予約コマンド"""
    async with async_session() as session:
        return await commands.reserve_stock(
            session,
            redis_pool,
            product_id,
            req.quantity,
            request_key=req.request_key,
            ttl=RESERVATION_TTL,
        )


@app.post("/commands/reservations/{reservation_id}/commit")
async def cmd_commit(reservation_id: str):
    """予約確定コマンド"""
    async with async_session() as session:
        return await commands.commit_stock(session, redis_pool, reservation_id)


@app.post("/commands/reservations/{reservation_id}/release")
async def cmd_release(reservation_id: str):
    """予約解放コマンド（補償トランザクション）"""
    async with async_session() as session:
        return await commands.release_stock(session, redis_pool, reservation_id)


@app.post("/commands/inventory/{product_id}/restock")
async def cmd_restock(product_id: str, req: RestockRequest):
    """在庫戻しコマンド（commit_stock の補償トランザクション）"""
    async with async_session() as session:
        return await commands.restock(session, redis_pool, product_id, req.quantity)


@app.post("/commands/reservations/sweep")
async def cmd_sweep():
    """期限切れ予約を即時にスイープする（運用・デバッグ用）"""
    async with async_session() as session:
        return await commands.sweep_expired(session, redis_pool)


# ── Query Endpoints (Read 側) ────────────────────


@app.get("/queries/products")
async def query_list_products():
    async with async_session() as session:
        return await queries.list_products(session)


@app.get("/queries/products/{product_id}")
async def query_get_product(product_id: str):
    async with async_session() as session:
        product = await queries.get_product(session, product_id)
        if not product:
            raise NotFound(f"Product {product_id} not found")
        return product


@app.get("/queries/products/{product_id}/availability")
async def query_availability(product_id: str):
    """在庫の内訳 (total / reserved / available)"""
    async with async_session() as session:
        return await queries.get_availability(session, product_id)


@app.get("/queries/reservations/{reservation_id}")
async def query_get_reservation(reservation_id: str):
    async with async_session() as session:
        reservation = await queries.get_reservation(session, reservation_id)
        if not reservation:
            raise NotFound(f"Reservation {reservation_id} not found")
        return reservation


@app.get("/queries/reservations/{reservation_id}/commit")
async def query_get_commit(reservation_id: str):
    """予約が確定済みかどうか（確定の応答を失った Saga が照会する）"""
    async with async_session() as session:
        commit = await queries.get_commit(session, reservation_id)
        if not commit:
            raise NotFound(f"Reservation {reservation_id} was not committed")
        return commit


@app.get("/health")
async def health():
    return {"status": "ok", "service": "inventory-service"}
