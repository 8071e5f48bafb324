"""
Inventory Service — 予約台帳 コマンドハンドラ (CQRS Write 側)

在庫の予約(Reserve)・確定(Commit)・解放(Release)・期限切れスイープを処理する。

  reserve  : reserved += qty,  予約レコードを作成 (有効期限 = now + TTL)
  commit   : total -= qty, reserved -= qty, 予約レコードを削除して確定記録を残す
  release  : reserved -= qty,  予約レコードを削除
  sweep    : 期限切れの予約をまとめて release と同じように処理

同じ商品への操作は同じカウンタを読み書きするため直列化が必要。
- reserve は条件付き UPDATE 1 文で「在庫確認 + 予約数の加算」を行う。
  同時に 2 つの予約が来ても、合計が在庫を超えれば片方の UPDATE が 0 行になる。
- commit / release / sweep はまず予約行を DELETE ... RETURNING する。
  実際に行を削除できた 1 つの操作だけがカウンタを動かす。
"""

import logging
from collections import defaultdict
from datetime import datetime, timedelta
from uuid import uuid4

import redis.asyncio as aioredis
from sqlalchemy import delete, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from services.shared.db import as_utc, utcnow
from services.shared.errors import Expired, InsufficientStock, InvalidInput, InvalidState, NotFound
from services.shared.messaging import publish_event

from .events import ReservationsExpired, StockCommitted, StockReleased, StockReserved, StockRestocked
from .schema import products, stock_commits, stock_reservations

logger = logging.getLogger(__name__)

CHANNEL = "inventory_events"
RESERVATION_TTL = timedelta(minutes=15)


async def create_product(
    session: AsyncSession,
    name: str,
    price: float,
    stock_quantity: int,
    product_id: str | None = None,
) -> dict:
    """商品 (在庫レコード) を登録する。"""
    if not name:
        raise InvalidInput("name is required")
    if price < 0:
        raise InvalidInput("price must not be negative")
    if stock_quantity < 0:
        raise InvalidInput("stock_quantity must not be negative")

    product_id = product_id or str(uuid4())
    now = utcnow()
    try:
        await session.execute(
            insert(products).values(
                product_id=product_id,
                name=name,
                price=price,
                stock_quantity=stock_quantity,
                reserved_quantity=0,
                created_at=now,
                updated_at=now,
            )
        )
        await session.commit()
    except IntegrityError:
        await session.rollback()
        raise InvalidState(f"Product {product_id} already exists")
    return {
        "product_id": product_id,
        "name": name,
        "price": price,
        "stock_quantity": stock_quantity,
        "reserved_quantity": 0,
    }


async def reserve_stock(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    product_id: str,
    quantity: int,
    request_key: str | None = None,
    ttl: timedelta = RESERVATION_TTL,
    now: datetime | None = None,
) -> dict:
    """
    在庫予約コマンド

    request_key が指定され、同じキーの予約がまだ残っていれば
    新しく予約せずにそれを返す（Saga のリトライで二重に押さえない）。
    """
    if quantity <= 0:
        raise InvalidInput("quantity must be greater than 0")
    now = now or utcnow()

    if request_key:
        result = await session.execute(
            select(stock_reservations).where(stock_reservations.c.request_key == request_key)
        )
        existing = result.first()
        if existing:
            await session.rollback()
            if existing.product_id != product_id or existing.quantity != quantity:
                raise InvalidInput(f"request_key {request_key} is already used for another reservation")
            return {
                "reservation_id": existing.reservation_id,
                "product_id": existing.product_id,
                "quantity": existing.quantity,
                "expires_at": as_utc(existing.expires_at),
            }

    result = await session.execute(
        update(products)
        .where(products.c.product_id == product_id)
        .where(products.c.stock_quantity - products.c.reserved_quantity >= quantity)
        .values(
            reserved_quantity=products.c.reserved_quantity + quantity,
            updated_at=now,
        )
    )
    if result.rowcount == 0:
        row = (
            await session.execute(
                select(products.c.stock_quantity, products.c.reserved_quantity).where(
                    products.c.product_id == product_id
                )
            )
        ).first()
        await session.rollback()
        if row is None:
            raise NotFound(f"Product {product_id} not found")
        available = row.stock_quantity - row.reserved_quantity
        raise InsufficientStock(
            f"Insufficient stock for product {product_id}: requested={quantity}, available={available}"
        )

    reservation_id = str(uuid4())
    expires_at = now + ttl
    await session.execute(
        insert(stock_reservations).values(
            reservation_id=reservation_id,
            product_id=product_id,
            quantity=quantity,
            request_key=request_key,
            expires_at=expires_at,
            created_at=now,
        )
    )
    await session.commit()

    await publish_event(
        redis,
        CHANNEL,
        StockReserved(
            reservation_id=reservation_id,
            product_id=product_id,
            quantity=quantity,
            expires_at=expires_at,
            timestamp=now,
        ),
    )
    return {
        "reservation_id": reservation_id,
        "product_id": product_id,
        "quantity": quantity,
        "expires_at": expires_at,
    }


async def _take_reservation(session: AsyncSession, reservation_id: str):
    """予約行を削除して返す。既に他の操作が削除していれば None。"""
    result = await session.execute(
        delete(stock_reservations)
        .where(stock_reservations.c.reservation_id == reservation_id)
        .returning(
            stock_reservations.c.reservation_id,
            stock_reservations.c.product_id,
            stock_reservations.c.quantity,
            stock_reservations.c.expires_at,
        )
    )
    return result.first()


async def commit_stock(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    reservation_id: str,
    now: datetime | None = None,
) -> dict:
    """
    予約確定コマンド

    在庫を恒久的に消費する。期限切れの予約は確定できず、
    スイープで解放されるまでそのまま残る。
    確定した予約は stock_commits に記録する。応答を受け取れなかった呼び出し側は
    GET /queries/reservations/{id}/commit で確定済みかどうかを確認できる。
    """
    now = now or utcnow()
    reservation = await _take_reservation(session, reservation_id)
    if reservation is None:
        await session.rollback()
        raise NotFound(f"Reservation {reservation_id} not found")
    if as_utc(reservation.expires_at) <= now:
        await session.rollback()
        raise Expired(f"Reservation {reservation_id} expired")

    await session.execute(
        update(products)
        .where(products.c.product_id == reservation.product_id)
        .values(
            stock_quantity=products.c.stock_quantity - reservation.quantity,
            reserved_quantity=products.c.reserved_quantity - reservation.quantity,
            updated_at=now,
        )
    )
    await session.execute(
        insert(stock_commits).values(
            reservation_id=reservation_id,
            product_id=reservation.product_id,
            quantity=reservation.quantity,
            committed_at=now,
        )
    )
    await session.commit()

    await publish_event(
        redis,
        CHANNEL,
        StockCommitted(
            reservation_id=reservation_id,
            product_id=reservation.product_id,
            quantity=reservation.quantity,
            timestamp=now,
        ),
    )
    return {
        "reservation_id": reservation_id,
        "product_id": reservation.product_id,
        "quantity": reservation.quantity,
    }


async def release_stock(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    reservation_id: str,
) -> dict:
    """
    予約解放コマンド（Saga の補償トランザクション）

    二重解放は 2 回目が NotFound になり、予約数を二重に減らすことはない。
    """
    now = utcnow()
    reservation = await _take_reservation(session, reservation_id)
    if reservation is None:
        await session.rollback()
        raise NotFound(f"Reservation {reservation_id} not found")

    await session.execute(
        update(products)
        .where(products.c.product_id == reservation.product_id)
        .values(
            reserved_quantity=products.c.reserved_quantity - reservation.quantity,
            updated_at=now,
        )
    )
    await session.commit()

    await publish_event(
        redis,
        CHANNEL,
        StockReleased(
            reservation_id=reservation_id,
            product_id=reservation.product_id,
            quantity=reservation.quantity,
            timestamp=now,
        ),
    )
    return {
        "reservation_id": reservation_id,
        "product_id": reservation.product_id,
        "quantity": reservation.quantity,
    }


async def restock(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    product_id: str,
    quantity: int,
) -> dict:
    """確定済みの在庫を総数に戻す（commit_stock の補償）。"""
    if quantity <= 0:
        raise InvalidInput("quantity must be greater than 0")
    now = utcnow()
    result = await session.execute(
        update(products)
        .where(products.c.product_id == product_id)
        .values(stock_quantity=products.c.stock_quantity + quantity, updated_at=now)
    )
    if result.rowcount == 0:
        await session.rollback()
        raise NotFound(f"Product {product_id} not found")
    await session.commit()

    await publish_event(
        redis,
        CHANNEL,
        StockRestocked(product_id=product_id, quantity=quantity, timestamp=now),
    )
    return {"product_id": product_id, "quantity": quantity}


async def sweep_expired(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    now: datetime | None = None,
) -> dict:
    """
    期限切れ予約のスイープ（定期バックグラウンド処理）

    1 トランザクションで期限切れの予約を削除し、商品ごとに予約数を戻す。
    同じ予約に対する commit / release と競合しても、行を削除できた方だけが
    カウンタを動かす。
    """
    now = now or utcnow()
    result = await session.execute(
        delete(stock_reservations)
        .where(stock_reservations.c.expires_at <= now)
        .returning(
            stock_reservations.c.reservation_id,
            stock_reservations.c.product_id,
            stock_reservations.c.quantity,
        )
    )
    expired = result.all()
    if not expired:
        await session.rollback()
        return {"expired": 0, "released": {}}

    released: dict[str, int] = defaultdict(int)
    for row in expired:
        released[row.product_id] += row.quantity

    for product_id, quantity in released.items():
        await session.execute(
            update(products)
            .where(products.c.product_id == product_id)
            .values(
                reserved_quantity=products.c.reserved_quantity - quantity,
                updated_at=now,
            )
        )
    await session.commit()

    reservation_ids = [row.reservation_id for row in expired]
    logger.info("Swept %d expired reservations", len(reservation_ids))
    await publish_event(
        redis,
        CHANNEL,
        ReservationsExpired(
            reservation_ids=reservation_ids,
            released=dict(released),
            timestamp=now,
        ),
    )
    return {"expired": len(reservation_ids), "released": dict(released)}
