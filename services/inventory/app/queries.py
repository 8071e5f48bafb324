"""
Inventory Service — クエリハンドラ (CQRS Read 側)
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from services.shared.db import isoformat
from services.shared.errors import NotFound

from .schema import products, stock_commits, stock_reservations


def _product_row(row) -> dict:
    return {
        "product_id": row.product_id,
        "name": row.name,
        "price": float(row.price),
        "stock_quantity": row.stock_quantity,
        "reserved_quantity": row.reserved_quantity,
        "available_stock": row.stock_quantity - row.reserved_quantity,
        "updated_at": isoformat(row.updated_at),
    }


async def get_product(session: AsyncSession, product_id: str) -> dict | None:
    result = await session.execute(select(products).where(products.c.product_id == product_id))
    row = result.first()
    if not row:
        return None
    return _product_row(row)


async def list_products(session: AsyncSession) -> list[dict]:
    result = await session.execute(select(products).order_by(products.c.name))
    return [_product_row(row) for row in result.all()]


async def get_availability(session: AsyncSession, product_id: str) -> dict:
    """在庫の内訳 {total, reserved, available} を返す。"""
    result = await session.execute(
        select(products.c.stock_quantity, products.c.reserved_quantity).where(
            products.c.product_id == product_id
        )
    )
    row = result.first()
    if not row:
        raise NotFound(f"Product {product_id} not found")
    return {
        "product_id": product_id,
        "total": row.stock_quantity,
        "reserved": row.reserved_quantity,
        "available": row.stock_quantity - row.reserved_quantity,
    }


async def get_reservation(session: AsyncSession, reservation_id: str) -> dict | None:
    result = await session.execute(
        select(stock_reservations).where(stock_reservations.c.reservation_id == reservation_id)
    )
    row = result.first()
    if not row:
        return None
    return {
        "reservation_id": row.reservation_id,
        "product_id": row.product_id,
        "quantity": row.quantity,
        "expires_at": isoformat(row.expires_at),
    }


async def get_commit(session: AsyncSession, reservation_id: str) -> dict | None:
    """確定済みの予約の記録。確定されていなければ None。"""
    result = await session.execute(
        select(stock_commits).where(stock_commits.c.reservation_id == reservation_id)
    )
    row = result.first()
    if not row:
        return None
    return {
        "reservation_id": row.reservation_id,
        "product_id": row.product_id,
        "quantity": row.quantity,
        "committed_at": isoformat(row.committed_at),
    }
