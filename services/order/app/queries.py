"""
Order Service — クエリハンドラ (CQRS の Read 側)

orders テーブルはそのままリードモデルとして使う。
注文は常に明細と一緒に返す。
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from services.shared.db import isoformat

from .schema import order_items, orders


def _order_row(row) -> dict:
    return {
        "order_id": row.order_id,
        "user_id": row.user_id,
        "status": row.status,
        "total_amount": float(row.total_amount),
        "currency": row.currency,
        "payment_id": row.payment_id,
        "shipping_address": row.shipping_address,
        "metadata": row._mapping["metadata"] or {},
        "failure_reason": row.failure_reason,
        "created_at": isoformat(row.created_at),
        "updated_at": isoformat(row.updated_at),
    }


async def get_items(session: AsyncSession, order_id: str) -> list[dict]:
    result = await session.execute(
        select(order_items)
        .where(order_items.c.order_id == order_id)
        .order_by(order_items.c.line_no)
    )
    return [
        {
            "line_no": row.line_no,
            "product_id": row.product_id,
            "quantity": row.quantity,
            "unit_price": float(row.unit_price),
            "total_price": float(row.total_price),
            "reservation_id": row.reservation_id,
        }
        for row in result.all()
    ]


async def get_order(session: AsyncSession, order_id: str) -> dict | None:
    """注文と明細を取得する。"""
    result = await session.execute(select(orders).where(orders.c.order_id == order_id))
    row = result.first()
    if not row:
        return None
    order = _order_row(row)
    order["items"] = await get_items(session, order_id)
    return order


async def list_orders(session: AsyncSession) -> list[dict]:
    result = await session.execute(select(orders).order_by(orders.c.created_at.desc()))
    return [_order_row(row) for row in result.all()]


async def list_orders_by_user(session: AsyncSession, user_id: str) -> list[dict]:
    result = await session.execute(
        select(orders)
        .where(orders.c.user_id == user_id)
        .order_by(orders.c.created_at.desc())
    )
    return [_order_row(row) for row in result.all()]
