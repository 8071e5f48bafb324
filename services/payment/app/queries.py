"""
Payment Service — クエリハンドラ (CQRS Read 側)

支払いは常に取引履歴（監査ログ）と一緒に返せるようにする。
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from services.shared.db import isoformat

from .schema import payment_transactions, payments


def payment_row(row) -> dict:
    return {
        "payment_id": row.payment_id,
        "order_id": row.order_id,
        "user_id": row.user_id,
        "amount": float(row.amount),
        "currency": row.currency,
        "status": row.status,
        "payment_method": row.payment_method,
        "authorization_id": row.authorization_id,
        "capture_id": row.capture_id,
        "failure_reason": row.failure_reason,
        "metadata": row._mapping["metadata"] or {},
        "created_at": isoformat(row.created_at),
        "updated_at": isoformat(row.updated_at),
    }


async def get_transactions(session: AsyncSession, payment_id: str) -> list[dict]:
    result = await session.execute(
        select(payment_transactions)
        .where(payment_transactions.c.payment_id == payment_id)
        .order_by(payment_transactions.c.id)
    )
    return [
        {
            "transaction_type": row.transaction_type,
            "amount": float(row.amount) if row.amount is not None else None,
            "status": row.status,
            "response_data": row.response_data or {},
            "created_at": isoformat(row.created_at),
        }
        for row in result.all()
    ]


async def get_payment(session: AsyncSession, payment_id: str) -> dict | None:
    """支払いと取引履歴を取得する。"""
    result = await session.execute(select(payments).where(payments.c.payment_id == payment_id))
    row = result.first()
    if not row:
        return None
    payment = payment_row(row)
    payment["transactions"] = await get_transactions(session, payment_id)
    return payment


async def list_payments(session: AsyncSession) -> list[dict]:
    result = await session.execute(select(payments).order_by(payments.c.created_at.desc()))
    return [payment_row(row) for row in result.all()]


async def list_payments_by_order(session: AsyncSession, order_id: str) -> list[dict]:
    result = await session.execute(
        select(payments)
        .where(payments.c.order_id == order_id)
        .order_by(payments.c.created_at.desc())
    )
    return [payment_row(row) for row in result.all()]
