"""
Order Service — コマンドハンドラ (CQRS の Write 側)

注文の作成と状態変更。状態を決めるのは Saga オーケストレーターだけで、
このモジュールはそれを永続化する。

  create_order      注文 + 明細 + Saga の初期状態を 1 トランザクションで作成
  conclude_order    終端状態 (confirmed / failed / cancelled) に更新し、Saga の行を削除
"""

from uuid import uuid4

import redis.asyncio as aioredis
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from services.shared.db import utcnow
from services.shared.errors import InvalidInput
from services.shared.messaging import publish_event

from . import saga_store
from .events import OrderCreated
from .schema import order_items, orders

CHANNEL = "order_events"
FIRST_STEP = "validate_user"


def _validate_items(items: list[dict]) -> None:
    if not items:
        raise InvalidInput("items must not be empty")
    for item in items:
        if not item.get("product_id"):
            raise InvalidInput("product_id is required for every item")
        quantity = item.get("quantity")
        # bool は int のサブクラスなので明示的に除く
        if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity <= 0:
            raise InvalidInput(f"quantity for product {item['product_id']} must be a positive integer")
        if item.get("unit_price") is None or item["unit_price"] < 0:
            raise InvalidInput(f"unit_price for product {item['product_id']} must not be negative")


async def create_order(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    user_id: str,
    items: list[dict],
    shipping_address: str | None = None,
    currency: str = "VND",
    payment_method: str = "credit_card",
    metadata: dict | None = None,
) -> str:
    """
    注文作成コマンド

    1. 合計金額を明細から計算 (total_amount は以後変わらない)
    2. 注文・明細・Saga の初期状態を同じトランザクションで保存
    3. Redis Pub/Sub で OrderCreated を発行
    """
    if not user_id:
        raise InvalidInput("user_id is required")
    _validate_items(items)

    order_id = str(uuid4())
    now = utcnow()
    lines = [
        {
            "product_id": item["product_id"],
            "quantity": item["quantity"],
            "unit_price": float(item["unit_price"]),
            "total_price": round(item["quantity"] * float(item["unit_price"]), 2),
        }
        for item in items
    ]
    total_amount = round(sum(line["total_price"] for line in lines), 2)

    await session.execute(
        orders.insert().values(
            order_id=order_id,
            user_id=user_id,
            status="pending",
            total_amount=total_amount,
            currency=currency,
            shipping_address=shipping_address,
            metadata=metadata or {},
            created_at=now,
            updated_at=now,
        )
    )
    await session.execute(
        order_items.insert(),
        [
            {"order_id": order_id, "line_no": line_no, "created_at": now, **line}
            for line_no, line in enumerate(lines)
        ],
    )
    await saga_store.insert_state(
        session,
        saga_store.SagaState(
            order_id=order_id,
            current_step=FIRST_STEP,
            saga_data={
                "user_id": user_id,
                "items": [
                    {"product_id": line["product_id"], "quantity": line["quantity"]} for line in lines
                ],
                "payment_method": payment_method,
                "reservations": [],
            },
        ),
    )
    await session.commit()

    await publish_event(
        redis,
        CHANNEL,
        OrderCreated(
            order_id=order_id,
            user_id=user_id,
            total_amount=total_amount,
            currency=currency,
            items=lines,
            timestamp=now,
        ),
    )
    return order_id


async def record_reservations(session: AsyncSession, order_id: str, reservations: list[dict]) -> None:
    """reserve_stock の結果を明細の reservation_id に書き込む。"""
    for reservation in reservations:
        await session.execute(
            update(order_items)
            .where(order_items.c.order_id == order_id)
            .where(order_items.c.line_no == reservation["line_no"])
            .values(reservation_id=reservation["reservation_id"])
        )
    await session.commit()


async def conclude_order(
    session: AsyncSession,
    order_id: str,
    status: str,
    payment_id: str | None = None,
    failure_reason: str | None = None,
) -> None:
    """注文を終端状態にし、Saga の行を同じトランザクションで削除する。"""
    values = {"status": status, "updated_at": utcnow()}
    if payment_id:
        values["payment_id"] = payment_id
    if failure_reason:
        values["failure_reason"] = failure_reason

    await session.execute(update(orders).where(orders.c.order_id == order_id).values(**values))
    await saga_store.remove(session, order_id)
    await session.commit()
