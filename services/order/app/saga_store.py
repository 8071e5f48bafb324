"""
Order Service — Saga の永続化

注文ごとに 1 行 (order_id → SagaState)。
各ステップの後に保存するので、プロセスが落ちても
current_step から再開でき、completed_steps を再実行することはない。
"""

from pydantic import BaseModel, Field
from sqlalchemy import delete, insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from services.shared.db import utcnow

from .schema import order_saga_state, orders


class SagaState(BaseModel):
    order_id: str
    current_step: str
    completed_steps: list[str] = Field(default_factory=list)
    failed_step: str | None = None
    compensation_steps: list[str] = Field(default_factory=list)
    saga_data: dict = Field(default_factory=dict)


async def insert_state(session: AsyncSession, state: SagaState) -> None:
    """初期状態を追加する。コミットは呼び出し側（注文作成と同じトランザクション）。"""
    now = utcnow()
    await session.execute(
        insert(order_saga_state).values(
            order_id=state.order_id,
            current_step=state.current_step,
            completed_steps=state.completed_steps,
            failed_step=state.failed_step,
            compensation_steps=state.compensation_steps,
            saga_data=state.saga_data,
            created_at=now,
            updated_at=now,
        )
    )


async def load(session: AsyncSession, order_id: str) -> SagaState | None:
    result = await session.execute(
        select(order_saga_state).where(order_saga_state.c.order_id == order_id)
    )
    row = result.first()
    if not row:
        return None
    return SagaState(
        order_id=row.order_id,
        current_step=row.current_step,
        completed_steps=list(row.completed_steps or []),
        failed_step=row.failed_step,
        compensation_steps=list(row.compensation_steps or []),
        saga_data=dict(row.saga_data or {}),
    )


async def save(session: AsyncSession, state: SagaState) -> None:
    await session.execute(
        update(order_saga_state)
        .where(order_saga_state.c.order_id == state.order_id)
        .values(
            current_step=state.current_step,
            completed_steps=state.completed_steps,
            failed_step=state.failed_step,
            compensation_steps=state.compensation_steps,
            saga_data=state.saga_data,
            updated_at=utcnow(),
        )
    )
    await session.commit()


async def remove(session: AsyncSession, order_id: str) -> None:
    """Saga の行を削除する。コミットは呼び出し側。"""
    await session.execute(delete(order_saga_state).where(order_saga_state.c.order_id == order_id))


async def list_pending_order_ids(session: AsyncSession) -> list[str]:
    """status が pending のまま Saga が残っている注文 (= 再開対象)。"""
    result = await session.execute(
        select(order_saga_state.c.order_id)
        .join(orders, orders.c.order_id == order_saga_state.c.order_id)
        .where(orders.c.status == "pending")
        .order_by(order_saga_state.c.created_at)
    )
    return [row.order_id for row in result.all()]
