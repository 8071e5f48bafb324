"""
User Service — クエリハンドラ

validate_user は Saga の validate_user ステップから呼ばれる。
存在しないユーザーはエラーではなく is_valid=False で返す。
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .schema import users


async def get_user(session: AsyncSession, user_id: str) -> dict | None:
    result = await session.execute(select(users).where(users.c.user_id == user_id))
    row = result.first()
    if not row:
        return None
    return {"id": row.user_id, "email": row.email, "name": row.name}


async def validate_user(session: AsyncSession, user_id: str) -> dict:
    user = await get_user(session, user_id)
    return {"is_valid": user is not None, "user": user}
