"""
User Service — コマンドハンドラ

ユーザー登録のみ。メールアドレスの重複は InvalidState。
"""

from uuid import uuid4

from sqlalchemy import insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from services.shared.db import utcnow
from services.shared.errors import InvalidInput, InvalidState

from .schema import users


async def register_user(
    session: AsyncSession,
    email: str,
    name: str,
    user_id: str | None = None,
) -> dict:
    if not email or not name:
        raise InvalidInput("email and name are required")

    user_id = user_id or str(uuid4())
    try:
        await session.execute(
            insert(users).values(user_id=user_id, email=email, name=name, created_at=utcnow())
        )
        await session.commit()
    except IntegrityError:
        await session.rollback()
        raise InvalidState(f"User {email} already exists")
    return {"id": user_id, "email": email, "name": name}
