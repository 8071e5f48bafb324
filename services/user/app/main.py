"""
User Service — FastAPI エントリーポイント

Saga から見たユーザー検証の窓口 (UserValidation)。
"""

import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from pydantic import BaseModel

from services.shared.db import create_engine, create_session_factory, create_tables
from services.shared.errors import NotFound, install_error_handlers
from services.shared.messaging import configure_logging

from . import commands, queries
from .schema import metadata

DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite+aiosqlite:///./users.db")

engine = create_engine(DATABASE_URL)
async_session = create_session_factory(engine)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging("user-service")
    await create_tables(engine, metadata)
    yield
    await engine.dispose()


app = FastAPI(title="User Service", lifespan=lifespan)
install_error_handlers(app)


class RegisterRequest(BaseModel):
    user_id: str | None = None
    email: str
    name: str


class ValidateRequest(BaseModel):
    user_id: str


@app.post("/users", status_code=201)
async def register(req: RegisterRequest):
    async with async_session() as session:
        return await commands.register_user(session, req.email, req.name, req.user_id)


@app.post("/users/validate")
async def validate(req: ValidateRequest):
    """ユーザー検証 (Saga の validate_user ステップ用)"""
    async with async_session() as session:
        return await queries.validate_user(session, req.user_id)


@app.get("/users/{user_id}")
async def get_user(user_id: str):
    async with async_session() as session:
        user = await queries.get_user(session, user_id)
        if not user:
            raise NotFound(f"User {user_id} not found")
        return user


@app.get("/health")
async def health():
    return {"status": "ok", "service": "user-service"}
