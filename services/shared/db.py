"""
Shared — データベース接続

各サービスは独自の DB を持つ（Database per Service パターン）。
本番は PostgreSQL (asyncpg)、ローカルとテストは SQLite (aiosqlite)。

SQLite には行ロックがないため、すべてのトランザクションを
BEGIN IMMEDIATE で開始して書き込みを直列化する。
PostgreSQL では条件付き UPDATE / DELETE と SELECT ... FOR UPDATE が
行ロックとして働く。
"""

from datetime import datetime, timezone

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine


def create_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    engine = create_async_engine(database_url, echo=echo)

    if engine.dialect.name == "sqlite":

        @event.listens_for(engine.sync_engine, "connect")
        def _disable_implicit_begin(dbapi_connection, _record):
            # ドライバによる暗黙の BEGIN を止め、下の begin フックで発行する
            dbapi_connection.isolation_level = None

        @event.listens_for(engine.sync_engine, "begin")
        def _begin_immediate(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def create_tables(engine: AsyncEngine, metadata) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite はタイムゾーンを保存しないので、読み出した値を UTC に揃える。"""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def isoformat(value: datetime | None) -> str | None:
    value = as_utc(value)
    return value.isoformat() if value else None
