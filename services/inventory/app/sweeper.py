"""
Inventory Service — 期限切れ予約スイーパー

一定間隔で sweep_expired を実行し、放置された予約を解放する。
明示的な release がなくても予約の寿命は TTL + 間隔 に収まる。
"""

import asyncio
import logging

import redis.asyncio as aioredis
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from . import commands

logger = logging.getLogger(__name__)


async def run_sweeper(
    async_session_factory: async_sessionmaker[AsyncSession],
    redis: aioredis.Redis | None,
    shutdown_event: asyncio.Event,
    interval: float,
) -> None:
    """
    shutdown_event がセットされるまで interval 秒ごとにスイープする。
    1 回の失敗でループは止めない。
    """
    logger.info("Reservation sweeper started (interval=%ss)", interval)
    while not shutdown_event.is_set():
        try:
            async with async_session_factory() as session:
                await commands.sweep_expired(session, redis)
        except SQLAlchemyError:
            logger.exception("Failed to sweep expired reservations")

        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass
    logger.info("Reservation sweeper stopped")
