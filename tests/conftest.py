"""
Shared fixtures

- 各サービスの DB は一時ディレクトリの SQLite ファイル (aiosqlite)
- Redis は AsyncMock
- サービス間の HTTP は httpx.ASGITransport で実際の FastAPI アプリに直接つなぐ
- 決済ゲートウェイはスクリプトで結果を指定できる ScriptedGateway
"""

import asyncio
from dataclasses import dataclass
from unittest.mock import AsyncMock

import httpx
import pytest
import pytest_asyncio
from tenacity import wait_none

from services.inventory.app import commands as inventory_commands
from services.inventory.app import main as inventory_main
from services.inventory.app import schema as inventory_schema
from services.order.app import main as order_main
from services.order.app import schema as order_schema
from services.order.app.clients import InventoryClient, PaymentClient, UserClient
from services.order.app.orchestrator import OrderSagaOrchestrator
from services.payment.app import main as payment_main
from services.payment.app import schema as payment_schema
from services.payment.app.gateway import GatewayResponse
from services.shared.db import create_engine, create_session_factory, create_tables
from services.user.app import commands as user_commands
from services.user.app import main as user_main
from services.user.app import schema as user_schema


class ScriptedGateway:
    """
    テスト用ゲートウェイ

    fail() / raise_on() で次の呼び出し結果を積んでおく。
    何も積まれていなければ成功を返す。
    delay は全操作、delays は操作ごとの応答遅延。
    """

    def __init__(self) -> None:
        self.script: dict[str, list] = {"authorize": [], "capture": [], "cancel": []}
        self.calls: list[tuple[str, dict]] = []
        self.delay = 0.0
        self.delays: dict[str, float] = {}

    def fail(self, operation: str, error: str = "Declined by issuer") -> None:
        self.script[operation].append(GatewayResponse(success=False, error=error, raw={"error": error}))

    def raise_on(self, operation: str, exc: Exception) -> None:
        self.script[operation].append(exc)

    def count(self, operation: str) -> int:
        return sum(1 for name, _ in self.calls if name == operation)

    async def _respond(self, operation: str, request: dict) -> GatewayResponse:
        self.calls.append((operation, request))
        delay = self.delays.get(operation, self.delay)
        if delay:
            await asyncio.sleep(delay)
        if self.script[operation]:
            outcome = self.script[operation].pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        reference_id = f"{operation}_{len(self.calls)}"
        return GatewayResponse(success=True, reference_id=reference_id, raw={"reference_id": reference_id})

    async def authorize(self, request: dict) -> GatewayResponse:
        return await self._respond("authorize", request)

    async def capture(self, request: dict) -> GatewayResponse:
        return await self._respond("capture", request)

    async def cancel(self, request: dict) -> GatewayResponse:
        return await self._respond("cancel", request)


async def _database(tmp_path, name: str, metadata):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / name}.db")
    await create_tables(engine, metadata)
    return engine, create_session_factory(engine)


@pytest.fixture
def redis():
    return AsyncMock()


@pytest.fixture
def gateway():
    return ScriptedGateway()


@pytest_asyncio.fixture
async def inventory_db(tmp_path):
    engine, factory = await _database(tmp_path, "inventory", inventory_schema.metadata)
    yield factory
    await engine.dispose()


@pytest_asyncio.fixture
async def payment_db(tmp_path):
    engine, factory = await _database(tmp_path, "payment", payment_schema.metadata)
    yield factory
    await engine.dispose()


@pytest_asyncio.fixture
async def user_db(tmp_path):
    engine, factory = await _database(tmp_path, "user", user_schema.metadata)
    yield factory
    await engine.dispose()


@pytest_asyncio.fixture
async def order_db(tmp_path):
    engine, factory = await _database(tmp_path, "order", order_schema.metadata)
    yield factory
    await engine.dispose()


@dataclass
class SagaEnv:
    orchestrator: OrderSagaOrchestrator
    gateway: ScriptedGateway
    users: UserClient
    inventory: InventoryClient
    payments: PaymentClient
    user_db: object
    inventory_db: object
    payment_db: object
    order_db: object

    async def add_user(self, user_id: str = "user-1") -> str:
        async with self.user_db() as session:
            await user_commands.register_user(session, f"{user_id}@example.com", "Test User", user_id)
        return user_id

    async def add_product(self, product_id: str, stock: int, price: float = 10.0) -> str:
        async with self.inventory_db() as session:
            await inventory_commands.create_product(session, f"Product {product_id}", price, stock, product_id)
        return product_id

    async def availability(self, product_id: str) -> dict:
        return await self.inventory.availability(product_id)


@pytest_asyncio.fixture
async def saga_env(monkeypatch, redis, gateway, user_db, inventory_db, payment_db, order_db):
    """4 つのサービスを ASGITransport でつないだ Saga の実行環境"""
    monkeypatch.setattr(user_main, "async_session", user_db)
    monkeypatch.setattr(inventory_main, "async_session", inventory_db)
    monkeypatch.setattr(inventory_main, "redis_pool", redis)
    monkeypatch.setattr(payment_main, "async_session", payment_db)
    monkeypatch.setattr(payment_main, "redis_pool", redis)
    monkeypatch.setattr(payment_main, "gateway", gateway)

    users = UserClient("http://user", transport=httpx.ASGITransport(app=user_main.app), wait=wait_none())
    inventory = InventoryClient(
        "http://inventory", transport=httpx.ASGITransport(app=inventory_main.app), wait=wait_none()
    )
    payments = PaymentClient(
        "http://payment", transport=httpx.ASGITransport(app=payment_main.app), wait=wait_none()
    )
    orchestrator = OrderSagaOrchestrator(order_db, redis, users, inventory, payments, step_timeout=5)
    monkeypatch.setattr(order_main, "async_session", order_db)
    monkeypatch.setattr(order_main, "redis_pool", redis)
    monkeypatch.setattr(order_main, "orchestrator", orchestrator)

    yield SagaEnv(
        orchestrator=orchestrator,
        gateway=gateway,
        users=users,
        inventory=inventory,
        payments=payments,
        user_db=user_db,
        inventory_db=inventory_db,
        payment_db=payment_db,
        order_db=order_db,
    )

    for client in (users, inventory, payments):
        await client.aclose()
