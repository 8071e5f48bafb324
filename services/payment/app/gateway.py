"""
Payment Service — 決済ゲートウェイ

コアはゲートウェイの実装に依存しない。
{authorize, capture, cancel}(request) → GatewayResponse の契約だけを使う。
ゲートウェイは業務的な正しさとは無関係に失敗しうるものとして扱い、
このレイヤーでは失敗を報告するだけでリトライしない。

SimulatedGateway は外部ゲートウェイの代わりに遅延とランダムな失敗を再現する。
"""

import asyncio
import random
import time
from typing import Protocol

from pydantic import BaseModel


class GatewayResponse(BaseModel):
    success: bool
    reference_id: str | None = None
    error: str | None = None
    raw: dict = {}


class PaymentGateway(Protocol):
    async def authorize(self, request: dict) -> GatewayResponse: ...

    async def capture(self, request: dict) -> GatewayResponse: ...

    async def cancel(self, request: dict) -> GatewayResponse: ...


class SimulatedGateway:
    """
    ランダムに失敗するシミュレーションゲートウェイ

    - authorize: failure_rate の確率、または max_amount を超える金額で失敗
    - capture:   failure_rate の確率で失敗
    - cancel:    常に成功
    """

    def __init__(
        self,
        failure_rate: float = 0.1,
        latency: tuple[float, float] = (0.5, 1.5),
        max_amount: float = 10_000_000,
        rng: random.Random | None = None,
    ) -> None:
        self.failure_rate = failure_rate
        self.latency = latency
        self.max_amount = max_amount
        self.rng = rng or random.Random()

    async def _delay(self) -> None:
        low, high = self.latency
        if high > 0:
            await asyncio.sleep(self.rng.uniform(low, high))

    def _should_fail(self) -> bool:
        return self.rng.random() < self.failure_rate

    def _reference(self, prefix: str) -> str:
        return f"{prefix}_{int(time.time() * 1000)}_{self.rng.getrandbits(32):08x}"

    async def authorize(self, request: dict) -> GatewayResponse:
        await self._delay()
        if self._should_fail() or request["amount"] > self.max_amount:
            error = "Authorization failed: Insufficient funds or invalid card"
            return GatewayResponse(success=False, error=error, raw={"error": error})
        reference_id = self._reference("auth")
        return GatewayResponse(
            success=True,
            reference_id=reference_id,
            raw={"authorization_id": reference_id, "gateway_response": "Authorization successful"},
        )

    async def capture(self, request: dict) -> GatewayResponse:
        await self._delay()
        if self._should_fail():
            error = "Capture failed: Authorization expired or invalid"
            return GatewayResponse(success=False, error=error, raw={"error": error})
        reference_id = self._reference("cap")
        return GatewayResponse(
            success=True,
            reference_id=reference_id,
            raw={"capture_id": reference_id, "gateway_response": "Capture successful"},
        )

    async def cancel(self, request: dict) -> GatewayResponse:
        await self._delay()
        return GatewayResponse(
            success=True,
            raw={"gateway_response": "Cancellation successful"},
        )
