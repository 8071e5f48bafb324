"""
Order Service — 他サービスの HTTP クライアント

Saga の各ステップはこのクライアント経由で User / Inventory / Payment を呼ぶ。

エラーの変換:
  {"error": code, "detail": msg}   → services.shared.errors の同じ例外クラス
  それ以外の 4xx                   → InvalidInput
  通信エラー / タイムアウト / 502・503・504 → TransientUpstreamError (リトライ対象)
  それ以外の 5xx                   → UpstreamFailure

一時的な失敗だけを tenacity で指数バックオフ付きリトライする。
ビジネスエラーはリトライしない。

冪等な呼び出し (参照系、冪等キー付きの reserve / authorize、二重実行が NotFound /
InvalidState で止まる release / cancel) はタイムアウトや 502〜504 でもリトライする。
capture / commit / restock は応答が失われても処理済みの可能性があるので、
接続できなかった場合 (UnsentRequestError) だけをリトライする。
"""

import logging

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from services.shared.errors import InvalidInput, UpstreamFailure, from_payload

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = {502, 503, 504}


class TransientUpstreamError(UpstreamFailure):
    """リトライすれば成功し得る失敗"""


class UnsentRequestError(TransientUpstreamError):
    """リクエストがサーバーに届いていない (接続できなかった)"""


class ServiceClient:
    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        attempts: int = 3,
        wait=None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.http = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)
        self.attempts = attempts
        self.wait = wait if wait is not None else wait_exponential(multiplier=0.2, min=0.2, max=2)

    async def aclose(self) -> None:
        await self.http.aclose()

    async def _send(self, method: str, path: str, json: dict | None = None) -> dict:
        try:
            response = await self.http.request(method, path, json=json)
        except (httpx.ConnectError, httpx.ConnectTimeout) as exc:
            raise UnsentRequestError(f"{method} {path} could not connect: {exc}") from exc
        except httpx.TimeoutException as exc:
            raise TransientUpstreamError(f"{method} {path} timed out") from exc
        except httpx.TransportError as exc:
            raise TransientUpstreamError(f"{method} {path} failed: {exc}") from exc

        if response.is_success:
            try:
                return response.json()
            except ValueError as exc:
                raise UpstreamFailure(f"{method} {path} returned a non-JSON body") from exc
        if response.status_code in RETRYABLE_STATUS:
            raise TransientUpstreamError(f"{method} {path} returned HTTP {response.status_code}")

        try:
            payload = response.json()
        except ValueError:
            payload = None
        if isinstance(payload, dict) and payload.get("error"):
            raise from_payload(payload, response.status_code)
        if response.status_code < 500:
            raise InvalidInput(f"HTTP {response.status_code}: {response.text}")
        raise UpstreamFailure(f"{method} {path} returned HTTP {response.status_code}")

    async def request(
        self,
        method: str,
        path: str,
        json: dict | None = None,
        idempotent: bool = True,
    ) -> dict:
        """
        idempotent=False の呼び出しは、サーバーに届いていないと分かる
        接続失敗だけをリトライする。
        """
        retry_on = TransientUpstreamError if idempotent else UnsentRequestError
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(retry_on),
            stop=stop_after_attempt(self.attempts),
            wait=self.wait,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.warning(
                        "Retrying %s %s (attempt %d/%d)",
                        method,
                        path,
                        attempt.retry_state.attempt_number,
                        self.attempts,
                    )
                return await self._send(method, path, json)


class UserClient(ServiceClient):
    async def validate(self, user_id: str) -> dict:
        return await self.request("POST", "/users/validate", {"user_id": user_id})


class InventoryClient(ServiceClient):
    async def reserve(self, product_id: str, quantity: int, request_key: str | None = None) -> dict:
        return await self.request(
            "POST",
            f"/commands/inventory/{product_id}/reserve",
            {"quantity": quantity, "request_key": request_key},
        )

    async def commit(self, reservation_id: str) -> dict:
        return await self.request(
            "POST", f"/commands/reservations/{reservation_id}/commit", idempotent=False
        )

    async def release(self, reservation_id: str) -> dict:
        return await self.request("POST", f"/commands/reservations/{reservation_id}/release")

    async def restock(self, product_id: str, quantity: int) -> dict:
        return await self.request(
            "POST",
            f"/commands/inventory/{product_id}/restock",
            {"quantity": quantity},
            idempotent=False,
        )

    async def availability(self, product_id: str) -> dict:
        return await self.request("GET", f"/queries/products/{product_id}/availability")

    async def get_commit(self, reservation_id: str) -> dict:
        """確定済みの予約の記録。確定されていなければ NotFound。"""
        return await self.request("GET", f"/queries/reservations/{reservation_id}/commit")


class PaymentClient(ServiceClient):
    async def authorize(
        self,
        order_id: str,
        user_id: str,
        amount: float,
        currency: str = "VND",
        payment_method: str = "credit_card",
        idempotency_key: str | None = None,
    ) -> dict:
        return await self.request(
            "POST",
            "/commands/payments/authorize",
            {
                "order_id": order_id,
                "user_id": user_id,
                "amount": amount,
                "currency": currency,
                "payment_method": payment_method,
                "idempotency_key": idempotency_key,
            },
        )

    async def capture(self, payment_id: str, amount: float | None = None) -> dict:
        return await self.request(
            "POST",
            f"/commands/payments/{payment_id}/capture",
            {"amount": amount},
            idempotent=False,
        )

    async def cancel(self, payment_id: str, reason: str) -> dict:
        return await self.request(
            "POST", f"/commands/payments/{payment_id}/cancel", {"reason": reason}
        )

    async def get(self, payment_id: str) -> dict:
        return await self.request("GET", f"/queries/payments/{payment_id}")

    async def list_payments(self) -> list[dict]:
        return await self.request("GET", "/queries/payments")

    async def list_by_order(self, order_id: str) -> list[dict]:
        return await self.request("GET", f"/queries/orders/{order_id}/payments")
