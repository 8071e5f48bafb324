"""
Order Service — Saga オーケストレーター

Saga パターン（オーケストレーション型）:
  中央のオーケストレーターが各サービスへのコマンド実行を制御する。
  失敗時は補償トランザクション(Compensating Transaction)を逆順に実行して
  整合性を保つ。2 フェーズコミットは使わない（結果整合性）。

  フロー:
  ┌──────────────────────────────────────────────────────────────┐
  │  1. validate_user      User Service でユーザーを検証           │
  │  2. reserve_stock      Inventory Service で明細ごとに在庫予約  │
  │  3. authorize_payment  Payment Service で与信                  │
  │  4. capture_payment    Payment Service で売上確定              │
  │  5. commit_stock       予約を確定して在庫を消費                │
  │  6. confirm_order      注文確定                                │
  │                                                              │
  │  失敗 → 完了済みステップの補償を逆順に実行 → 注文は failed    │
  └──────────────────────────────────────────────────────────────┘

各ステップの後に SagaState を保存するので、プロセスが落ちても
resume_pending() で current_step から再開できる。
"""

import asyncio
import logging
from datetime import datetime, timezone

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import async_sessionmaker

from services.shared.db import utcnow
from services.shared.errors import InvalidInput, InvalidState, NotFound, ServiceError, UpstreamFailure
from services.shared.messaging import publish_event

from . import commands, queries, saga_store
from .clients import InventoryClient, PaymentClient, TransientUpstreamError, UserClient
from .events import (
    OrderCancelled,
    OrderConfirmed,
    OrderFailed,
    SagaCancelled,
    SagaCompleted,
    SagaFailed,
)

logger = logging.getLogger(__name__)

SAGA_CHANNEL = "saga_events"
DONE = "done"

# 与信が完了しなかったときに取り消す支払いの状態
OPEN_PAYMENT_STATUSES = ("pending", "authorized")

SAGA_STEPS = (
    "validate_user",
    "reserve_stock",
    "authorize_payment",
    "capture_payment",
    "commit_stock",
    "confirm_order",
)

# 完了済みステップ → その効果を打ち消す補償
COMPENSATIONS = {
    "reserve_stock": "release_stock",
    "authorize_payment": "cancel_payment",
    "capture_payment": "cancel_payment",
    "commit_stock": "restock_stock",
}


def compensation_steps_for(completed_steps: list[str]) -> list[str]:
    """完了済みステップを逆順にたどって補償の一覧を作る（同じ補償は 1 回だけ）。"""
    steps: list[str] = []
    for step in reversed(completed_steps):
        name = COMPENSATIONS.get(step)
        if name and name not in steps:
            steps.append(name)
    return steps


def _next_step(step: str) -> str:
    index = SAGA_STEPS.index(step)
    return SAGA_STEPS[index + 1] if index + 1 < len(SAGA_STEPS) else DONE


def _log_entry(step: str, action: str, status: str, error: str | None = None) -> dict:
    entry = {
        "step": step,
        "action": action,
        "status": status,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    if error:
        entry["error"] = error
    return entry


class OrderSagaOrchestrator:
    """注文 Saga のオーケストレーター"""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        redis: aioredis.Redis | None,
        users: UserClient,
        inventory: InventoryClient,
        payments: PaymentClient,
        step_timeout: float = 30.0,
    ):
        self.session_factory = session_factory
        self.redis = redis
        self.users = users
        self.inventory = inventory
        self.payments = payments
        self.step_timeout = step_timeout

        self._steps = {
            "validate_user": self._validate_user,
            "reserve_stock": self._reserve_stock,
            "authorize_payment": self._authorize_payment,
            "capture_payment": self._capture_payment,
            "commit_stock": self._commit_stock,
            "confirm_order": self._confirm_order,
        }
        self._compensations = {
            "release_stock": self._release_stock,
            "cancel_payment": self._cancel_payment,
            "restock_stock": self._restock_stock,
        }

    # ── Public API ───────────────────────────────

    async def create_order(
        self,
        user_id: str,
        items: list[dict],
        shipping_address: str | None = None,
        currency: str = "VND",
        payment_method: str = "credit_card",
        metadata: dict | None = None,
    ) -> dict:
        """
        注文を作成し、Saga を同期的に最後まで実行する。

        ステップの失敗は例外にならず、status が failed の注文として返る。
        入力の不備 (InvalidInput) だけが呼び出し側に届く。
        """
        async with self.session_factory() as session:
            order_id = await commands.create_order(
                session,
                self.redis,
                user_id,
                items,
                shipping_address=shipping_address,
                currency=currency,
                payment_method=payment_method,
                metadata=metadata,
            )
        saga_log = await self.run(order_id)

        async with self.session_factory() as session:
            order = await queries.get_order(session, order_id)
        order["saga_log"] = saga_log
        return order

    async def run(self, order_id: str) -> list[dict]:
        """
        永続化された SagaState から Saga を実行（または再開）する。

        completed_steps に含まれるステップは再実行しない。
        failed_step が記録済みなら、残りの補償だけを実行して終える。
        """
        async with self.session_factory() as session:
            state = await saga_store.load(session, order_id)
            order = await queries.get_order(session, order_id)
        if order is None:
            raise NotFound(f"Order {order_id} not found")
        if state is None:
            logger.info("Order %s has no active saga (status=%s)", order_id, order["status"])
            return []

        saga_log: list[dict] = []
        if state.failed_step:
            await self._fail(order, state, saga_log, state.saga_data.get("failure_reason", ""))
            return saga_log

        while state.current_step != DONE:
            step = state.current_step
            try:
                output = await self._execute(step, order, state)
            except ServiceError as exc:
                saga_log.append(_log_entry(step, "execute", "FAILED", exc.detail))
                await self._mark_failed(order, state, step, exc.detail, saga_log)
                return saga_log
            except Exception as exc:
                logger.exception("Saga step %s raised for order %s", step, order_id)
                saga_log.append(_log_entry(step, "execute", "FAILED", str(exc)))
                await self._mark_failed(order, state, step, str(exc), saga_log)
                return saga_log

            saga_log.append(_log_entry(step, "execute", "COMPLETED"))
            state.saga_data.update(output)
            state.completed_steps.append(step)
            state.current_step = _next_step(step)
            async with self.session_factory() as session:
                await saga_store.save(session, state)

        await self._complete(order, state, saga_log)
        return saga_log

    async def cancel_order(self, order_id: str) -> dict:
        """
        ユーザーによるキャンセル。

        pending / confirmed の注文だけが対象。Saga が残っていれば
        完了済みステップの補償を実行してから cancelled にする。
        """
        async with self.session_factory() as session:
            order = await queries.get_order(session, order_id)
            state = await saga_store.load(session, order_id)
        if order is None:
            raise NotFound(f"Order {order_id} not found")
        if order["status"] not in ("pending", "confirmed"):
            raise InvalidState(f"Cannot cancel order with status: {order['status']}")

        saga_log: list[dict] = []
        compensation_steps: list[str] = []
        if state is not None:
            state.compensation_steps = compensation_steps_for(state.completed_steps)
            compensation_steps = state.compensation_steps
            async with self.session_factory() as session:
                await saga_store.save(session, state)
            await self._compensate(order, state, saga_log)

        async with self.session_factory() as session:
            await commands.conclude_order(session, order_id, "cancelled")
            order = await queries.get_order(session, order_id)

        await publish_event(
            self.redis, commands.CHANNEL, OrderCancelled(order_id=order_id, timestamp=utcnow())
        )
        await publish_event(
            self.redis,
            SAGA_CHANNEL,
            SagaCancelled(order_id=order_id, compensation_steps=compensation_steps),
        )
        order["saga_log"] = saga_log
        return order

    async def resume_pending(self) -> int:
        """起動時に、pending のまま残っている Saga をすべて再開する。"""
        async with self.session_factory() as session:
            order_ids = await saga_store.list_pending_order_ids(session)
        for order_id in order_ids:
            logger.info("Resuming saga for order %s", order_id)
            try:
                await self.run(order_id)
            except ServiceError:
                logger.exception("Failed to resume saga for order %s", order_id)
        return len(order_ids)

    # ── Saga の進行 ──────────────────────────────

    async def _execute(self, step: str, order: dict, state: saga_store.SagaState) -> dict:
        handler = self._steps[step]
        try:
            return await asyncio.wait_for(handler(order, state), timeout=self.step_timeout)
        except asyncio.TimeoutError as exc:
            raise UpstreamFailure(f"Step {step} timed out after {self.step_timeout}s") from exc

    async def _mark_failed(
        self,
        order: dict,
        state: saga_store.SagaState,
        step: str,
        reason: str,
        saga_log: list[dict],
    ) -> None:
        state.current_step = step
        state.failed_step = step
        state.compensation_steps = compensation_steps_for(state.completed_steps)
        state.saga_data["failure_reason"] = reason
        async with self.session_factory() as session:
            await saga_store.save(session, state)
        await self._fail(order, state, saga_log, reason)

    async def _fail(
        self,
        order: dict,
        state: saga_store.SagaState,
        saga_log: list[dict],
        reason: str,
    ) -> None:
        logger.warning(
            "Saga for order %s failed at %s: %s", order["order_id"], state.failed_step, reason
        )
        await self._compensate(order, state, saga_log)

        async with self.session_factory() as session:
            await commands.conclude_order(session, order["order_id"], "failed", failure_reason=reason)

        await publish_event(
            self.redis,
            commands.CHANNEL,
            OrderFailed(
                order_id=order["order_id"],
                failed_step=state.failed_step,
                reason=reason,
                timestamp=utcnow(),
            ),
        )
        await publish_event(
            self.redis,
            SAGA_CHANNEL,
            SagaFailed(
                order_id=order["order_id"],
                failed_step=state.failed_step,
                compensation_steps=state.compensation_steps,
                saga_log=saga_log,
            ),
        )

    async def _complete(self, order: dict, state: saga_store.SagaState, saga_log: list[dict]) -> None:
        payment_id = state.saga_data.get("payment_id")
        async with self.session_factory() as session:
            await commands.conclude_order(session, order["order_id"], "confirmed", payment_id=payment_id)
        logger.info("Saga for order %s completed", order["order_id"])

        await publish_event(
            self.redis,
            commands.CHANNEL,
            OrderConfirmed(order_id=order["order_id"], payment_id=payment_id, timestamp=utcnow()),
        )
        await publish_event(
            self.redis, SAGA_CHANNEL, SagaCompleted(order_id=order["order_id"], saga_log=saga_log)
        )

    async def _compensate(self, order: dict, state: saga_store.SagaState, saga_log: list[dict]) -> None:
        """
        補償を順に実行する (best-effort)。

        失敗はログに残して次の補償へ進む。実行済みの補償は saga_data に記録し、
        再開時に二重実行しない。
        """
        done = state.saga_data.setdefault("compensated", [])
        for name in state.compensation_steps:
            if name in done:
                continue
            try:
                await asyncio.wait_for(
                    self._compensations[name](order, state), timeout=self.step_timeout
                )
                saga_log.append(_log_entry(name, "compensate", "COMPLETED"))
            except Exception as exc:
                logger.exception("Compensation %s failed for order %s", name, order["order_id"])
                saga_log.append(_log_entry(name, "compensate", "FAILED", str(exc)))
            done.append(name)
            async with self.session_factory() as session:
                await saga_store.save(session, state)

    # ── ステップ ─────────────────────────────────

    async def _validate_user(self, order: dict, state: saga_store.SagaState) -> dict:
        user_id = state.saga_data["user_id"]
        result = await self.users.validate(user_id)
        if not result.get("is_valid"):
            raise InvalidInput(f"User {user_id} is not valid")
        return {"validated_user": result.get("user")}

    async def _reserve_stock(self, order: dict, state: saga_store.SagaState) -> dict:
        reservations: list[dict] = []
        try:
            for line_no, item in enumerate(state.saga_data["items"]):
                reservation = await self.inventory.reserve(
                    item["product_id"],
                    item["quantity"],
                    request_key=f"{order['order_id']}:{line_no}",
                )
                reservations.append(
                    {
                        "line_no": line_no,
                        "product_id": item["product_id"],
                        "quantity": item["quantity"],
                        "reservation_id": reservation["reservation_id"],
                    }
                )
        except (ServiceError, asyncio.CancelledError):
            # このステップで取った予約を戻してから失敗する
            await self._release_all(order["order_id"], reservations)
            raise

        async with self.session_factory() as session:
            await commands.record_reservations(session, order["order_id"], reservations)
        return {"reservations": reservations}

    async def _authorize_payment(self, order: dict, state: saga_store.SagaState) -> dict:
        """
        与信が完了しなかったときは、この注文の pending / authorized の支払いを
        取り消してから失敗する。補償は完了済みステップにしか走らない。
        """
        try:
            result = await self.payments.authorize(
                order["order_id"],
                state.saga_data["user_id"],
                order["total_amount"],
                currency=order["currency"],
                payment_method=state.saga_data.get("payment_method", "credit_card"),
                idempotency_key=order["order_id"],
            )
        except (ServiceError, asyncio.CancelledError):
            await self._cancel_open_payments(order["order_id"])
            raise
        if not result["success"]:
            await self._cancel_open_payments(order["order_id"])
            raise UpstreamFailure(result.get("error") or "Payment authorization failed")
        return {
            "payment_id": result["payment"]["payment_id"],
            "authorization_id": result.get("reference_id"),
        }

    async def _capture_payment(self, order: dict, state: saga_store.SagaState) -> dict:
        payment_id = state.saga_data["payment_id"]
        try:
            result = await self.payments.capture(payment_id)
        except (InvalidState, TransientUpstreamError):
            # 応答を失った capture、または再開前に済んでいた capture
            payment = await self.payments.get(payment_id)
            if payment["status"] != "captured":
                raise
            logger.info("Payment %s was already captured", payment_id)
            return {"capture_id": payment.get("capture_id")}
        if not result["success"]:
            raise UpstreamFailure(result.get("error") or "Payment capture failed")
        return {"capture_id": result.get("reference_id")}

    async def _commit_stock(self, order: dict, state: saga_store.SagaState) -> dict:
        committed = []
        for reservation in state.saga_data.get("reservations", []):
            reservation_id = reservation["reservation_id"]
            try:
                await self.inventory.commit(reservation_id)
            except (NotFound, TransientUpstreamError):
                # 確定済みの予約は行が消えているので、確定記録で判断する
                if not await self._is_committed(reservation_id):
                    raise
                logger.info("Reservation %s was already committed", reservation_id)
            committed.append(reservation_id)
        return {"committed_reservations": committed}

    async def _is_committed(self, reservation_id: str) -> bool:
        try:
            await self.inventory.get_commit(reservation_id)
        except NotFound:
            return False
        return True

    async def _confirm_order(self, order: dict, state: saga_store.SagaState) -> dict:
        return {}

    # ── 補償トランザクション ─────────────────────

    async def _release_all(self, order_id: str, reservations: list[dict]) -> None:
        for reservation in reservations:
            try:
                await self.inventory.release(reservation["reservation_id"])
            except ServiceError:
                logger.exception(
                    "Failed to release reservation %s for order %s",
                    reservation["reservation_id"],
                    order_id,
                )

    async def _release_stock(self, order: dict, state: saga_store.SagaState) -> None:
        await self._release_all(order["order_id"], state.saga_data.get("reservations", []))

    async def _cancel_payment(self, order: dict, state: saga_store.SagaState) -> None:
        payment_id = state.saga_data.get("payment_id")
        if not payment_id:
            return
        try:
            result = await self.payments.cancel(
                payment_id, reason=f"Saga compensation for order {order['order_id']}"
            )
        except InvalidState:
            payment = await self.payments.get(payment_id)
            if payment["status"] != "cancelled":
                raise
            logger.info("Payment %s was already cancelled", payment_id)
            return
        if not result["success"]:
            raise UpstreamFailure(result.get("error") or f"Could not cancel payment {payment_id}")

    async def _cancel_open_payments(self, order_id: str) -> None:
        try:
            open_payments = [
                payment
                for payment in await self.payments.list_by_order(order_id)
                if payment["status"] in OPEN_PAYMENT_STATUSES
            ]
        except ServiceError:
            logger.exception("Could not list payments for order %s", order_id)
            return

        for payment in open_payments:
            try:
                result = await self.payments.cancel(
                    payment["payment_id"],
                    reason=f"Authorization for order {order_id} did not complete",
                )
            except ServiceError:
                logger.exception(
                    "Failed to cancel payment %s for order %s", payment["payment_id"], order_id
                )
                continue
            if not result["success"]:
                logger.warning(
                    "Payment %s for order %s was not cancelled: %s",
                    payment["payment_id"],
                    order_id,
                    result.get("error"),
                )

    async def _restock_stock(self, order: dict, state: saga_store.SagaState) -> None:
        for reservation in state.saga_data.get("reservations", []):
            await self.inventory.restock(reservation["product_id"], reservation["quantity"])
