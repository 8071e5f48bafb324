"""
Payment Service — コマンドハンドラ (CQRS Write 側)

authorize → capture → cancel の各操作はゲートウェイを呼び出し、
結果にかかわらず payment_transactions に 1 行追記する（監査ログ）。

ゲートウェイの失敗は例外ではなく PaymentResult(success=False) で返す。
呼び出し側は例外による制御フローなしに現在の Payment を確認できる。
ビジネスルール違反 (NotFound / InvalidState / InvalidAmount) だけが例外になる。

同じ payment_id への capture / cancel は行ロック (SELECT ... FOR UPDATE) を
ゲートウェイ呼び出しの間も保持して直列化する。
"""

import asyncio
import logging
from uuid import uuid4

import redis.asyncio as aioredis
from pydantic import BaseModel
from sqlalchemy import insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from services.shared.db import utcnow
from services.shared.errors import InvalidAmount, InvalidInput, NotFound, ServiceError
from services.shared.messaging import publish_event

from . import aggregate
from .events import PaymentAuthorized, PaymentCancelled, PaymentCaptured, PaymentFailed
from .gateway import GatewayResponse, PaymentGateway
from .queries import get_payment, payment_row
from .schema import payment_transactions, payments

logger = logging.getLogger(__name__)

CHANNEL = "payment_events"
GATEWAY_TIMEOUT = 10.0


class PaymentResult(BaseModel):
    success: bool
    payment: dict
    error: str | None = None
    reference_id: str | None = None


async def _call_gateway(
    gateway: PaymentGateway,
    operation: str,
    request: dict,
    timeout: float,
) -> tuple[GatewayResponse, str]:
    """ゲートウェイを呼び出し、(レスポンス, 取引ステータス) を返す。"""
    call = getattr(gateway, operation)
    try:
        response = await asyncio.wait_for(call(request), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning("Gateway %s timed out after %ss", operation, timeout)
        error = f"Gateway timeout after {timeout}s"
        return GatewayResponse(success=False, error=error, raw={"error": error}), "error"
    except Exception as exc:
        # 外部ゲートウェイの例外はすべて失敗として記録する
        logger.exception("Gateway %s raised", operation)
        return (
            GatewayResponse(success=False, error=str(exc), raw={"error": str(exc), "exception": type(exc).__name__}),
            "error",
        )
    return response, "success" if response.success else "failed"


async def _record_transaction(
    session: AsyncSession,
    payment_id: str,
    transaction_type: str,
    amount: float | None,
    status: str,
    response: GatewayResponse,
) -> None:
    await session.execute(
        insert(payment_transactions).values(
            payment_id=payment_id,
            transaction_type=transaction_type,
            amount=amount,
            status=status,
            response_data=response.model_dump(mode="json"),
            created_at=utcnow(),
        )
    )


async def _lock_payment(session: AsyncSession, payment_id: str):
    result = await session.execute(
        select(payments).where(payments.c.payment_id == payment_id).with_for_update()
    )
    row = result.first()
    if row is None:
        await session.rollback()
        raise NotFound(f"Payment {payment_id} not found")
    return row


async def _set_status(session: AsyncSession, payment_id: str, current: str, target: str, **values) -> None:
    aggregate.ensure_transition(current, target)
    await session.execute(
        update(payments)
        .where(payments.c.payment_id == payment_id)
        .values(status=target, updated_at=utcnow(), **values)
    )


async def _current(session: AsyncSession, payment_id: str) -> dict:
    payment = await get_payment(session, payment_id)
    await session.commit()
    return payment


async def authorize_payment(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    gateway: PaymentGateway,
    order_id: str,
    user_id: str,
    amount: float,
    currency: str = "VND",
    payment_method: str = "credit_card",
    idempotency_key: str | None = None,
    metadata: dict | None = None,
    timeout: float = GATEWAY_TIMEOUT,
) -> PaymentResult:
    """
    与信コマンド

    1. pending の Payment を作成
    2. ゲートウェイで与信
    3. 成功 → authorized + authorization_id / 失敗・例外 → failed + 理由

    idempotency_key に既存の Payment があれば、ゲートウェイを呼ばずにそれを返す。
    """
    if not order_id or not user_id or amount is None:
        raise InvalidInput("order_id, user_id and amount are required")
    if amount <= 0:
        raise InvalidAmount("amount must be greater than 0")

    if idempotency_key:
        result = await session.execute(
            select(payments).where(payments.c.idempotency_key == idempotency_key)
        )
        existing = result.first()
        await session.rollback()
        if existing:
            payment = payment_row(existing)
            ok = existing.status in (aggregate.AUTHORIZED, aggregate.CAPTURED)
            return PaymentResult(
                success=ok,
                payment=payment,
                error=None if ok else (existing.failure_reason or f"Payment is {existing.status}"),
                reference_id=existing.authorization_id,
            )

    payment_id = str(uuid4())
    now = utcnow()
    await session.execute(
        insert(payments).values(
            payment_id=payment_id,
            order_id=order_id,
            user_id=user_id,
            amount=amount,
            currency=currency,
            status=aggregate.PENDING,
            payment_method=payment_method,
            idempotency_key=idempotency_key,
            metadata=metadata or {},
            created_at=now,
            updated_at=now,
        )
    )
    await session.commit()

    response, outcome = await _call_gateway(
        gateway,
        "authorize",
        {"amount": amount, "currency": currency, "payment_method": payment_method},
        timeout,
    )

    row = await _lock_payment(session, payment_id)
    await _record_transaction(session, payment_id, "authorize", amount, outcome, response)
    if row.status != aggregate.PENDING:
        # 与信中に別の操作 (cancel) が先に状態を変えた
        await session.commit()
        logger.warning("Payment %s became %s while authorizing", payment_id, row.status)
        payment = await _current(session, payment_id)
        return PaymentResult(success=False, payment=payment, error=f"Payment is {row.status}")

    if response.success:
        await _set_status(
            session, payment_id, row.status, aggregate.AUTHORIZED, authorization_id=response.reference_id
        )
    else:
        await _set_status(session, payment_id, row.status, aggregate.FAILED, failure_reason=response.error)
    await session.commit()

    payment = await _current(session, payment_id)
    if response.success:
        await publish_event(
            redis,
            CHANNEL,
            PaymentAuthorized(
                payment_id=payment_id,
                order_id=order_id,
                amount=amount,
                authorization_id=response.reference_id,
                timestamp=utcnow(),
            ),
        )
        return PaymentResult(success=True, payment=payment, reference_id=response.reference_id)

    await publish_event(
        redis,
        CHANNEL,
        PaymentFailed(
            payment_id=payment_id,
            order_id=order_id,
            operation="authorize",
            reason=response.error or "",
            timestamp=utcnow(),
        ),
    )
    return PaymentResult(success=False, payment=payment, error=response.error)


async def capture_payment(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    gateway: PaymentGateway,
    payment_id: str,
    amount: float | None = None,
    timeout: float = GATEWAY_TIMEOUT,
) -> PaymentResult:
    """
    売上確定 (capture) コマンド

    authorized の Payment だけが対象。金額の既定値は与信額で、与信額を超えられない。
    """
    row = await _lock_payment(session, payment_id)
    try:
        aggregate.ensure_operation("capture", row.status)
        capture_amount = row.amount if amount is None else amount
        if capture_amount <= 0 or capture_amount > row.amount:
            raise InvalidAmount(
                f"Capture amount {capture_amount} must be within the authorized amount {row.amount}"
            )
    except ServiceError:
        await session.rollback()
        raise

    response, outcome = await _call_gateway(
        gateway,
        "capture",
        {
            "authorization_id": row.authorization_id,
            "amount": capture_amount,
            "currency": row.currency,
        },
        timeout,
    )
    if response.success:
        await _set_status(session, payment_id, row.status, aggregate.CAPTURED, capture_id=response.reference_id)
    else:
        await _set_status(session, payment_id, row.status, aggregate.FAILED, failure_reason=response.error)
    await _record_transaction(session, payment_id, "capture", capture_amount, outcome, response)
    await session.commit()

    payment = await _current(session, payment_id)
    if response.success:
        await publish_event(
            redis,
            CHANNEL,
            PaymentCaptured(
                payment_id=payment_id,
                order_id=row.order_id,
                amount=capture_amount,
                capture_id=response.reference_id,
                timestamp=utcnow(),
            ),
        )
        return PaymentResult(success=True, payment=payment, reference_id=response.reference_id)

    await publish_event(
        redis,
        CHANNEL,
        PaymentFailed(
            payment_id=payment_id,
            order_id=row.order_id,
            operation="capture",
            reason=response.error or "",
            timestamp=utcnow(),
        ),
    )
    return PaymentResult(success=False, payment=payment, error=response.error)


async def cancel_payment(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    gateway: PaymentGateway,
    payment_id: str,
    reason: str = "Cancelled by user",
    timeout: float = GATEWAY_TIMEOUT,
) -> PaymentResult:
    """
    取消コマンド（Saga の補償トランザクション）

    pending / authorized だけが対象。captured はこの経路では取り消せない。
    ゲートウェイが失敗した場合、状態は変えずに success=False を返す。
    """
    row = await _lock_payment(session, payment_id)
    try:
        aggregate.ensure_operation("cancel", row.status)
    except ServiceError:
        await session.rollback()
        raise

    response, outcome = await _call_gateway(
        gateway,
        "cancel",
        {"authorization_id": row.authorization_id, "reason": reason},
        timeout,
    )
    if response.success:
        await _set_status(session, payment_id, row.status, aggregate.CANCELLED, failure_reason=reason)
    await _record_transaction(session, payment_id, "cancel", row.amount, outcome, response)
    await session.commit()

    payment = await _current(session, payment_id)
    if not response.success:
        logger.warning("Gateway refused to cancel payment %s: %s", payment_id, response.error)
        return PaymentResult(success=False, payment=payment, error=response.error)

    await publish_event(
        redis,
        CHANNEL,
        PaymentCancelled(
            payment_id=payment_id,
            order_id=row.order_id,
            reason=reason,
            timestamp=utcnow(),
        ),
    )
    return PaymentResult(success=True, payment=payment)
