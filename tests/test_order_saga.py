"""
Order saga scenarios

4 つのサービスを ASGITransport でつなぎ、オーケストレーターを実際に動かす。
"""

from datetime import timedelta

import httpx
import pytest
from sqlalchemy import insert
from tenacity import wait_none

from services.inventory.app import commands as inventory_commands
from services.inventory.app import main as inventory_main
from services.order.app import commands, queries, saga_store
from services.order.app.clients import InventoryClient, PaymentClient
from services.order.app.orchestrator import SAGA_STEPS, compensation_steps_for
from services.payment.app import main as payment_main
from services.payment.app.schema import payments
from services.shared.db import utcnow
from services.shared.errors import InvalidInput, InvalidState, NotFound


async def _saga_state(env, order_id):
    async with env.order_db() as session:
        return await saga_store.load(session, order_id)


async def _pending_order(env, items, user_id="user-1"):
    """Saga を走らせずに注文だけ作る（クラッシュ直後の状態）"""
    async with env.order_db() as session:
        return await commands.create_order(session, None, user_id, items)


async def _advance(env, order_id, completed_steps, **saga_data):
    """completed_steps まで進んだところでプロセスが落ちた SagaState を作る"""
    state = await _saga_state(env, order_id)
    state.completed_steps = list(completed_steps)
    state.current_step = SAGA_STEPS[len(completed_steps)]
    state.saga_data.update(saga_data)
    async with env.order_db() as session:
        await saga_store.save(session, state)
    return state


async def _order(env, order_id):
    async with env.order_db() as session:
        return await queries.get_order(session, order_id)


class DroppingTransport(httpx.AsyncBaseTransport):
    """
    リクエストはアプリで処理させ、最初に一致した応答だけを捨てて ReadTimeout にする。
    サーバーでは処理済みなのにクライアントには応答が届かない状況を再現する。
    """

    def __init__(self, app, method: str, path_suffix: str):
        self.inner = httpx.ASGITransport(app=app)
        self.method = method
        self.path_suffix = path_suffix
        self.dropped: list[str] = []

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        response = await self.inner.handle_async_request(request)
        if (
            not self.dropped
            and request.method == self.method
            and request.url.path.endswith(self.path_suffix)
        ):
            self.dropped.append(request.url.path)
            raise httpx.ReadTimeout("response lost", request=request)
        return response


def test_compensations_run_in_reverse_and_cancel_payment_once():
    assert compensation_steps_for(list(SAGA_STEPS)) == ["restock_stock", "cancel_payment", "release_stock"]
    assert compensation_steps_for(["validate_user", "reserve_stock", "authorize_payment"]) == [
        "cancel_payment",
        "release_stock",
    ]
    assert compensation_steps_for(["validate_user"]) == []


@pytest.mark.asyncio
async def test_happy_path_confirms_order(saga_env):
    await saga_env.add_user()
    await saga_env.add_product("p-1", stock=10)

    order = await saga_env.orchestrator.create_order(
        "user-1", [{"product_id": "p-1", "quantity": 3, "unit_price": 10.0}]
    )

    assert order["status"] == "confirmed"
    assert order["total_amount"] == 30.0
    assert order["items"][0]["reservation_id"]
    assert [entry["step"] for entry in order["saga_log"]] == list(SAGA_STEPS)
    assert await _saga_state(saga_env, order["order_id"]) is None

    availability = await saga_env.availability("p-1")
    assert (availability["total"], availability["reserved"]) == (7, 0)
    payment = await saga_env.payments.get(order["payment_id"])
    assert payment["status"] == "captured"
    assert payment["amount"] == 30.0


@pytest.mark.asyncio
async def test_capture_failure_releases_every_reservation(saga_env):
    await saga_env.add_user()
    await saga_env.add_product("p-1", stock=5)
    await saga_env.add_product("p-2", stock=5)
    saga_env.gateway.fail("capture", "Capture failed: Authorization expired or invalid")

    order = await saga_env.orchestrator.create_order(
        "user-1",
        [
            {"product_id": "p-1", "quantity": 2, "unit_price": 10.0},
            {"product_id": "p-2", "quantity": 1, "unit_price": 25.0},
        ],
    )

    assert order["status"] == "failed"
    assert order["failure_reason"] == "Capture failed: Authorization expired or invalid"
    assert await _saga_state(saga_env, order["order_id"]) is None
    for product_id in ("p-1", "p-2"):
        availability = await saga_env.availability(product_id)
        assert (availability["total"], availability["reserved"]) == (5, 0)

    payments = await saga_env.payments.list_payments()
    assert [p["status"] for p in payments] == ["failed"]
    # failed の支払いは取消できないので、ゲートウェイの cancel は呼ばれない
    assert saga_env.gateway.count("cancel") == 0
    compensations = [e["step"] for e in order["saga_log"] if e["action"] == "compensate"]
    assert compensations == ["cancel_payment", "release_stock"]


@pytest.mark.asyncio
async def test_partial_reservation_failure_has_no_net_stock_impact(saga_env):
    await saga_env.add_user()
    await saga_env.add_product("p-a", stock=5)
    await saga_env.add_product("p-b", stock=1)

    order = await saga_env.orchestrator.create_order(
        "user-1",
        [
            {"product_id": "p-a", "quantity": 2, "unit_price": 10.0},
            {"product_id": "p-b", "quantity": 3, "unit_price": 10.0},
        ],
    )

    assert order["status"] == "failed"
    assert "Insufficient stock" in order["failure_reason"]
    assert (await saga_env.availability("p-a"))["reserved"] == 0
    assert (await saga_env.availability("p-b"))["reserved"] == 0
    assert saga_env.gateway.calls == []


@pytest.mark.asyncio
async def test_unknown_user_fails_before_any_side_effect(saga_env):
    await saga_env.add_product("p-1", stock=5)

    order = await saga_env.orchestrator.create_order(
        "ghost", [{"product_id": "p-1", "quantity": 1, "unit_price": 10.0}]
    )

    assert order["status"] == "failed"
    assert len(order["saga_log"]) == 1
    assert order["saga_log"][0]["step"] == "validate_user"
    assert (await saga_env.availability("p-1"))["reserved"] == 0


@pytest.mark.asyncio
async def test_authorize_failure_releases_stock(saga_env):
    await saga_env.add_user()
    await saga_env.add_product("p-1", stock=5)
    saga_env.gateway.fail("authorize", "Authorization failed: Insufficient funds or invalid card")

    order = await saga_env.orchestrator.create_order(
        "user-1", [{"product_id": "p-1", "quantity": 5, "unit_price": 1.0}]
    )

    assert order["status"] == "failed"
    assert order["failure_reason"].startswith("Authorization failed")
    assert (await saga_env.availability("p-1"))["available"] == 5


@pytest.mark.asyncio
async def test_step_timeout_fails_the_saga(saga_env):
    await saga_env.add_user()
    await saga_env.add_product("p-1", stock=5)
    saga_env.orchestrator.step_timeout = 0.5
    saga_env.gateway.delays["authorize"] = 2.0

    order = await saga_env.orchestrator.create_order(
        "user-1", [{"product_id": "p-1", "quantity": 1, "unit_price": 10.0}]
    )

    assert order["status"] == "failed"
    assert "authorize_payment timed out" in order["failure_reason"]
    assert (await saga_env.availability("p-1"))["reserved"] == 0
    # 与信が終わらなかった支払いは pending のまま残さない
    by_order = await saga_env.payments.list_by_order(order["order_id"])
    assert [p["status"] for p in by_order] == ["cancelled"]


@pytest.mark.asyncio
async def test_invalid_items_are_rejected_up_front(saga_env):
    with pytest.raises(InvalidInput):
        await saga_env.orchestrator.create_order("user-1", [])
    with pytest.raises(InvalidInput):
        await saga_env.orchestrator.create_order(
            "user-1", [{"product_id": "p-1", "quantity": 0, "unit_price": 1.0}]
        )
    with pytest.raises(InvalidInput):
        await saga_env.orchestrator.create_order(
            "user-1", [{"product_id": "p-1", "quantity": True, "unit_price": 1.0}]
        )


@pytest.mark.asyncio
async def test_resume_skips_completed_steps(saga_env):
    # ユーザーは登録しない: validate_user が再実行されれば Saga は失敗する
    await saga_env.add_product("p-1", stock=10)
    order_id = await _pending_order(saga_env, [{"product_id": "p-1", "quantity": 4, "unit_price": 2.5}])
    reservation = await saga_env.inventory.reserve("p-1", 4, request_key=f"{order_id}:0")

    state = await _saga_state(saga_env, order_id)
    state.completed_steps = ["validate_user", "reserve_stock"]
    state.current_step = "authorize_payment"
    state.saga_data["reservations"] = [
        {"line_no": 0, "product_id": "p-1", "quantity": 4, "reservation_id": reservation["reservation_id"]}
    ]
    async with saga_env.order_db() as session:
        await saga_store.save(session, state)

    saga_log = await saga_env.orchestrator.run(order_id)

    assert [entry["step"] for entry in saga_log] == list(SAGA_STEPS[2:])
    async with saga_env.order_db() as session:
        order = await queries.get_order(session, order_id)
    assert order["status"] == "confirmed"
    assert order["total_amount"] == 10.0
    availability = await saga_env.availability("p-1")
    assert (availability["total"], availability["reserved"]) == (6, 0)
    assert saga_env.gateway.count("authorize") == 1


@pytest.mark.asyncio
async def test_resume_reaches_the_same_result_as_an_uninterrupted_run(saga_env):
    await saga_env.add_user()
    await saga_env.add_product("p-1", stock=10)
    first = await _pending_order(saga_env, [{"product_id": "p-1", "quantity": 1, "unit_price": 3.0}])
    second = await _pending_order(saga_env, [{"product_id": "p-1", "quantity": 2, "unit_price": 3.0}])

    resumed = await saga_env.orchestrator.resume_pending()

    assert resumed == 2
    async with saga_env.order_db() as session:
        statuses = {o["order_id"]: o["status"] for o in await queries.list_orders(session)}
        assert await saga_store.list_pending_order_ids(session) == []
    assert statuses == {first: "confirmed", second: "confirmed"}
    assert (await saga_env.availability("p-1"))["total"] == 7


@pytest.mark.asyncio
async def test_resume_after_recorded_failure_only_compensates(saga_env):
    await saga_env.add_user()
    await saga_env.add_product("p-1", stock=3)
    order_id = await _pending_order(saga_env, [{"product_id": "p-1", "quantity": 3, "unit_price": 10.0}])
    reservation = await saga_env.inventory.reserve("p-1", 3, request_key=f"{order_id}:0")
    authorized = await saga_env.payments.authorize(order_id, "user-1", 30.0, idempotency_key=order_id)

    state = await _saga_state(saga_env, order_id)
    state.completed_steps = ["validate_user", "reserve_stock", "authorize_payment"]
    state.current_step = state.failed_step = "capture_payment"
    state.compensation_steps = compensation_steps_for(state.completed_steps)
    state.saga_data.update(
        {
            "reservations": [
                {"line_no": 0, "product_id": "p-1", "quantity": 3, "reservation_id": reservation["reservation_id"]}
            ],
            "payment_id": authorized["payment"]["payment_id"],
            "failure_reason": "Capture failed",
        }
    )
    async with saga_env.order_db() as session:
        await saga_store.save(session, state)

    await saga_env.orchestrator.run(order_id)

    async with saga_env.order_db() as session:
        order = await queries.get_order(session, order_id)
    assert order["status"] == "failed"
    assert order["failure_reason"] == "Capture failed"
    assert (await saga_env.availability("p-1"))["available"] == 3
    payment = await saga_env.payments.get(authorized["payment"]["payment_id"])
    assert payment["status"] == "cancelled"
    assert saga_env.gateway.count("capture") == 0


@pytest.mark.asyncio
async def test_cancel_pending_order_runs_compensations(saga_env):
    await saga_env.add_product("p-1", stock=5)
    order_id = await _pending_order(saga_env, [{"product_id": "p-1", "quantity": 2, "unit_price": 1.0}])
    reservation = await saga_env.inventory.reserve("p-1", 2, request_key=f"{order_id}:0")
    state = await _saga_state(saga_env, order_id)
    state.completed_steps = ["validate_user", "reserve_stock"]
    state.current_step = "authorize_payment"
    state.saga_data["reservations"] = [
        {"line_no": 0, "product_id": "p-1", "quantity": 2, "reservation_id": reservation["reservation_id"]}
    ]
    async with saga_env.order_db() as session:
        await saga_store.save(session, state)

    order = await saga_env.orchestrator.cancel_order(order_id)

    assert order["status"] == "cancelled"
    assert [e["step"] for e in order["saga_log"]] == ["release_stock"]
    assert (await saga_env.availability("p-1"))["reserved"] == 0
    assert await _saga_state(saga_env, order_id) is None


@pytest.mark.asyncio
async def test_cancel_rules(saga_env):
    await saga_env.add_user()
    await saga_env.add_product("p-1", stock=5)
    order = await saga_env.orchestrator.create_order(
        "user-1", [{"product_id": "p-1", "quantity": 1, "unit_price": 10.0}]
    )

    cancelled = await saga_env.orchestrator.cancel_order(order["order_id"])
    assert cancelled["status"] == "cancelled"

    with pytest.raises(InvalidState):
        await saga_env.orchestrator.cancel_order(order["order_id"])
    with pytest.raises(NotFound):
        await saga_env.orchestrator.cancel_order("missing")


# ── 応答を失った呼び出しと再開 ──────────────────


@pytest.mark.asyncio
async def test_lost_capture_response_does_not_capture_twice(saga_env):
    await saga_env.add_user()
    await saga_env.add_product("p-1", stock=10)
    transport = DroppingTransport(payment_main.app, "POST", "/capture")
    saga_env.orchestrator.payments = PaymentClient(
        "http://payment", transport=transport, wait=wait_none()
    )

    order = await saga_env.orchestrator.create_order(
        "user-1", [{"product_id": "p-1", "quantity": 2, "unit_price": 10.0}]
    )

    assert transport.dropped
    assert order["status"] == "confirmed"
    assert saga_env.gateway.count("capture") == 1
    payment = await saga_env.payments.get(order["payment_id"])
    assert payment["status"] == "captured"
    assert [t["transaction_type"] for t in payment["transactions"]] == ["authorize", "capture"]
    assert (await saga_env.availability("p-1"))["total"] == 8
    await saga_env.orchestrator.payments.aclose()


@pytest.mark.asyncio
async def test_lost_commit_response_does_not_commit_twice(saga_env):
    await saga_env.add_user()
    await saga_env.add_product("p-1", stock=10)
    await saga_env.add_product("p-2", stock=10)
    transport = DroppingTransport(inventory_main.app, "POST", "/commit")
    saga_env.orchestrator.inventory = InventoryClient(
        "http://inventory", transport=transport, wait=wait_none()
    )

    order = await saga_env.orchestrator.create_order(
        "user-1",
        [
            {"product_id": "p-1", "quantity": 3, "unit_price": 1.0},
            {"product_id": "p-2", "quantity": 1, "unit_price": 1.0},
        ],
    )

    assert len(transport.dropped) == 1
    assert order["status"] == "confirmed"
    for product_id, total in (("p-1", 7), ("p-2", 9)):
        availability = await saga_env.availability(product_id)
        assert (availability["total"], availability["reserved"]) == (total, 0)
    await saga_env.orchestrator.inventory.aclose()


@pytest.mark.asyncio
async def test_resume_after_capture_completed_before_crash(saga_env):
    await saga_env.add_product("p-1", stock=10)
    order_id = await _pending_order(saga_env, [{"product_id": "p-1", "quantity": 3, "unit_price": 5.0}])
    reservation = await saga_env.inventory.reserve("p-1", 3, request_key=f"{order_id}:0")
    authorized = await saga_env.payments.authorize(order_id, "user-1", 15.0, idempotency_key=order_id)
    payment_id = authorized["payment"]["payment_id"]
    # capture は済んだが、完了を保存する前に落ちた
    await saga_env.payments.capture(payment_id)
    await _advance(
        saga_env,
        order_id,
        SAGA_STEPS[:3],
        reservations=[
            {"line_no": 0, "product_id": "p-1", "quantity": 3, "reservation_id": reservation["reservation_id"]}
        ],
        payment_id=payment_id,
    )

    saga_log = await saga_env.orchestrator.run(order_id)

    assert [e["step"] for e in saga_log] == list(SAGA_STEPS[3:])
    assert (await _order(saga_env, order_id))["status"] == "confirmed"
    assert saga_env.gateway.count("capture") == 1
    assert (await saga_env.payments.get(payment_id))["status"] == "captured"
    assert (await saga_env.availability("p-1"))["total"] == 7


@pytest.mark.asyncio
async def test_resume_after_partial_commit_before_crash(saga_env):
    await saga_env.add_product("p-1", stock=10)
    await saga_env.add_product("p-2", stock=10)
    order_id = await _pending_order(
        saga_env,
        [
            {"product_id": "p-1", "quantity": 2, "unit_price": 5.0},
            {"product_id": "p-2", "quantity": 4, "unit_price": 5.0},
        ],
    )
    first = await saga_env.inventory.reserve("p-1", 2, request_key=f"{order_id}:0")
    second = await saga_env.inventory.reserve("p-2", 4, request_key=f"{order_id}:1")
    authorized = await saga_env.payments.authorize(order_id, "user-1", 30.0, idempotency_key=order_id)
    payment_id = authorized["payment"]["payment_id"]
    await saga_env.payments.capture(payment_id)
    # 1 件目だけ確定したところで落ちた
    await saga_env.inventory.commit(first["reservation_id"])
    await _advance(
        saga_env,
        order_id,
        SAGA_STEPS[:4],
        reservations=[
            {"line_no": 0, "product_id": "p-1", "quantity": 2, "reservation_id": first["reservation_id"]},
            {"line_no": 1, "product_id": "p-2", "quantity": 4, "reservation_id": second["reservation_id"]},
        ],
        payment_id=payment_id,
    )

    saga_log = await saga_env.orchestrator.run(order_id)

    assert [e["step"] for e in saga_log] == ["commit_stock", "confirm_order"]
    assert (await _order(saga_env, order_id))["status"] == "confirmed"
    for product_id, total in (("p-1", 8), ("p-2", 6)):
        availability = await saga_env.availability(product_id)
        assert (availability["total"], availability["reserved"]) == (total, 0)


# ── 与信が完了しなかった支払い ──────────────────


@pytest.mark.asyncio
async def test_pending_payment_from_an_earlier_attempt_is_cancelled(saga_env):
    await saga_env.add_product("p-1", stock=5)
    order_id = await _pending_order(saga_env, [{"product_id": "p-1", "quantity": 1, "unit_price": 8.0}])
    reservation = await saga_env.inventory.reserve("p-1", 1, request_key=f"{order_id}:0")
    # 前回の与信がゲートウェイ呼び出し中に落ちて pending のまま残った支払い
    now = utcnow()
    async with saga_env.payment_db() as session:
        await session.execute(
            insert(payments).values(
                payment_id="pay-stuck",
                order_id=order_id,
                user_id="user-1",
                amount=8.0,
                currency="VND",
                status="pending",
                payment_method="credit_card",
                idempotency_key=order_id,
                metadata={},
                created_at=now,
                updated_at=now,
            )
        )
        await session.commit()
    await _advance(
        saga_env,
        order_id,
        SAGA_STEPS[:2],
        reservations=[
            {"line_no": 0, "product_id": "p-1", "quantity": 1, "reservation_id": reservation["reservation_id"]}
        ],
    )

    await saga_env.orchestrator.run(order_id)

    order = await _order(saga_env, order_id)
    assert order["status"] == "failed"
    assert order["failure_reason"] == "Payment is pending"
    assert (await saga_env.payments.get("pay-stuck"))["status"] == "cancelled"
    assert saga_env.gateway.count("authorize") == 0
    assert (await saga_env.availability("p-1"))["reserved"] == 0


# ── commit_stock の失敗とキャンセル ─────────────


@pytest.mark.asyncio
async def test_commit_failure_on_expired_reservation_fails_the_order(saga_env):
    await saga_env.add_product("p-1", stock=5)
    order_id = await _pending_order(saga_env, [{"product_id": "p-1", "quantity": 2, "unit_price": 5.0}])
    async with saga_env.inventory_db() as session:
        reservation = await inventory_commands.reserve_stock(
            session, None, "p-1", 2, request_key=f"{order_id}:0", now=utcnow() - timedelta(hours=1)
        )
    authorized = await saga_env.payments.authorize(order_id, "user-1", 10.0, idempotency_key=order_id)
    payment_id = authorized["payment"]["payment_id"]
    await saga_env.payments.capture(payment_id)
    await _advance(
        saga_env,
        order_id,
        SAGA_STEPS[:4],
        reservations=[
            {"line_no": 0, "product_id": "p-1", "quantity": 2, "reservation_id": reservation["reservation_id"]}
        ],
        payment_id=payment_id,
    )

    saga_log = await saga_env.orchestrator.run(order_id)

    order = await _order(saga_env, order_id)
    assert order["status"] == "failed"
    assert "expired" in order["failure_reason"]
    assert await _saga_state(saga_env, order_id) is None
    availability = await saga_env.availability("p-1")
    assert (availability["total"], availability["reserved"]) == (5, 0)
    # captured の支払いは取消できない (返金は別経路)
    assert (await saga_env.payments.get(payment_id))["status"] == "captured"
    compensations = [(e["step"], e["status"]) for e in saga_log if e["action"] == "compensate"]
    assert compensations == [("cancel_payment", "FAILED"), ("release_stock", "COMPLETED")]


@pytest.mark.asyncio
async def test_cancel_after_authorize_cancels_the_payment(saga_env):
    await saga_env.add_product("p-1", stock=5)
    order_id = await _pending_order(saga_env, [{"product_id": "p-1", "quantity": 2, "unit_price": 4.0}])
    reservation = await saga_env.inventory.reserve("p-1", 2, request_key=f"{order_id}:0")
    authorized = await saga_env.payments.authorize(order_id, "user-1", 8.0, idempotency_key=order_id)
    payment_id = authorized["payment"]["payment_id"]
    await _advance(
        saga_env,
        order_id,
        SAGA_STEPS[:3],
        reservations=[
            {"line_no": 0, "product_id": "p-1", "quantity": 2, "reservation_id": reservation["reservation_id"]}
        ],
        payment_id=payment_id,
    )

    order = await saga_env.orchestrator.cancel_order(order_id)

    assert order["status"] == "cancelled"
    assert [e["step"] for e in order["saga_log"]] == ["cancel_payment", "release_stock"]
    assert (await saga_env.payments.get(payment_id))["status"] == "cancelled"
    assert saga_env.gateway.count("cancel") == 1
    assert (await saga_env.availability("p-1"))["reserved"] == 0


@pytest.mark.asyncio
async def test_cancel_after_commit_restocks(saga_env):
    await saga_env.add_product("p-1", stock=10)
    order_id = await _pending_order(saga_env, [{"product_id": "p-1", "quantity": 3, "unit_price": 2.0}])
    reservation = await saga_env.inventory.reserve("p-1", 3, request_key=f"{order_id}:0")
    authorized = await saga_env.payments.authorize(order_id, "user-1", 6.0, idempotency_key=order_id)
    payment_id = authorized["payment"]["payment_id"]
    await saga_env.payments.capture(payment_id)
    await saga_env.inventory.commit(reservation["reservation_id"])
    assert (await saga_env.availability("p-1"))["total"] == 7
    await _advance(
        saga_env,
        order_id,
        SAGA_STEPS[:5],
        reservations=[
            {"line_no": 0, "product_id": "p-1", "quantity": 3, "reservation_id": reservation["reservation_id"]}
        ],
        payment_id=payment_id,
    )

    order = await saga_env.orchestrator.cancel_order(order_id)

    assert order["status"] == "cancelled"
    compensations = [(e["step"], e["status"]) for e in order["saga_log"]]
    assert compensations == [
        ("restock_stock", "COMPLETED"),
        ("cancel_payment", "FAILED"),
        ("release_stock", "COMPLETED"),
    ]
    availability = await saga_env.availability("p-1")
    assert (availability["total"], availability["reserved"]) == (10, 0)


@pytest.mark.asyncio
async def test_unexpected_compensation_error_still_concludes_the_order(saga_env, monkeypatch):
    await saga_env.add_user()
    await saga_env.add_product("p-1", stock=5)
    saga_env.gateway.fail("authorize")

    async def broken_release(reservation_id):
        raise ValueError(f"cannot release {reservation_id}")

    monkeypatch.setattr(saga_env.inventory, "release", broken_release)

    order = await saga_env.orchestrator.create_order(
        "user-1", [{"product_id": "p-1", "quantity": 2, "unit_price": 1.0}]
    )

    assert order["status"] == "failed"
    assert await _saga_state(saga_env, order["order_id"]) is None
    compensations = [(e["step"], e["status"]) for e in order["saga_log"] if e["action"] == "compensate"]
    assert compensations == [("release_stock", "FAILED")]
