"""
Payment Service — 支払い状態機械 (Payment State Machine)

状態遷移:
    PENDING → AUTHORIZED → CAPTURED
    PENDING → FAILED / CANCELLED
    AUTHORIZED → FAILED / CANCELLED

CAPTURED は終端（返金は外部の別経路）。FAILED と CANCELLED も終端。
操作ごとに「どの状態から実行できるか」を表で持ち、
コマンドハンドラは遷移の前に必ずこの表で検証する。
"""

from services.shared.errors import InvalidState

PENDING = "pending"
AUTHORIZED = "authorized"
CAPTURED = "captured"
FAILED = "failed"
CANCELLED = "cancelled"

STATUSES = (PENDING, AUTHORIZED, CAPTURED, FAILED, CANCELLED)

TRANSITIONS: dict[str, frozenset[str]] = {
    PENDING: frozenset({AUTHORIZED, FAILED, CANCELLED}),
    AUTHORIZED: frozenset({CAPTURED, FAILED, CANCELLED}),
    CAPTURED: frozenset(),
    FAILED: frozenset(),
    CANCELLED: frozenset(),
}

# 操作 → 実行可能な元の状態
OPERATION_SOURCES: dict[str, frozenset[str]] = {
    "authorize": frozenset({PENDING}),
    "capture": frozenset({AUTHORIZED}),
    "cancel": frozenset({PENDING, AUTHORIZED}),
}


def can_transition(current: str, target: str) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


def ensure_transition(current: str, target: str) -> None:
    if not can_transition(current, target):
        raise InvalidState(f"Payment cannot move from {current} to {target}")


def ensure_operation(operation: str, current: str) -> None:
    if current not in OPERATION_SOURCES[operation]:
        raise InvalidState(f"Cannot {operation} payment with status: {current}")
