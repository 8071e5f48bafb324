"""
Payment Service — テーブル定義

payments              支払いの現在の状態
payment_transactions  ゲートウェイ呼び出しごとの監査ログ（追記のみ・更新/削除しない）
"""

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    func,
)

metadata = MetaData()

payments = Table(
    "payments",
    metadata,
    Column("payment_id", String(64), primary_key=True),
    Column("order_id", String(64), nullable=False),
    Column("user_id", String(64), nullable=False),
    Column("amount", Float, nullable=False),
    Column("currency", String(8), nullable=False, default="VND"),
    Column("status", String(16), nullable=False),
    Column("payment_method", String(64), nullable=True),
    Column("authorization_id", String(128), nullable=True),
    Column("capture_id", String(128), nullable=True),
    Column("failure_reason", Text, nullable=True),
    Column("idempotency_key", String(255), unique=True, nullable=True),
    Column("metadata", JSON, nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    Column("updated_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    CheckConstraint("amount > 0", name="positive_amount"),
    CheckConstraint(
        "status IN ('pending', 'authorized', 'captured', 'failed', 'cancelled')",
        name="valid_status",
    ),
    Index("idx_payments_order", "order_id"),
    Index("idx_payments_user", "user_id"),
    Index("idx_payments_status", "status"),
)

payment_transactions = Table(
    "payment_transactions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("payment_id", String(64), ForeignKey("payments.payment_id"), nullable=False),
    Column("transaction_type", String(16), nullable=False),
    Column("amount", Float, nullable=True),
    Column("status", String(16), nullable=False),
    Column("response_data", JSON, nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    CheckConstraint(
        "transaction_type IN ('authorize', 'capture', 'cancel', 'refund')",
        name="valid_transaction_type",
    ),
    Index("idx_transactions_payment", "payment_id"),
)
