"""
Order Service — テーブル定義

orders            注文 (リードモデルを兼ねる)
order_items       注文明細
order_saga_state  実行中の Saga の進捗。Saga が終わると削除する。
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

orders = Table(
    "orders",
    metadata,
    Column("order_id", String(64), primary_key=True),
    Column("user_id", String(64), nullable=False),
    Column("status", String(16), nullable=False),
    Column("total_amount", Float, nullable=False),
    Column("currency", String(8), nullable=False, default="VND"),
    Column("payment_id", String(64), nullable=True),
    Column("shipping_address", Text, nullable=True),
    Column("metadata", JSON, nullable=True),
    Column("failure_reason", Text, nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    Column("updated_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    CheckConstraint(
        "status IN ('pending', 'confirmed', 'failed', 'cancelled')",
        name="valid_status",
    ),
    Index("idx_orders_user", "user_id"),
    Index("idx_orders_status", "status"),
)

order_items = Table(
    "order_items",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("order_id", String(64), ForeignKey("orders.order_id"), nullable=False),
    Column("line_no", Integer, nullable=False),
    Column("product_id", String(64), nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("unit_price", Float, nullable=False),
    Column("total_price", Float, nullable=False),
    Column("reservation_id", String(64), nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    CheckConstraint("quantity > 0", name="positive_quantity"),
    Index("idx_order_items_order", "order_id"),
)

order_saga_state = Table(
    "order_saga_state",
    metadata,
    Column("order_id", String(64), ForeignKey("orders.order_id"), primary_key=True),
    Column("current_step", String(32), nullable=False),
    Column("completed_steps", JSON, nullable=False),
    Column("failed_step", String(32), nullable=True),
    Column("compensation_steps", JSON, nullable=False),
    Column("saga_data", JSON, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    Column("updated_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
)
