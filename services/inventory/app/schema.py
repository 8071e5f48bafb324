"""
Inventory Service — テーブル定義

products           在庫レコード (stock_quantity = 総数, reserved_quantity = 予約数)
stock_reservations 期限付きの在庫予約
stock_commits      確定済み予約の記録 (予約行は確定時に削除されるため)

available = stock_quantity - reserved_quantity で算出し、負にはならない。
"""

from sqlalchemy import (
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
    func,
)

metadata = MetaData()

products = Table(
    "products",
    metadata,
    Column("product_id", String(64), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("price", Float, nullable=False, default=0),
    Column("stock_quantity", Integer, nullable=False, default=0),
    Column("reserved_quantity", Integer, nullable=False, default=0),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    Column("updated_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    CheckConstraint("reserved_quantity >= 0", name="reserved_not_negative"),
    CheckConstraint("reserved_quantity <= stock_quantity", name="reserved_within_stock"),
)

stock_reservations = Table(
    "stock_reservations",
    metadata,
    Column("reservation_id", String(64), primary_key=True),
    Column("product_id", String(64), ForeignKey("products.product_id"), nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("request_key", String(255), unique=True, nullable=True),
    Column("expires_at", DateTime(timezone=True), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    CheckConstraint("quantity > 0", name="positive_quantity"),
    Index("idx_reservations_product", "product_id"),
    Index("idx_reservations_expires", "expires_at"),
)

stock_commits = Table(
    "stock_commits",
    metadata,
    Column("reservation_id", String(64), primary_key=True),
    Column("product_id", String(64), ForeignKey("products.product_id"), nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("committed_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
)
