"""
User Service — テーブル定義

Saga が必要とするのは「ユーザーが存在するか」だけなので、
認証情報は持たない。
"""

from sqlalchemy import Column, DateTime, MetaData, String, Table, func

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("user_id", String(64), primary_key=True),
    Column("email", String(255), unique=True, nullable=False),
    Column("name", String(255), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
)
