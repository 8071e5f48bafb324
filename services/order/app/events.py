"""
Order Service — イベント定義

注文と Saga の結果。イベントは過去形で命名し、不変(immutable)として扱う。
注文イベントは order_events、Saga の結果は saga_events に発行する。
"""

from datetime import datetime

from pydantic import BaseModel


class OrderCreated(BaseModel):
    """注文が作成された（Saga 開始）"""
    order_id: str
    user_id: str
    total_amount: float
    currency: str
    items: list[dict]
    timestamp: datetime


class OrderConfirmed(BaseModel):
    """注文が確定された（Saga 完了）"""
    order_id: str
    payment_id: str | None
    timestamp: datetime


class OrderFailed(BaseModel):
    """Saga が失敗し、補償トランザクションが実行された"""
    order_id: str
    failed_step: str
    reason: str
    timestamp: datetime


class OrderCancelled(BaseModel):
    """ユーザーが注文をキャンセルした"""
    order_id: str
    timestamp: datetime


class SagaCompleted(BaseModel):
    order_id: str
    saga_log: list[dict]


class SagaFailed(BaseModel):
    order_id: str
    failed_step: str
    compensation_steps: list[str]
    saga_log: list[dict]


class SagaCancelled(BaseModel):
    order_id: str
    compensation_steps: list[str]
