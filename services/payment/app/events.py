"""
Payment Service — イベント定義

支払いの状態が変わるたびに payment_events チャネルに発行する。
"""

from datetime import datetime

from pydantic import BaseModel


class PaymentAuthorized(BaseModel):
    payment_id: str
    order_id: str
    amount: float
    authorization_id: str | None
    timestamp: datetime


class PaymentCaptured(BaseModel):
    payment_id: str
    order_id: str
    amount: float
    capture_id: str | None
    timestamp: datetime


class PaymentCancelled(BaseModel):
    payment_id: str
    order_id: str
    reason: str
    timestamp: datetime


class PaymentFailed(BaseModel):
    """authorize / capture がゲートウェイで失敗した"""
    payment_id: str
    order_id: str
    operation: str
    reason: str
    timestamp: datetime
