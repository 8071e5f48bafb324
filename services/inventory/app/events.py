"""
Inventory Service — イベント定義

在庫ドメインで発生するイベント。inventory_events チャネルに発行する。
"""

from datetime import datetime

from pydantic import BaseModel


class StockReserved(BaseModel):
    """在庫が予約された"""
    reservation_id: str
    product_id: str
    quantity: int
    expires_at: datetime
    timestamp: datetime


class StockCommitted(BaseModel):
    """予約が確定され、在庫が恒久的に減った"""
    reservation_id: str
    product_id: str
    quantity: int
    timestamp: datetime


class StockReleased(BaseModel):
    """予約が解放され、在庫が利用可能に戻った（補償トランザクション）"""
    reservation_id: str
    product_id: str
    quantity: int
    timestamp: datetime


class StockRestocked(BaseModel):
    """確定済みの在庫が戻された（commit_stock の補償）"""
    product_id: str
    quantity: int
    timestamp: datetime


class ReservationsExpired(BaseModel):
    """期限切れの予約がスイープで解放された"""
    reservation_ids: list[str]
    released: dict[str, int]
    timestamp: datetime
