"""
Storefront Service — イベント定義

注文に起きた事実をイベントとして定義する。
イベントは過去形で命名し、不変(immutable)として扱う。
event_store には model_dump(mode="json") した dict を保存する。
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class _Event(BaseModel):
    model_config = ConfigDict(frozen=True)


class OrderCreated(_Event):
    """注文が作成された（決済セッション作成済み）"""
    order_id: UUID
    user_id: UUID
    game_id: UUID
    game_name: str
    amount: Decimal
    currency: str
    payment_ref: str
    timestamp: datetime


class OrderConfirmed(_Event):
    """注文が確定された（決済成功 → エンタイトルメント付与）"""
    order_id: UUID
    payment_ref: str
    invoice_url: str | None = None
    timestamp: datetime


class OrderCancelled(_Event):
    """注文がキャンセルされた（決済失敗・セッション期限切れ）"""
    order_id: UUID
    reason: str
    timestamp: datetime
