"""
Storefront Service — 注文集約 (Order Aggregate)

注文の状態はテーブルに持たず、event_store のイベント列から組み立てる。
各イベント型に対応する apply_xxx が状態を一段ずつ進める。
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from .errors import InvalidTransition

PENDING = "pending"
CONFIRMED = "confirmed"
CANCELLED = "cancelled"


class OrderAggregate:
    """
    購入一回分の注文。

    状態遷移:
        pending → confirmed  (決済成功)
        pending → cancelled  (決済失敗・期限切れ)
    confirmed / cancelled は終端状態で、以後の遷移はない。
    """

    def __init__(self) -> None:
        self.id: UUID | None = None
        self.user_id: UUID | None = None
        self.game_id: UUID | None = None
        self.game_name: str = ""
        self.amount: Decimal = Decimal("0")
        self.currency: str = ""
        self.payment_ref: str = ""
        self.invoice_url: str | None = None
        self.cancel_reason: str | None = None
        self.status: str = "unknown"
        self.created_at: datetime | None = None
        self.version: int = 0

    def check_transition(self, target: str) -> bool:
        """
        target への遷移を検証する。

        True  : 遷移を実行すべき (pending から)
        False : 既に確定済み、または既に target に到達済み。冪等に現在の状態を返す
        InvalidTransition : キャンセル済みの注文を確定しようとした
        """
        if self.status == PENDING:
            return True
        if self.status in (CONFIRMED, target):
            return False
        raise InvalidTransition(self.id, self.status, target)

    # ── イベント適用 ─────────────────────────────────

    def apply_order_created(self, data: dict) -> None:
        self.id = UUID(data["order_id"])
        self.user_id = UUID(data["user_id"])
        self.game_id = UUID(data["game_id"])
        self.game_name = data["game_name"]
        self.amount = Decimal(data["amount"])
        self.currency = data["currency"]
        self.payment_ref = data["payment_ref"]
        self.created_at = datetime.fromisoformat(data["timestamp"])
        self.status = PENDING

    def apply_order_confirmed(self, data: dict) -> None:
        self.payment_ref = data["payment_ref"]
        if data.get("invoice_url"):
            self.invoice_url = data["invoice_url"]
        self.status = CONFIRMED

    def apply_order_cancelled(self, data: dict) -> None:
        self.cancel_reason = data["reason"]
        self.status = CANCELLED

    # ── リプレイ ─────────────────────────────────────

    def apply_event(self, event_type: str, event_data: dict) -> None:
        """イベントタイプに応じた apply メソッドを呼び出す。"""
        handler = {
            "OrderCreated": self.apply_order_created,
            "OrderConfirmed": self.apply_order_confirmed,
            "OrderCancelled": self.apply_order_cancelled,
        }.get(event_type)
        if handler:
            handler(event_data)

    @classmethod
    def from_events(cls, events: list[dict]) -> "OrderAggregate":
        """イベント列から集約を再構築する。"""
        agg = cls()
        for e in events:
            agg.apply_event(e["event_type"], e["event_data"])
            agg.version = e["version"]
        return agg

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "user_id": str(self.user_id),
            "game_id": str(self.game_id),
            "game_name": self.game_name,
            "amount": str(self.amount),
            "currency": self.currency,
            "payment_ref": self.payment_ref,
            "status": self.status,
            "invoice_url": self.invoice_url,
            "cancel_reason": self.cancel_reason,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "version": self.version,
        }
