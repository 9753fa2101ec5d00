"""Storefront Service — 例外定義"""

from uuid import UUID


class StorefrontError(Exception):
    """すべてのドメイン例外の基底クラス"""

    status_code = 400


class NotFound(StorefrontError):
    """注文・ゲーム・ユーザー・決済セッションが見つからない"""

    status_code = 404

    def __init__(self, kind: str, ident: object):
        self.kind = kind
        self.ident = ident
        super().__init__(f"{kind} not found: {ident}")


class AlreadyOwned(StorefrontError):
    """購入者は既にこのゲームを所有している"""

    status_code = 409

    def __init__(self, user_id: UUID, game_id: UUID):
        self.user_id = user_id
        self.game_id = game_id
        super().__init__("You already own this game")


class InactiveBuyer(StorefrontError):
    """承認待ち・停止中のユーザーは購入できない"""

    status_code = 403

    def __init__(self, user_id: UUID, status: str):
        self.user_id = user_id
        self.status = status
        super().__init__(f"Account is not active (status={status})")


class Forbidden(StorefrontError):
    status_code = 403


class GatewayUnavailable(StorefrontError):
    """決済ゲートウェイの呼び出しに失敗した。initiate は再試行してよい。"""

    status_code = 502


class InvalidNotification(StorefrontError):
    """署名検証またはスキーマ検証に失敗したゲートウェイ通知"""

    status_code = 400


class InvalidTransition(StorefrontError):
    """終端状態の注文に対する不正な状態遷移"""

    status_code = 409

    def __init__(self, order_id: UUID, current: str, requested: str):
        self.order_id = order_id
        self.current = current
        self.requested = requested
        super().__init__(
            f"Order {order_id} is {current}; cannot transition to {requested}"
        )


class ConcurrentModification(StorefrontError):
    """楽観的ロックの競合が再試行上限を超えた"""

    status_code = 409

    def __init__(self, order_id: UUID):
        self.order_id = order_id
        super().__init__(f"Order {order_id} was modified concurrently")
