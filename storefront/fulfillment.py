"""
Storefront Service — 注文フルフィルメント

購入フロー:
  ┌─────────────────────────────────────────────────────────────┐
  │  1. initiate : ゲートウェイで決済セッション作成 → 注文(pending) │
  │  2. 購入者がゲートウェイで支払う（サービス外）                 │
  │  3. confirm (Webhook) / verify (クライアントからの問い合わせ)  │
  │     ├─ 成功 → confirmed + エンタイトルメント付与 (1 トランザクション) │
  │     └─ 失敗 → cancelled                                        │
  │  4. コミット後: Redis にイベント発行、確認メールを非同期送信    │
  └─────────────────────────────────────────────────────────────┘

同じ注文への遷移は注文 ID ごとのロックで直列化し、ワーカー間の競合は
イベントストアのバージョン番号 (楽観的ロック) で検知する。
ロックを保持したままネットワーク呼び出しはしない。
"""

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from uuid import UUID, uuid4

import redis.asyncio as aioredis
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from . import commands, event_store, queries
from .aggregate import CANCELLED, CONFIRMED, OrderAggregate
from .errors import (
    AlreadyOwned,
    ConcurrentModification,
    Forbidden,
    InactiveBuyer,
    InvalidNotification,
    InvalidTransition,
    NotFound,
    StorefrontError,
)
from .gateway import SUCCEEDED, Correlation, GatewayNotification, PaymentGateway
from .notifier import ORDER_CONFIRMED, MailNotifier

logger = logging.getLogger(__name__)


class OrderLocks:
    """注文 ID ごとの asyncio.Lock。待ち手がいなくなったロックは破棄する。"""

    def __init__(self) -> None:
        self._locks: dict[UUID, asyncio.Lock] = {}
        self._holders: dict[UUID, int] = {}

    @asynccontextmanager
    async def hold(self, order_id: UUID) -> AsyncIterator[None]:
        lock = self._locks.setdefault(order_id, asyncio.Lock())
        self._holders[order_id] = self._holders.get(order_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[order_id] -= 1
            if not self._holders[order_id]:
                del self._holders[order_id]
                del self._locks[order_id]

    def __len__(self) -> int:
        return len(self._locks)


class FulfillmentService:
    """注文のライフサイクルを駆動するステートマシン"""

    max_attempts = 3

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: PaymentGateway,
        notifier: MailNotifier,
        redis: aioredis.Redis | None = None,
        currency: str = "usd",
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.notifier = notifier
        self.redis = redis
        self.currency = currency
        self.locks = OrderLocks()

    # ── initiate ─────────────────────────────────

    async def initiate(self, user_id: UUID, game_id: UUID) -> dict:
        """
        購入を開始する。

        ゲートウェイがセッションを受け付けてから注文を保存する。
        セッション作成に失敗した場合は何も保存されない (GatewayUnavailable)。
        """
        async with self.session_factory() as session:
            user = await queries.get_user(session, user_id)
            if not user:
                raise NotFound("User", user_id)
            if user["status"] != "active":
                raise InactiveBuyer(user_id, user["status"])
            game = await queries.get_game(session, game_id)
            if not game:
                raise NotFound("Game", game_id)
            if await queries.user_owns_game(session, user_id, game_id):
                raise AlreadyOwned(user_id, game_id)

        # 注文 ID は先に採番し、相関データとしてゲートウェイに渡す
        order_id = uuid4()
        amount = game["price"]
        payment = await self.gateway.create_session(
            amount,
            self.currency,
            Correlation(order_id=order_id, user_id=user_id, game_id=game_id),
            product_name=game["name"],
            description=f"Game by {game['author']}",
            image_url=game["thumbnail"],
            customer_email=user["email"],
        )

        async with self.session_factory() as session:
            agg, event_data = await commands.create_order(
                session,
                order_id,
                user_id,
                game_id,
                game["name"],
                amount,
                self.currency,
                payment.session_id,
            )
        logger.info("Order %s created for user %s (game %s)", order_id, user_id, game_id)

        await commands.publish_event(self.redis, "OrderCreated", event_data)
        return {
            "order_id": str(agg.id),
            "session_id": payment.session_id,
            "url": payment.client_handle,
        }

    # ── confirm / verify ─────────────────────────

    async def confirm(self, notification: GatewayNotification) -> dict | None:
        """
        署名検証済みの Webhook 通知を注文に適用する。

        結果を持たない通知 (処理対象外のイベント、未入金の completed) は None。
        同じ通知が何度届いても遷移は一度だけ行われる。
        """
        outcome = notification.outcome
        if outcome is None:
            logger.info(
                "Ignoring webhook %s (%s)", notification.event_id, notification.event_type
            )
            return None

        session = notification.session
        invoice_url = None
        if outcome == SUCCEEDED and session.invoice:
            invoice_url = await self.gateway.resolve_invoice_url(session.invoice)

        agg = await self._apply(
            notification.correlation,
            outcome,
            payment_ref=session.id,
            invoice_url=invoice_url,
            reason=notification.event_type,
        )
        return agg.to_dict()

    async def verify(self, session_id: str, user_id: UUID) -> dict:
        """
        クライアントからの同期的な確認。ゲートウェイにセッションを問い合わせ、
        confirm と同じ規則で注文を遷移させる。
        """
        status = await self.gateway.retrieve_session(session_id)
        if status.correlation.user_id != user_id:
            raise NotFound("Payment session", session_id)

        if status.outcome is None:
            # まだ支払いが完了していない → 注文は pending のまま
            async with self.session_factory() as db:
                agg = await self._load(db, status.correlation.order_id)
            return agg.to_dict()

        agg = await self._apply(
            status.correlation,
            status.outcome,
            payment_ref=status.session_id,
            invoice_url=status.invoice_url,
            reason="checkout.session.expired",
        )
        return agg.to_dict()

    async def confirm_for_buyer(self, order_id: UUID, user_id: UUID) -> dict:
        """POST /purchases/{id}/confirm — 注文のセッションをゲートウェイで確認する。"""
        async with self.session_factory() as session:
            order = await queries.get_order(session, order_id)
        if not order:
            raise NotFound("Order", order_id)
        if order["user_id"] != str(user_id):
            raise Forbidden("Not authorized")
        return await self.verify(order["payment_ref"], user_id)

    # ── 状態遷移 ─────────────────────────────────

    async def _load(self, session: AsyncSession, order_id: UUID) -> OrderAggregate:
        events = await event_store.load_events(session, order_id)
        if not events:
            raise NotFound("Order", order_id)
        return OrderAggregate.from_events(events)

    async def _apply(
        self,
        correlation: Correlation,
        outcome: str,
        *,
        payment_ref: str | None = None,
        invoice_url: str | None = None,
        reason: str = "",
    ) -> OrderAggregate:
        agg, event_data = await self._transition(
            correlation.order_id,
            CONFIRMED if outcome == SUCCEEDED else CANCELLED,
            correlation=correlation,
            payment_ref=payment_ref,
            invoice_url=invoice_url,
            reason=reason,
        )
        if event_data is not None:
            await self._after_transition(agg, event_data)
        return agg

    async def _transition(
        self,
        order_id: UUID,
        target: str,
        *,
        correlation: Correlation | None = None,
        payment_ref: str | None = None,
        invoice_url: str | None = None,
        reason: str = "",
    ) -> tuple[OrderAggregate, dict | None]:
        """
        pending → target の遷移を一度だけ行う。

        戻り値の event_data は遷移を実行した場合のみ非 None。
        既に遷移済みなら現在の集約をそのまま返す (冪等)。
        """
        async with self.locks.hold(order_id):
            for attempt in range(1, self.max_attempts + 1):
                async with self.session_factory() as session:
                    agg = await self._load(session, order_id)
                    if correlation is not None and (
                        agg.user_id != correlation.user_id
                        or agg.game_id != correlation.game_id
                    ):
                        raise InvalidNotification(
                            f"Correlation does not match order {order_id}"
                        )

                    try:
                        if not agg.check_transition(target):
                            logger.info(
                                "Order %s already %s; nothing to do", order_id, agg.status
                            )
                            return agg, None
                    except InvalidTransition:
                        logger.warning(
                            "Rejected %s for order %s in state %s",
                            target, order_id, agg.status,
                        )
                        raise

                    try:
                        if target == CONFIRMED:
                            event_data = await commands.confirm_order(
                                session, agg, payment_ref or agg.payment_ref, invoice_url
                            )
                        else:
                            event_data = await commands.cancel_order(session, agg, reason)
                    except IntegrityError:
                        # 別ワーカーが同じバージョンを先に書いた → リプレイして再評価
                        await session.rollback()
                        logger.info(
                            "Version conflict on order %s (attempt %d)", order_id, attempt
                        )
                        continue

                    logger.info("Order %s marked as %s", order_id, agg.status)
                    return agg, event_data

        raise ConcurrentModification(order_id)

    async def _after_transition(self, agg: OrderAggregate, event_data: dict) -> None:
        """コミット後・ロック解放後の副作用。どちらも失敗しても状態は変わらない。"""
        if agg.status == CONFIRMED:
            await commands.publish_event(self.redis, "OrderConfirmed", event_data)
            async with self.session_factory() as session:
                user = await queries.get_user(session, agg.user_id)
            if user:
                self.notifier.dispatch(
                    user["email"],
                    ORDER_CONFIRMED,
                    {
                        "order_id": agg.id,
                        "game_name": agg.game_name,
                        "amount": agg.amount,
                    },
                )
        else:
            await commands.publish_event(self.redis, "OrderCancelled", event_data)

    # ── スイープ (整合性修復・期限切れ) ───────────

    async def reconcile_entitlements(self) -> int:
        """
        confirmed なのにエンタイトルメントがない注文を修復する。

        confirm_order は同一トランザクションで付与するため通常は 0 件。
        """
        async with self.session_factory() as session:
            missing = await queries.list_confirmed_without_entitlement(session)
            granted = 0
            for row in missing:
                if await commands.grant_entitlement(
                    session, row["user_id"], row["game_id"], row["order_id"]
                ):
                    granted += 1
            await session.commit()
        if granted:
            logger.warning("Reconciled %d missing entitlements", granted)
        return granted

    async def expire_pending(self, older_than: timedelta) -> int:
        """
        older_than より古い pending 注文を cancelled にする。

        キャンセル前にゲートウェイへセッションを問い合わせる。
        通知が届いていないだけで支払い済みなら confirmed にする。
        問い合わせに失敗した注文は次回のスイープに回す。
        """
        cutoff = datetime.now(timezone.utc) - older_than
        async with self.session_factory() as session:
            candidates = await queries.list_pending_before(session, cutoff)

        expired = 0
        for order in candidates:
            try:
                if await self._expire_one(order["id"], order["payment_ref"]):
                    expired += 1
            except StorefrontError as e:
                logger.warning("Skipped expiring order %s: %s", order["id"], e)
        if expired:
            logger.info("Expired %d pending orders older than %s", expired, older_than)
        return expired

    async def _expire_one(self, order_id: UUID, payment_ref: str) -> bool:
        try:
            status = await self.gateway.retrieve_session(payment_ref)
        except NotFound:
            status = None

        if status is not None and status.outcome == SUCCEEDED:
            logger.warning("Order %s was paid but never notified; confirming", order_id)
            await self._apply(
                status.correlation,
                SUCCEEDED,
                payment_ref=status.session_id,
                invoice_url=status.invoice_url,
            )
            return False

        agg, event_data = await self._transition(order_id, CANCELLED, reason="expired")
        if event_data is None:
            return False
        await self._after_transition(agg, event_data)
        return True
