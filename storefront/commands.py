"""
Storefront Service — コマンドハンドラ (CQRS の Write 側)

各コマンドはイベントの追記とリードモデルの投影を同じトランザクションで行う。

  confirm_order: OrderConfirmed イベント + リードモデル更新 + 所有権付与
                 → 1 トランザクションでコミット (二重書き込みを原子的に)
"""

import json
import logging
from datetime import datetime, timezone
from decimal import Decimal
from uuid import UUID

import redis.asyncio as aioredis
from redis.exceptions import RedisError
from sqlalchemy import insert, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from . import event_store
from .aggregate import CANCELLED, CONFIRMED, PENDING, OrderAggregate
from .events import OrderCancelled, OrderConfirmed, OrderCreated
from .schema import entitlements, orders_read_model

logger = logging.getLogger(__name__)

ORDER_EVENTS_CHANNEL = "order_events"


async def create_order(
    session: AsyncSession,
    order_id: UUID,
    user_id: UUID,
    game_id: UUID,
    game_name: str,
    amount: Decimal,
    currency: str,
    payment_ref: str,
) -> tuple[OrderAggregate, dict]:
    """
    pending の注文を書き込む。

    決済セッション作成後に呼ばれるので、payment_ref には
    ゲートウェイのセッション ID が入る。
    """
    now = datetime.now(timezone.utc)
    event_data = OrderCreated(
        order_id=order_id,
        user_id=user_id,
        game_id=game_id,
        game_name=game_name,
        amount=amount,
        currency=currency,
        payment_ref=payment_ref,
        timestamp=now,
    ).model_dump(mode="json")

    version = await event_store.append_event(
        session, order_id, "Order", "OrderCreated", event_data, 0
    )

    await session.execute(
        insert(orders_read_model).values(
            id=order_id,
            user_id=user_id,
            game_id=game_id,
            game_name=game_name,
            amount=amount,
            currency=currency,
            payment_ref=payment_ref,
            status=PENDING,
            created_at=now,
            updated_at=now,
        )
    )

    await session.commit()

    agg = OrderAggregate()
    agg.apply_order_created(event_data)
    agg.version = version
    return agg, event_data


async def confirm_order(
    session: AsyncSession,
    agg: OrderAggregate,
    payment_ref: str,
    invoice_url: str | None = None,
) -> dict:
    """
    注文確定コマンド

    agg.version を期待バージョンとしてイベントを追記する。
    別のワーカーが先に遷移させていれば IntegrityError になる。
    """
    now = datetime.now(timezone.utc)
    event_data = OrderConfirmed(
        order_id=agg.id,
        payment_ref=payment_ref,
        invoice_url=invoice_url,
        timestamp=now,
    ).model_dump(mode="json")

    version = await event_store.append_event(
        session, agg.id, "Order", "OrderConfirmed", event_data, agg.version
    )

    await _project_status(
        session,
        agg.id,
        CONFIRMED,
        now,
        payment_ref=payment_ref,
        invoice_url=invoice_url,
    )
    await grant_entitlement(session, agg.user_id, agg.game_id, agg.id)

    await session.commit()

    agg.apply_order_confirmed(event_data)
    agg.version = version
    return event_data


async def cancel_order(
    session: AsyncSession,
    agg: OrderAggregate,
    reason: str,
) -> dict:
    """注文キャンセルコマンド（決済失敗・期限切れ）。エンタイトルメントは変更しない。"""
    now = datetime.now(timezone.utc)
    event_data = OrderCancelled(
        order_id=agg.id, reason=reason, timestamp=now
    ).model_dump(mode="json")

    version = await event_store.append_event(
        session, agg.id, "Order", "OrderCancelled", event_data, agg.version
    )

    await _project_status(session, agg.id, CANCELLED, now, cancel_reason=reason)

    await session.commit()

    agg.apply_order_cancelled(event_data)
    agg.version = version
    return event_data


async def grant_entitlement(
    session: AsyncSession,
    user_id: UUID,
    game_id: UUID,
    order_id: UUID | None,
) -> bool:
    """
    所有権を付与する（冪等な集合追加）。

    既に所有している場合は何もしない。付与した場合のみ True を返す。
    コミットは呼び出し側の責任。
    """
    insert_ = sqlite_insert if session.get_bind().dialect.name == "sqlite" else pg_insert
    result = await session.execute(
        insert_(entitlements)
        .values(
            user_id=user_id,
            game_id=game_id,
            order_id=order_id,
            granted_at=datetime.now(timezone.utc),
        )
        .on_conflict_do_nothing(index_elements=["user_id", "game_id"])
    )
    granted = result.rowcount > 0
    if granted:
        logger.info("Game %s added to user %s's entitlements", game_id, user_id)
    return granted


async def _project_status(
    session: AsyncSession,
    order_id: UUID,
    status: str,
    now: datetime,
    **fields,
) -> None:
    # pending の行だけを更新する条件付き UPDATE
    result = await session.execute(
        update(orders_read_model)
        .where(orders_read_model.c.id == order_id)
        .where(orders_read_model.c.status == PENDING)
        .values(status=status, updated_at=now, **fields)
    )
    if result.rowcount == 0:
        logger.warning("Read model for order %s was not pending", order_id)


async def publish_event(
    redis: aioredis.Redis | None,
    event_type: str,
    event_data: dict,
) -> None:
    """
    Redis Pub/Sub でイベントを発行する（他サービスへ通知）。

    状態はコミット済みなので、発行の失敗はログに残すだけにする。
    """
    if redis is None:
        return
    try:
        await redis.publish(ORDER_EVENTS_CHANNEL, json.dumps({
            "event_type": event_type,
            "data": event_data,
        }, default=str))
    except RedisError:
        logger.exception("Failed to publish %s", event_type)
