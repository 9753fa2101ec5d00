"""
Storefront Service — クエリハンドラ (CQRS の Read 側)

読み取りはリードモデル(Read Model)から行う。
users / games は外部コンポーネントのマスタで、ここでは参照のみ。
"""

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .aggregate import CONFIRMED, PENDING
from .schema import entitlements, games, orders_read_model, users


def _order_row(row) -> dict:
    return {
        "id": str(row.id),
        "user_id": str(row.user_id),
        "game_id": str(row.game_id),
        "game_name": row.game_name,
        "amount": str(row.amount),
        "currency": row.currency,
        "payment_ref": row.payment_ref,
        "status": row.status,
        "invoice_url": row.invoice_url,
        "cancel_reason": row.cancel_reason,
        "created_at": row.created_at.isoformat() if row.created_at else None,
        "updated_at": row.updated_at.isoformat() if row.updated_at else None,
    }


async def get_order(session: AsyncSession, order_id: UUID) -> dict | None:
    """リードモデルから注文を取得する。"""
    result = await session.execute(
        select(orders_read_model).where(orders_read_model.c.id == order_id)
    )
    row = result.fetchone()
    if not row:
        return None
    return _order_row(row)


async def list_orders(session: AsyncSession) -> list[dict]:
    """全注文一覧をリードモデルから取得する（管理者用）。"""
    result = await session.execute(
        select(orders_read_model).order_by(orders_read_model.c.created_at.desc())
    )
    return [_order_row(row) for row in result.fetchall()]


async def list_user_orders(session: AsyncSession, user_id: UUID) -> list[dict]:
    result = await session.execute(
        select(orders_read_model)
        .where(orders_read_model.c.user_id == user_id)
        .order_by(orders_read_model.c.created_at.desc())
    )
    return [_order_row(row) for row in result.fetchall()]


async def list_pending_before(session: AsyncSession, cutoff) -> list[dict]:
    """cutoff より前に作成され、まだ pending の注文 (id と payment_ref)。"""
    result = await session.execute(
        select(orders_read_model.c.id, orders_read_model.c.payment_ref)
        .where(orders_read_model.c.status == PENDING)
        .where(orders_read_model.c.created_at < cutoff)
    )
    return [{"id": row.id, "payment_ref": row.payment_ref} for row in result.fetchall()]


async def list_confirmed_without_entitlement(session: AsyncSession) -> list[dict]:
    """確定済みなのにエンタイトルメントが存在しない注文（整合性の修復対象）。"""
    result = await session.execute(
        select(
            orders_read_model.c.id,
            orders_read_model.c.user_id,
            orders_read_model.c.game_id,
        )
        .select_from(
            orders_read_model.outerjoin(
                entitlements,
                (entitlements.c.user_id == orders_read_model.c.user_id)
                & (entitlements.c.game_id == orders_read_model.c.game_id),
            )
        )
        .where(orders_read_model.c.status == CONFIRMED)
        .where(entitlements.c.user_id.is_(None))
    )
    return [
        {"order_id": row.id, "user_id": row.user_id, "game_id": row.game_id}
        for row in result.fetchall()
    ]


# ── エンタイトルメント ───────────────────────────


async def user_owns_game(session: AsyncSession, user_id: UUID, game_id: UUID) -> bool:
    result = await session.execute(
        select(entitlements.c.game_id)
        .where(entitlements.c.user_id == user_id)
        .where(entitlements.c.game_id == game_id)
    )
    return result.first() is not None


async def list_entitlements(session: AsyncSession, user_id: UUID) -> list[dict]:
    result = await session.execute(
        select(entitlements, games.c.name)
        .join(games, games.c.id == entitlements.c.game_id)
        .where(entitlements.c.user_id == user_id)
        .order_by(entitlements.c.granted_at.asc())
    )
    return [
        {
            "game_id": str(row.game_id),
            "game_name": row.name,
            "order_id": str(row.order_id) if row.order_id else None,
            "granted_at": row.granted_at.isoformat() if row.granted_at else None,
        }
        for row in result.fetchall()
    ]


# ── マスタ参照 ───────────────────────────────────


async def get_game(session: AsyncSession, game_id: UUID) -> dict | None:
    result = await session.execute(select(games).where(games.c.id == game_id))
    row = result.fetchone()
    if not row:
        return None
    return {
        "id": row.id,
        "name": row.name,
        "author": row.author,
        "thumbnail": row.thumbnail,
        "price": row.price,
    }


async def get_user(session: AsyncSession, user_id: UUID) -> dict | None:
    result = await session.execute(select(users).where(users.c.id == user_id))
    row = result.fetchone()
    if not row:
        return None
    return {
        "id": row.id,
        "email": row.email,
        "name": row.name,
        "role": row.role,
        "status": row.status,
    }
