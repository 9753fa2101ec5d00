"""
Storefront Service — イベントストア

注文ごとのイベント列を追記専用で保持する。
(aggregate_id, version) の UNIQUE 制約が、ワーカー間で同じ注文を
同時に遷移させようとした場合の競合検知になる。
"""

from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy import insert, select
from sqlalchemy.ext.asyncio import AsyncSession

from .schema import event_store


def _event_row(row, *, with_aggregate: bool = False) -> dict:
    event = {
        "event_type": row.event_type,
        "event_data": row.event_data,
        "version": row.version,
        "created_at": row.created_at.isoformat() if row.created_at else None,
    }
    if with_aggregate:
        event["aggregate_id"] = str(row.aggregate_id)
        event["aggregate_type"] = row.aggregate_type
    return event


async def append_event(
    session: AsyncSession,
    aggregate_id: UUID,
    aggregate_type: str,
    event_type: str,
    event_data: dict,
    expected_version: int,
) -> int:
    """
    expected_version の次の番号でイベントを書き込み、その番号を返す。

    他のワーカーが先に同じ番号を書いていれば、flush 時に
    IntegrityError が送出される。コミットは呼び出し側で行う。
    """
    version = expected_version + 1
    await session.execute(
        insert(event_store).values(
            aggregate_id=aggregate_id,
            aggregate_type=aggregate_type,
            event_type=event_type,
            event_data=event_data,
            version=version,
            created_at=datetime.now(timezone.utc),
        )
    )
    return version


async def load_events(session: AsyncSession, aggregate_id: UUID) -> list[dict]:
    """注文のイベント列 (version 昇順)。OrderAggregate.from_events に渡す。"""
    result = await session.execute(
        select(event_store)
        .where(event_store.c.aggregate_id == aggregate_id)
        .order_by(event_store.c.version)
    )
    return [_event_row(row) for row in result.fetchall()]


async def load_all_events(session: AsyncSession) -> list[dict]:
    # 監査用: 全注文のイベントを書き込み順で
    result = await session.execute(
        select(event_store).order_by(event_store.c.created_at, event_store.c.id)
    )
    return [_event_row(row, with_aggregate=True) for row in result.fetchall()]
