"""
開発用データ投入スクリプト

    DATABASE_URL=... python -m storefront.seed

テーブルを作成し、サンプルのゲームとユーザーを登録する。
"""

import asyncio
import logging
from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

from sqlalchemy import func, insert, select
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from .config import Settings, configure_logging
from .schema import create_all, games, users

logger = logging.getLogger(__name__)

GAMES = [
    ("Math Wizard", "Educational Studios", "educational", "7-12", "EDU-123456-001", "/uploads/math-wizard-thumb.jpg", "14.99"),
    ("Space Adventure", "Cosmic Games", "action", "13-17", "ACT-234567-002", "/uploads/space-adventure-thumb.jpg", "19.99"),
    ("Puzzle Master", "Brain Teasers Inc", "puzzle", "18+", "PUZ-345678-003", "/uploads/puzzle-master-thumb.jpg", "9.99"),
    ("Castle Defense", "Strategy Kings", "strategy", "13-17", "STR-456789-004", "/uploads/castle-defense-thumb.jpg", "24.99"),
    ("Color Fun", "Kids First", "educational", "3-6", "EDU-567890-005", "/uploads/color-fun-thumb.jpg", "7.99"),
]

USERS = [
    ("admin@example.com", "Admin User", "admin", "active"),
    ("parent@example.com", "Test Parent", "user", "active"),
    ("pending@example.com", "Pending Parent", "user", "pending"),
]


async def seed(database_url: str) -> None:
    engine = create_async_engine(database_url, echo=False)
    try:
        await _seed(engine)
    finally:
        await engine.dispose()


async def _seed(engine: AsyncEngine) -> None:
    await create_all(engine)
    now = datetime.now(timezone.utc)
    async with engine.begin() as conn:
        existing = await conn.scalar(select(func.count()).select_from(games))
        if existing:
            logger.info("Database already has %d games; skipping seed", existing)
            return
        await conn.execute(insert(games), [
            {
                "id": uuid4(),
                "name": name,
                "author": author,
                "type": type_,
                "age_group": age_group,
                "sku": sku,
                "thumbnail": thumbnail,
                "price": Decimal(price),
                "created_at": now,
                "updated_at": now,
            }
            for name, author, type_, age_group, sku, thumbnail, price in GAMES
        ])
        await conn.execute(insert(users), [
            {
                "id": uuid4(),
                "email": email,
                "name": name,
                "role": role,
                "status": status,
                "created_at": now,
            }
            for email, name, role, status in USERS
        ])
    logger.info("Seeded %d games and %d users", len(GAMES), len(USERS))


def main() -> None:
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    asyncio.run(seed(settings.database_url))


if __name__ == "__main__":
    main()
