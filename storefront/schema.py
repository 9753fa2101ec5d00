"""
Storefront Service — テーブル定義

event_store        : 注文イベントの追記専用ログ (Event Sourcing)
orders_read_model  : イベントから投影した注文のリードモデル (CQRS Read 側)
entitlements       : ユーザーが所有するゲーム (user_id, game_id の集合)
users / games      : 外部コンポーネントが管理するマスタ。ここでは読み取りのみ。
"""

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.ext.asyncio import AsyncEngine

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Uuid, primary_key=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("name", String(255), nullable=False),
    Column("role", String(20), nullable=False, default="user"),
    Column("status", String(20), nullable=False, default="pending"),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

games = Table(
    "games",
    metadata,
    Column("id", Uuid, primary_key=True),
    Column("name", String(255), nullable=False),
    Column("author", String(255), nullable=False),
    Column("type", String(20), nullable=False),
    Column("age_group", String(10), nullable=False),
    Column("sku", String(50), nullable=False, unique=True),
    Column("thumbnail", String(500), nullable=False),
    Column("price", Numeric(10, 2), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

# 同じ aggregate_id + version は一度しか書けない → 楽観的ロック
event_store = Table(
    "event_store",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("aggregate_id", Uuid, nullable=False, index=True),
    Column("aggregate_type", String(50), nullable=False),
    Column("event_type", String(50), nullable=False),
    Column("event_data", JSON, nullable=False),
    Column("version", Integer, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint("aggregate_id", "version", name="uq_event_store_version"),
)

orders_read_model = Table(
    "orders_read_model",
    metadata,
    Column("id", Uuid, primary_key=True),
    Column("user_id", Uuid, ForeignKey("users.id"), nullable=False, index=True),
    Column("game_id", Uuid, ForeignKey("games.id"), nullable=False),
    Column("game_name", String(255), nullable=False),
    Column("amount", Numeric(10, 2), nullable=False),
    Column("currency", String(3), nullable=False),
    Column("payment_ref", String(255), nullable=False, index=True),
    Column("status", String(20), nullable=False),
    Column("invoice_url", Text, nullable=True),
    Column("cancel_reason", Text, nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

entitlements = Table(
    "entitlements",
    metadata,
    Column("user_id", Uuid, ForeignKey("users.id"), primary_key=True),
    Column("game_id", Uuid, ForeignKey("games.id"), primary_key=True),
    Column("order_id", Uuid, nullable=True),
    Column("granted_at", DateTime(timezone=True), nullable=False),
)


async def create_all(engine: AsyncEngine) -> None:
    """開発・テスト用にテーブルを作成する。"""
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
