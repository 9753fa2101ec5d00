"""
Storefront Service — FastAPI エントリーポイント

購入 (Command) と照会 (Query) のエンドポイントを提供する。
決済ゲートウェイ・メール・Redis のクライアントは lifespan で生成し、
FulfillmentService に注入する（モジュールレベルのグローバルにはしない）。

購入者の ID は前段の認証レイヤーが X-User-Id ヘッダで渡す。
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Annotated
from uuid import UUID

import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from . import event_store, queries
from .config import Settings, configure_logging
from .errors import Forbidden, NotFound, StorefrontError
from .fulfillment import FulfillmentService
from .gateway import PaymentGateway, StripeGateway
from .notifier import MailNotifier
from .sweeper import run_sweeper

logger = logging.getLogger(__name__)


# ── Request Models ───────────────────────────────


class PurchaseRequest(BaseModel):
    game_id: UUID


# ── Dependencies ─────────────────────────────────


def get_service(request: Request) -> FulfillmentService:
    return request.app.state.service


def get_session_factory(request: Request) -> async_sessionmaker[AsyncSession]:
    return request.app.state.session_factory


async def current_user_id(x_user_id: Annotated[UUID, Header()]) -> UUID:
    return x_user_id


Service = Annotated[FulfillmentService, Depends(get_service)]
Sessions = Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)]
UserId = Annotated[UUID, Depends(current_user_id)]


async def _require_admin(sessions: async_sessionmaker[AsyncSession], user_id: UUID) -> None:
    async with sessions() as session:
        user = await queries.get_user(session, user_id)
    if not user or user["role"] != "admin":
        raise Forbidden("Admin access required")


def create_app(
    settings: Settings | None = None,
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    gateway: PaymentGateway | None = None,
    notifier: MailNotifier | None = None,
    redis: aioredis.Redis | None = None,
) -> FastAPI:
    """
    アプリケーションを組み立てる。

    引数で渡されたコンポーネントはそのまま使い、終了時にも閉じない。
    渡されなかったものは Settings から生成し、終了時に閉じる。
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        cfg = settings or Settings.from_env()
        configure_logging(cfg.log_level)

        engine = None
        sessions = session_factory
        if sessions is None:
            engine = create_async_engine(cfg.database_url, echo=False)
            sessions = async_sessionmaker(engine, expire_on_commit=False)

        pay = gateway or StripeGateway(
            cfg.stripe_secret_key,
            cfg.stripe_webhook_secret,
            cfg.frontend_url,
            cfg.backend_url,
        )
        mail = notifier or MailNotifier(
            cfg.smtp_host, cfg.smtp_port, cfg.smtp_user, cfg.smtp_pass, cfg.mail_from
        )
        redis_pool = redis
        if redis_pool is None:
            redis_pool = aioredis.from_url(cfg.redis_url, decode_responses=True)

        service = FulfillmentService(sessions, pay, mail, redis_pool, cfg.currency)
        app.state.service = service
        app.state.session_factory = sessions

        # 整合性修復・期限切れのスイーパー（設定時のみ）
        shutdown_event = asyncio.Event()
        sweeper_task = None
        if cfg.sweep_interval_seconds > 0:
            sweeper_task = asyncio.create_task(
                run_sweeper(
                    service, cfg.sweep_interval_seconds, cfg.pending_order_ttl, shutdown_event
                )
            )

        yield

        shutdown_event.set()
        if sweeper_task is not None:
            await sweeper_task
        await mail.aclose()
        if redis is None:
            await redis_pool.aclose()
        if gateway is None:
            await pay.aclose()
        if engine is not None:
            await engine.dispose()

    app = FastAPI(title="Storefront Service", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(StorefrontError)
    async def storefront_error_handler(request: Request, exc: StorefrontError):
        return JSONResponse(status_code=exc.status_code, content={"detail": str(exc)})

    # ── Command Endpoints (Write 側) ─────────────

    @app.post("/purchases")
    async def create_purchase(req: PurchaseRequest, service: Service, user_id: UserId):
        """購入を開始し、決済ページの URL を返す"""
        return await service.initiate(user_id, req.game_id)

    @app.post("/purchases/{order_id}/confirm")
    async def confirm_purchase(order_id: UUID, service: Service, user_id: UserId):
        """クライアントからの確認。ゲートウェイに決済状態を問い合わせる"""
        return await service.confirm_for_buyer(order_id, user_id)

    @app.get("/purchases/sessions/{session_id}")
    async def verify_session(session_id: str, service: Service, user_id: UserId):
        """決済セッションを検証して注文を返す"""
        return await service.verify(session_id, user_id)

    @app.post("/webhooks/payment")
    async def payment_webhook(
        request: Request,
        service: Service,
        stripe_signature: Annotated[str | None, Header()] = None,
    ):
        """
        ゲートウェイからの Webhook。署名検証には生のリクエストボディが必要。
        処理対象外のイベントも 200 で受け取る。
        """
        payload = await request.body()
        notification = service.gateway.parse_notification(payload, stripe_signature)
        logger.info("Webhook received: %s", notification.event_type)
        order = await service.confirm(notification)
        return {"received": True, "order": order}

    # ── Query Endpoints (Read 側) ────────────────

    @app.get("/purchases/mine")
    async def my_purchases(sessions: Sessions, user_id: UserId):
        async with sessions() as session:
            return await queries.list_user_orders(session, user_id)

    @app.get("/purchases")
    async def all_purchases(sessions: Sessions, user_id: UserId):
        """全注文（管理者のみ）"""
        await _require_admin(sessions, user_id)
        async with sessions() as session:
            return await queries.list_orders(session)

    @app.get("/purchases/{order_id}")
    async def get_purchase(order_id: UUID, sessions: Sessions, user_id: UserId):
        """注文詳細（本人または管理者）"""
        async with sessions() as session:
            order = await queries.get_order(session, order_id)
            if not order:
                raise NotFound("Order", order_id)
            if order["user_id"] != str(user_id):
                user = await queries.get_user(session, user_id)
                if not user or user["role"] != "admin":
                    raise Forbidden("Not authorized")
            return order

    @app.get("/entitlements/mine")
    async def my_entitlements(sessions: Sessions, user_id: UserId):
        async with sessions() as session:
            return await queries.list_entitlements(session, user_id)

    # ── Event Store (監査用) ─────────────────────

    @app.get("/events")
    async def get_all_events(sessions: Sessions, user_id: UserId):
        await _require_admin(sessions, user_id)
        async with sessions() as session:
            return await event_store.load_all_events(session)

    @app.get("/events/{order_id}")
    async def get_order_events(order_id: UUID, sessions: Sessions, user_id: UserId):
        await _require_admin(sessions, user_id)
        async with sessions() as session:
            return await event_store.load_events(session, order_id)

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "storefront"}

    return app


app = create_app()
