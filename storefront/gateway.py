"""
Storefront Service — 決済ゲートウェイアダプタ

ゲートウェイ(Stripe Checkout)との境界。
  - create_session   : 決済セッションを作成し、クライアント用の URL を返す
  - retrieve_session : セッションの決済状態を問い合わせる（同期 verify 用）
  - parse_notification : Webhook の署名を検証し、構造化された型に変換する

通知は署名検証 → スキーマ検証を通過するまで一切信用しない。
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Literal
from uuid import UUID

import stripe
from pydantic import BaseModel, ConfigDict, ValidationError

from .errors import GatewayUnavailable, InvalidNotification, NotFound

logger = logging.getLogger(__name__)

SIGNATURE_TOLERANCE_SECONDS = 300

SUCCEEDED = "succeeded"
FAILED = "failed"

SUCCESS_EVENTS = frozenset({
    "checkout.session.completed",
    "checkout.session.async_payment_succeeded",
})
FAILURE_EVENTS = frozenset({
    "checkout.session.async_payment_failed",
    "checkout.session.expired",
})
HANDLED_EVENTS = SUCCESS_EVENTS | FAILURE_EVENTS

PAID_STATUSES = frozenset({"paid", "no_payment_required"})


# ── 境界の型 ─────────────────────────────────────


class Correlation(BaseModel):
    """ゲートウェイがそのまま返してくる相関データ（セッションの metadata）"""
    model_config = ConfigDict(frozen=True)

    order_id: UUID
    user_id: UUID
    game_id: UUID

    def as_metadata(self) -> dict[str, str]:
        return {
            "orderId": str(self.order_id),
            "userId": str(self.user_id),
            "gameId": str(self.game_id),
        }

    @classmethod
    def from_metadata(cls, metadata: dict[str, Any]) -> "Correlation":
        return cls(
            order_id=metadata.get("orderId"),
            user_id=metadata.get("userId"),
            game_id=metadata.get("gameId"),
        )


class CheckoutSession(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str
    payment_status: Literal["paid", "unpaid", "no_payment_required"]
    status: Literal["open", "complete", "expired"] | None = None
    invoice: str | None = None
    metadata: dict[str, str]

    @property
    def correlation(self) -> Correlation:
        return Correlation.from_metadata(self.metadata)


class _Envelope(BaseModel):
    id: str
    type: str
    data: dict[str, Any]


class GatewayNotification(BaseModel):
    """署名検証済みの Webhook 通知"""
    model_config = ConfigDict(frozen=True)

    event_id: str
    event_type: str
    session: CheckoutSession | None = None
    correlation: Correlation | None = None

    @property
    def outcome(self) -> str | None:
        """succeeded / failed / None (無視してよい通知)"""
        if self.session is None:
            return None
        if self.event_type in SUCCESS_EVENTS:
            return SUCCEEDED if self.session.payment_status in PAID_STATUSES else None
        if self.event_type in FAILURE_EVENTS:
            return FAILED
        return None


@dataclass(frozen=True)
class PaymentSession:
    session_id: str
    client_handle: str


@dataclass(frozen=True)
class SessionStatus:
    session_id: str
    payment_status: str
    status: str | None
    correlation: Correlation
    invoice_url: str | None = None

    @property
    def outcome(self) -> str | None:
        if self.payment_status in PAID_STATUSES:
            return SUCCEEDED
        if self.status == "expired":
            return FAILED
        return None


# ── アダプタ ─────────────────────────────────────


class PaymentGateway(ABC):
    """決済ゲートウェイの抽象。起動時に一度だけ作られ、各サービスに注入される。"""

    def __init__(self, webhook_secret: str) -> None:
        self.webhook_secret = webhook_secret

    @abstractmethod
    async def create_session(
        self,
        amount: Decimal,
        currency: str,
        correlation: Correlation,
        *,
        product_name: str,
        description: str | None = None,
        image_url: str | None = None,
        customer_email: str | None = None,
    ) -> PaymentSession: ...

    @abstractmethod
    async def retrieve_session(self, session_id: str) -> SessionStatus: ...

    @abstractmethod
    async def resolve_invoice_url(self, invoice_id: str) -> str | None: ...

    async def aclose(self) -> None:
        return None

    def parse_notification(self, payload: bytes, signature: str | None) -> GatewayNotification:
        """
        Webhook 通知を検証して型に変換する。

        1. Stripe-Signature ヘッダを共有シークレットで検証
        2. エンベロープ (id / type / data) をスキーマ検証
        3. 処理対象のイベントなら data.object を CheckoutSession として検証
        """
        if not signature:
            raise InvalidNotification("Missing signature header")
        try:
            body = payload.decode("utf-8")
            stripe.WebhookSignature.verify_header(
                body, signature, self.webhook_secret, SIGNATURE_TOLERANCE_SECONDS
            )
        except (stripe.SignatureVerificationError, UnicodeDecodeError) as e:
            raise InvalidNotification(f"Webhook signature verification failed: {e}") from e

        try:
            envelope = _Envelope.model_validate_json(payload)
            if envelope.type not in HANDLED_EVENTS:
                return GatewayNotification(event_id=envelope.id, event_type=envelope.type)
            session = CheckoutSession.model_validate(envelope.data.get("object"))
            return GatewayNotification(
                event_id=envelope.id,
                event_type=envelope.type,
                session=session,
                correlation=session.correlation,
            )
        except ValidationError as e:
            raise InvalidNotification(f"Malformed notification: {e}") from e


class StripeGateway(PaymentGateway):
    """Stripe Checkout を使ったゲートウェイ実装"""

    def __init__(
        self,
        secret_key: str,
        webhook_secret: str,
        frontend_url: str,
        backend_url: str,
    ) -> None:
        super().__init__(webhook_secret)
        self.frontend_url = frontend_url.rstrip("/")
        self.backend_url = backend_url.rstrip("/")
        self._http_client = stripe.HTTPXClient()
        self._client = stripe.StripeClient(secret_key, http_client=self._http_client)

    def _image_url(self, thumbnail: str | None) -> str | None:
        # Stripe からアクセスできる絶対 URL のみ渡す
        if not thumbnail:
            return None
        if thumbnail.startswith("http"):
            return thumbnail
        url = f"{self.backend_url}/{thumbnail.lstrip('/')}"
        return url if url.startswith("http") else None

    async def create_session(
        self,
        amount: Decimal,
        currency: str,
        correlation: Correlation,
        *,
        product_name: str,
        description: str | None = None,
        image_url: str | None = None,
        customer_email: str | None = None,
    ) -> PaymentSession:
        product_data: dict[str, Any] = {"name": product_name}
        if description:
            product_data["description"] = description
        image = self._image_url(image_url)
        if image:
            product_data["images"] = [image]

        params: dict[str, Any] = {
            "mode": "payment",
            "payment_method_types": ["card"],
            "line_items": [
                {
                    "price_data": {
                        "currency": currency,
                        "product_data": product_data,
                        # セント単位の整数に変換
                        "unit_amount": int(
                            (amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
                        ),
                    },
                    "quantity": 1,
                }
            ],
            "success_url": f"{self.frontend_url}/payment-success?session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": f"{self.frontend_url}/games/{correlation.game_id}",
            "client_reference_id": str(correlation.order_id),
            "metadata": correlation.as_metadata(),
        }
        if customer_email:
            params["customer_email"] = customer_email

        try:
            session = await self._client.checkout.sessions.create_async(params=params)
        except stripe.StripeError as e:
            logger.error("Error creating checkout session: %s", e)
            raise GatewayUnavailable("Failed to create checkout session") from e
        return PaymentSession(session_id=session.id, client_handle=session.url)

    async def aclose(self) -> None:
        await self._http_client.close_async()

    async def retrieve_session(self, session_id: str) -> SessionStatus:
        try:
            session = await self._client.checkout.sessions.retrieve_async(session_id)
        except stripe.InvalidRequestError as e:
            raise NotFound("Payment session", session_id) from e
        except stripe.StripeError as e:
            logger.error("Error verifying session %s: %s", session_id, e)
            raise GatewayUnavailable("Failed to verify payment session") from e

        # StripeObject は dict ではないので属性で読む
        metadata = getattr(session, "metadata", None)
        try:
            checkout = CheckoutSession.model_validate({
                "id": session.id,
                "payment_status": session.payment_status,
                "status": getattr(session, "status", None),
                "invoice": getattr(session, "invoice", None),
                "metadata": metadata.to_dict() if metadata else {},
            })
            correlation = checkout.correlation
        except ValidationError as e:
            raise NotFound("Payment session", session_id) from e

        invoice_url = None
        if checkout.invoice:
            invoice_url = await self.resolve_invoice_url(checkout.invoice)

        return SessionStatus(
            session_id=checkout.id,
            payment_status=checkout.payment_status,
            status=checkout.status,
            correlation=correlation,
            invoice_url=invoice_url,
        )

    async def resolve_invoice_url(self, invoice_id: str) -> str | None:
        try:
            invoice = await self._client.invoices.retrieve_async(invoice_id)
        except stripe.StripeError:
            logger.exception("Error retrieving invoice %s", invoice_id)
            return None
        return getattr(invoice, "hosted_invoice_url", None)
