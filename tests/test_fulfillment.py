"""Tests for the order fulfillment state machine."""

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock
from uuid import UUID, uuid4

import pytest
from sqlalchemy import delete, func, select, update

from storefront import commands, event_store, queries
from storefront import notifier as notifier_module
from storefront.aggregate import OrderAggregate
from storefront.errors import (
    AlreadyOwned,
    Forbidden,
    GatewayUnavailable,
    InactiveBuyer,
    InvalidNotification,
    InvalidTransition,
    NotFound,
)
from storefront.gateway import Correlation
from storefront.notifier import MailNotifier
from storefront.schema import entitlements, games, orders_read_model

from .conftest import add_game, add_user, checkout_event, sign


async def _count(session_factory, table) -> int:
    async with session_factory() as session:
        return await session.scalar(select(func.count()).select_from(table))


async def _order(session_factory, order_id) -> dict:
    async with session_factory() as session:
        return await queries.get_order(session, UUID(order_id))


async def _events(session_factory, order_id) -> list[dict]:
    async with session_factory() as session:
        return await event_store.load_events(session, UUID(order_id))


def _correlation(gateway, session_id) -> Correlation:
    return gateway.sessions[session_id]["correlation"]


def _notification(gateway, session_id, event_type="checkout.session.completed", **kwargs):
    payload = checkout_event(event_type, session_id, _correlation(gateway, session_id), **kwargs)
    return gateway.parse_notification(payload, sign(payload))


class TestInitiate:
    async def test_creates_one_pending_order_at_current_price(
        self, service, session_factory, gateway, redis, buyer, game
    ):
        result = await service.initiate(buyer, game)

        assert result["url"].startswith("https://checkout.stripe.test/")
        order = await _order(session_factory, result["order_id"])
        assert order["status"] == "pending"
        assert Decimal(order["amount"]) == Decimal("14.99")
        assert order["payment_ref"] == result["session_id"]
        assert await _count(session_factory, orders_read_model) == 1

        correlation = _correlation(gateway, result["session_id"])
        assert str(correlation.order_id) == result["order_id"]
        assert correlation.user_id == buyer
        assert gateway.sessions[result["session_id"]]["customer_email"] == "parent@example.com"
        assert redis.event_types == ["OrderCreated"]

    async def test_already_owned_creates_nothing(self, service, session_factory, gateway, buyer, game):
        async with session_factory() as session:
            await commands.grant_entitlement(session, buyer, game, None)
            await session.commit()

        with pytest.raises(AlreadyOwned):
            await service.initiate(buyer, game)

        assert gateway.created == []
        assert await _count(session_factory, orders_read_model) == 0

    async def test_inactive_buyer_rejected(self, service, session_factory, game):
        pending_user = await add_user(session_factory, status="pending")
        with pytest.raises(InactiveBuyer):
            await service.initiate(pending_user, game)

    async def test_unknown_game_and_user(self, service, buyer, game):
        with pytest.raises(NotFound):
            await service.initiate(buyer, uuid4())
        with pytest.raises(NotFound):
            await service.initiate(uuid4(), game)

    async def test_gateway_failure_persists_nothing(self, service, session_factory, gateway, buyer, game):
        gateway.fail_create = True
        with pytest.raises(GatewayUnavailable):
            await service.initiate(buyer, game)
        assert await _count(session_factory, orders_read_model) == 0

    async def test_repeat_attempts_get_distinct_orders(self, service, buyer, game):
        first = await service.initiate(buyer, game)
        second = await service.initiate(buyer, game)
        assert first["order_id"] != second["order_id"]


class TestConfirm:
    async def test_success_confirms_and_grants(
        self, service, session_factory, gateway, notifier, redis, buyer, game
    ):
        started = await service.initiate(buyer, game)
        gateway.invoices["in_123"] = "https://invoice.stripe.test/in_123"

        order = await service.confirm(
            _notification(gateway, started["session_id"], invoice="in_123")
        )

        assert order["status"] == "confirmed"
        assert order["invoice_url"] == "https://invoice.stripe.test/in_123"
        stored = await _order(session_factory, started["order_id"])
        assert stored["status"] == "confirmed"
        assert stored["invoice_url"] == "https://invoice.stripe.test/in_123"
        async with session_factory() as session:
            assert await queries.user_owns_game(session, buyer, game)
        assert redis.event_types == ["OrderCreated", "OrderConfirmed"]
        assert [(to, template) for to, template, _ in notifier.sent] == [
            ("parent@example.com", "order_confirmed")
        ]

    async def test_redelivery_is_idempotent(self, service, session_factory, gateway, notifier, buyer, game):
        started = await service.initiate(buyer, game)
        notification = _notification(gateway, started["session_id"])

        first = await service.confirm(notification)
        second = await service.confirm(notification)
        third = await service.confirm(notification)

        assert first == second == third
        assert len(await _events(session_factory, started["order_id"])) == 2
        assert await _count(session_factory, entitlements) == 1
        assert len(notifier.sent) == 1

    async def test_mail_failure_does_not_affect_confirmation(
        self, service, session_factory, gateway, monkeypatch, buyer, game
    ):
        monkeypatch.setattr(
            notifier_module.aiosmtplib, "send", AsyncMock(side_effect=OSError("smtp down"))
        )
        service.notifier = MailNotifier("smtp.test", 465, "", "", "shop@example.com")
        started = await service.initiate(buyer, game)

        order = await service.confirm(_notification(gateway, started["session_id"]))
        await service.notifier.aclose()

        assert order["status"] == "confirmed"
        assert (await _order(session_factory, started["order_id"]))["status"] == "confirmed"
        assert await _count(session_factory, entitlements) == 1

    async def test_failure_cancels_without_entitlement(self, service, session_factory, gateway, notifier, buyer, game):
        started = await service.initiate(buyer, game)

        order = await service.confirm(
            _notification(
                gateway,
                started["session_id"],
                "checkout.session.expired",
                payment_status="unpaid",
                status="expired",
            )
        )

        assert order["status"] == "cancelled"
        assert order["cancel_reason"] == "checkout.session.expired"
        assert await _count(session_factory, entitlements) == 0
        assert notifier.sent == []

    async def test_cancelled_order_rejects_success(self, service, session_factory, gateway, buyer, game):
        started = await service.initiate(buyer, game)
        await service.confirm(
            _notification(
                gateway,
                started["session_id"],
                "checkout.session.async_payment_failed",
                payment_status="unpaid",
            )
        )

        with pytest.raises(InvalidTransition):
            await service.confirm(_notification(gateway, started["session_id"]))

        assert (await _order(session_factory, started["order_id"]))["status"] == "cancelled"
        assert len(await _events(session_factory, started["order_id"])) == 2
        assert await _count(session_factory, entitlements) == 0

    async def test_failure_after_confirmation_returns_confirmed(self, service, gateway, buyer, game):
        started = await service.initiate(buyer, game)
        confirmed = await service.confirm(_notification(gateway, started["session_id"]))

        late = await service.confirm(
            _notification(
                gateway,
                started["session_id"],
                "checkout.session.expired",
                payment_status="unpaid",
                status="expired",
            )
        )
        assert late == confirmed

    async def test_ignored_notifications_change_nothing(self, service, session_factory, gateway, buyer, game):
        started = await service.initiate(buyer, game)

        unpaid = _notification(gateway, started["session_id"], payment_status="unpaid")
        assert await service.confirm(unpaid) is None

        payload = b'{"id": "evt_1", "type": "payment_intent.created", "data": {"object": {}}}'
        other = gateway.parse_notification(payload, sign(payload))
        assert await service.confirm(other) is None

        assert (await _order(session_factory, started["order_id"]))["status"] == "pending"

    async def test_unknown_order(self, service, gateway, buyer, game):
        correlation = Correlation(order_id=uuid4(), user_id=buyer, game_id=game)
        payload = checkout_event("checkout.session.completed", "cs_test_missing", correlation)
        with pytest.raises(NotFound):
            await service.confirm(gateway.parse_notification(payload, sign(payload)))

    async def test_correlation_mismatch_rejected(self, service, session_factory, gateway, buyer, game):
        started = await service.initiate(buyer, game)
        forged = Correlation(order_id=UUID(started["order_id"]), user_id=uuid4(), game_id=game)
        payload = checkout_event("checkout.session.completed", started["session_id"], forged)

        with pytest.raises(InvalidNotification):
            await service.confirm(gateway.parse_notification(payload, sign(payload)))
        assert (await _order(session_factory, started["order_id"]))["status"] == "pending"

    async def test_price_change_does_not_affect_order(self, service, session_factory, gateway, buyer, game):
        started = await service.initiate(buyer, game)
        async with session_factory() as session:
            await session.execute(
                update(games).where(games.c.id == game).values(price=Decimal("29.99"))
            )
            await session.commit()

        order = await service.confirm(_notification(gateway, started["session_id"]))

        assert Decimal(order["amount"]) == Decimal("14.99")
        stored = await _order(session_factory, started["order_id"])
        assert Decimal(stored["amount"]) == Decimal("14.99")


class TestVerify:
    async def test_paid_session_confirms(self, service, session_factory, gateway, buyer, game):
        started = await service.initiate(buyer, game)
        gateway.pay(started["session_id"])

        order = await service.verify(started["session_id"], buyer)

        assert order["status"] == "confirmed"
        assert await _count(session_factory, entitlements) == 1

    async def test_open_session_leaves_order_pending(self, service, gateway, buyer, game):
        started = await service.initiate(buyer, game)
        order = await service.verify(started["session_id"], buyer)
        assert order["status"] == "pending"

    async def test_expired_session_cancels(self, service, gateway, buyer, game):
        started = await service.initiate(buyer, game)
        gateway.expire(started["session_id"])
        order = await service.verify(started["session_id"], buyer)
        assert order["status"] == "cancelled"

    async def test_foreign_session_not_found(self, service, session_factory, gateway, buyer, game):
        started = await service.initiate(buyer, game)
        gateway.pay(started["session_id"])
        stranger = await add_user(session_factory)

        with pytest.raises(NotFound):
            await service.verify(started["session_id"], stranger)
        assert (await _order(session_factory, started["order_id"]))["status"] == "pending"

    async def test_confirm_for_buyer_checks_gateway(self, service, session_factory, gateway, buyer, game):
        started = await service.initiate(buyer, game)
        order_id = UUID(started["order_id"])

        assert (await service.confirm_for_buyer(order_id, buyer))["status"] == "pending"

        gateway.pay(started["session_id"])
        stranger = await add_user(session_factory)
        with pytest.raises(Forbidden):
            await service.confirm_for_buyer(order_id, stranger)
        assert (await service.confirm_for_buyer(order_id, buyer))["status"] == "confirmed"

    async def test_webhook_and_verify_race(self, service, session_factory, gateway, notifier, buyer, game):
        started = await service.initiate(buyer, game)
        gateway.pay(started["session_id"])
        notification = _notification(gateway, started["session_id"])

        pushed, polled = await asyncio.gather(
            service.confirm(notification),
            service.verify(started["session_id"], buyer),
        )

        assert pushed["status"] == polled["status"] == "confirmed"
        assert len(await _events(session_factory, started["order_id"])) == 2
        assert await _count(session_factory, entitlements) == 1
        assert len(notifier.sent) == 1
        assert len(service.locks) == 0


class TestVersionConflict:
    async def test_stale_writer_replays_and_returns_terminal_state(
        self, service, session_factory, gateway, notifier, monkeypatch, buyer, game
    ):
        started = await service.initiate(buyer, game)
        order_id = UUID(started["order_id"])

        # another worker confirms first
        async with session_factory() as session:
            events = await event_store.load_events(session, order_id)
            await commands.confirm_order(
                session, OrderAggregate.from_events(events), started["session_id"]
            )

        real_load = service._load
        calls = []

        async def stale_load(session, oid):
            calls.append(oid)
            if len(calls) == 1:
                events = await event_store.load_events(session, oid)
                return OrderAggregate.from_events(events[:1])
            return await real_load(session, oid)

        monkeypatch.setattr(service, "_load", stale_load)

        order = await service.confirm(_notification(gateway, started["session_id"]))

        assert order["status"] == "confirmed"
        assert len(calls) == 2
        assert len(await _events(session_factory, started["order_id"])) == 2
        assert await _count(session_factory, entitlements) == 1
        assert notifier.sent == []


class TestSweeps:
    async def test_reconcile_grants_missing_entitlements(self, service, session_factory, gateway, buyer, game):
        started = await service.initiate(buyer, game)
        await service.confirm(_notification(gateway, started["session_id"]))
        async with session_factory() as session:
            await session.execute(delete(entitlements))
            await session.commit()

        assert await service.reconcile_entitlements() == 1
        async with session_factory() as session:
            owned = await queries.list_entitlements(session, buyer)
        assert [e["order_id"] for e in owned] == [started["order_id"]]
        assert await service.reconcile_entitlements() == 0

    async def test_expire_pending_only_touches_stale_orders(
        self, service, session_factory, gateway, buyer, game
    ):
        other_game = await add_game(session_factory, name="Color Fun", price="7.99")
        stale = await service.initiate(buyer, game)
        fresh = await service.initiate(buyer, other_game)
        async with session_factory() as session:
            await session.execute(
                update(orders_read_model)
                .where(orders_read_model.c.id == UUID(stale["order_id"]))
                .values(created_at=datetime.now(timezone.utc) - timedelta(days=2))
            )
            await session.commit()

        assert await service.expire_pending(timedelta(hours=1)) == 1

        expired = await _order(session_factory, stale["order_id"])
        assert expired["status"] == "cancelled"
        assert expired["cancel_reason"] == "expired"
        assert (await _order(session_factory, fresh["order_id"]))["status"] == "pending"
        assert await service.expire_pending(timedelta(hours=1)) == 0

    async def _stale_order(self, service, session_factory, buyer, game):
        started = await service.initiate(buyer, game)
        async with session_factory() as session:
            await session.execute(
                update(orders_read_model)
                .where(orders_read_model.c.id == UUID(started["order_id"]))
                .values(created_at=datetime.now(timezone.utc) - timedelta(days=2))
            )
            await session.commit()
        return started

    async def test_expire_confirms_paid_but_unnotified_order(
        self, service, session_factory, gateway, notifier, buyer, game
    ):
        started = await self._stale_order(service, session_factory, buyer, game)
        gateway.pay(started["session_id"])

        assert await service.expire_pending(timedelta(hours=1)) == 0

        assert (await _order(session_factory, started["order_id"]))["status"] == "confirmed"
        async with session_factory() as session:
            assert await queries.user_owns_game(session, buyer, game)
        assert len(notifier.sent) == 1
        assert (await service.verify(started["session_id"], buyer))["status"] == "confirmed"

    async def test_expire_keeps_order_when_gateway_is_down(
        self, service, session_factory, gateway, buyer, game
    ):
        started = await self._stale_order(service, session_factory, buyer, game)
        gateway.fail_retrieve = True

        assert await service.expire_pending(timedelta(hours=1)) == 0
        assert (await _order(session_factory, started["order_id"]))["status"] == "pending"

    async def test_expire_cancels_order_unknown_to_gateway(
        self, service, session_factory, gateway, buyer, game
    ):
        started = await self._stale_order(service, session_factory, buyer, game)
        del gateway.sessions[started["session_id"]]

        assert await service.expire_pending(timedelta(hours=1)) == 1
        assert (await _order(session_factory, started["order_id"]))["status"] == "cancelled"
