import asyncio
import logging
from datetime import datetime, timezone

import pytest

from order_service import commands, event_store, queries
from order_service.aggregate import OrderAggregate
from order_service.errors import GatewayError, NotFoundError, UnknownOrder, ValidationError
from order_service.reconciliation import Outcome, ReconciliationEngine
from order_service.status import OrderStatus

from conftest import BOTTLE, NOTEBOOK, stock_of


async def ledger(session_factory, order_id):
    async with session_factory() as session:
        return await event_store.load_events(session, order_id)


async def status_of(session_factory, order_id):
    async with session_factory() as session:
        return (await queries.get_order_state(session, order_id)).status


class TestReconcile:
    @pytest.mark.asyncio
    async def test_settlement_pays_and_decrements_stock(self, session_factory, reconciler, pending_order, redis):
        result = await reconciler.reconcile(pending_order["external_session_id"], "settlement")

        assert result.outcome is Outcome.TRANSITIONED
        assert result.previous_status is OrderStatus.PENDING
        assert result.status is OrderStatus.PAID
        assert result.stock_applied is True
        assert await stock_of(session_factory, NOTEBOOK) == 8
        assert await stock_of(session_factory, BOTTLE) == 4

        events = await ledger(session_factory, pending_order["id"])
        assert [e["event_type"] for e in events][-2:] == ["OrderPaid", "StockDecremented"]
        assert redis.event_types()[-1] == "OrderPaid"

    @pytest.mark.asyncio
    async def test_repeated_reports_are_idempotent(self, session_factory, reconciler, pending_order):
        ref = pending_order["external_session_id"]

        results = [await reconciler.reconcile(ref, "settlement") for _ in range(4)]

        assert [r.outcome for r in results] == [Outcome.TRANSITIONED] + [Outcome.UNCHANGED] * 3
        assert await status_of(session_factory, pending_order["id"]) is OrderStatus.PAID
        assert await stock_of(session_factory, NOTEBOOK) == 8
        assert await stock_of(session_factory, BOTTLE) == 4

    @pytest.mark.asyncio
    async def test_concurrent_reports_decrement_once(self, session_factory, reconciler, pending_order):
        ref = pending_order["external_session_id"]

        results = await asyncio.gather(
            reconciler.reconcile(ref, "settlement"),
            reconciler.reconcile(ref, "capture", "accept"),
            reconciler.reconcile(ref, "settlement"),
        )

        outcomes = [r.outcome for r in results]
        assert outcomes.count(Outcome.TRANSITIONED) == 1
        assert outcomes.count(Outcome.UNCHANGED) == 2
        assert await stock_of(session_factory, NOTEBOOK) == 8
        assert await stock_of(session_factory, BOTTLE) == 4

        events = await ledger(session_factory, pending_order["id"])
        assert [e["event_type"] for e in events].count("StockDecremented") == 1

    @pytest.mark.asyncio
    async def test_paid_is_sticky(self, session_factory, reconciler, pending_order):
        ref = pending_order["external_session_id"]
        await reconciler.reconcile(ref, "settlement")

        for report in ("expire", "deny", "cancel"):
            result = await reconciler.reconcile(ref, report)
            assert result.outcome is Outcome.UNCHANGED
            assert result.conflict is True
            assert result.status is OrderStatus.PAID

        assert await status_of(session_factory, pending_order["id"]) is OrderStatus.PAID
        assert await stock_of(session_factory, NOTEBOOK) == 8

    @pytest.mark.asyncio
    async def test_failure_report(self, session_factory, reconciler, pending_order):
        result = await reconciler.reconcile(pending_order["external_session_id"], "expire")

        assert result.outcome is Outcome.TRANSITIONED
        assert result.status is OrderStatus.FAILED
        assert result.stock_applied is False
        assert await stock_of(session_factory, NOTEBOOK) == 10

        events = await ledger(session_factory, pending_order["id"])
        assert events[-1]["event_type"] == "OrderFailed"
        assert events[-1]["event_data"]["reason"] == "Payment expire"

    @pytest.mark.parametrize(
        "gateway_status, fraud_status",
        [
            ("pending", None),
            ("capture", "challenge"),
            ("capture", None),
            ("refund", None),
            ("", None),
        ],
    )
    @pytest.mark.asyncio
    async def test_non_terminal_reports_leave_order_pending(
        self, session_factory, reconciler, pending_order, gateway_status, fraud_status
    ):
        result = await reconciler.reconcile(pending_order["external_session_id"], gateway_status, fraud_status)

        assert result.outcome is Outcome.UNCHANGED
        assert result.conflict is False
        assert await status_of(session_factory, pending_order["id"]) is OrderStatus.PENDING

    @pytest.mark.asyncio
    async def test_unknown_order(self, reconciler, pending_order):
        with pytest.raises(UnknownOrder):
            await reconciler.reconcile("PAY-does-not-exist", "settlement")

    @pytest.mark.asyncio
    async def test_order_deleted_after_lookup(self, reconciler, pending_order, monkeypatch):
        ref = pending_order["external_session_id"]
        stale = await reconciler._load_by_ref(ref)
        await reconciler.delete(pending_order["id"])

        async def stale_lookup(order_ref):
            return stale

        monkeypatch.setattr(reconciler, "_load_by_ref", stale_lookup)

        with pytest.raises(UnknownOrder):
            await reconciler.reconcile(ref, "settlement")


class TestLateSettlement:
    @pytest.mark.asyncio
    async def test_paid_after_failed_is_applied(self, session_factory, reconciler, pending_order):
        ref = pending_order["external_session_id"]
        await reconciler.reconcile(ref, "expire")

        result = await reconciler.reconcile(ref, "settlement")

        assert result.outcome is Outcome.TRANSITIONED
        assert result.previous_status is OrderStatus.FAILED
        assert result.status is OrderStatus.PAID
        assert await stock_of(session_factory, NOTEBOOK) == 8

        events = await ledger(session_factory, pending_order["id"])
        paid = [e for e in events if e["event_type"] == "OrderPaid"]
        assert paid[0]["event_data"]["late_settlement"] is True

    @pytest.mark.asyncio
    async def test_paid_after_cancel_is_applied_once(self, session_factory, reconciler, pending_order):
        ref = pending_order["external_session_id"]
        await reconciler.cancel(pending_order["id"])

        await reconciler.reconcile(ref, "settlement")
        await reconciler.reconcile(ref, "settlement")

        assert await status_of(session_factory, pending_order["id"]) is OrderStatus.PAID
        assert await stock_of(session_factory, BOTTLE) == 4

    @pytest.mark.asyncio
    async def test_disabled_policy_keeps_failed(self, session_factory, gateway, redis, pending_order):
        engine = ReconciliationEngine(session_factory, gateway=gateway, redis=redis, allow_late_settlement=False)
        ref = pending_order["external_session_id"]
        await engine.reconcile(ref, "deny")

        result = await engine.reconcile(ref, "settlement")

        assert result.outcome is Outcome.UNCHANGED
        assert result.conflict is True
        assert result.status is OrderStatus.FAILED
        assert await stock_of(session_factory, NOTEBOOK) == 10


class TestPoll:
    @pytest.mark.asyncio
    async def test_poll_applies_gateway_status(self, session_factory, reconciler, gateway, pending_order, caplog):
        caplog.set_level(logging.INFO, logger="order_service.reconciliation")
        gateway.set_status(pending_order["external_session_id"], "capture", "accept", "105000.00")

        result = await reconciler.poll(pending_order["id"])

        assert result.outcome is Outcome.TRANSITIONED
        assert result.status is OrderStatus.PAID
        assert "status_code=200, gross_amount=105000.00" in caplog.text

    @pytest.mark.asyncio
    async def test_unknown_transaction_is_pending(self, session_factory, reconciler, pending_order):
        result = await reconciler.poll(pending_order["id"])

        assert result.outcome is Outcome.UNCHANGED
        assert result.status is OrderStatus.PENDING

    @pytest.mark.asyncio
    async def test_paid_order_skips_gateway(self, reconciler, gateway, pending_order):
        await reconciler.reconcile(pending_order["external_session_id"], "settlement")
        gateway.calls.clear()

        result = await reconciler.poll(pending_order["id"])

        assert result.outcome is Outcome.UNCHANGED
        assert result.status is OrderStatus.PAID
        assert gateway.calls == []

    @pytest.mark.asyncio
    async def test_gateway_timeout(self, session_factory, gateway, redis, pending_order):
        engine = ReconciliationEngine(session_factory, gateway=gateway, redis=redis, gateway_timeout=0.05)
        gateway.configure(should_succeed=True, delay=0.5)

        with pytest.raises(GatewayError):
            await engine.poll(pending_order["id"])
        assert await status_of(session_factory, pending_order["id"]) is OrderStatus.PENDING

    @pytest.mark.asyncio
    async def test_gateway_error_leaves_order_pending(self, session_factory, reconciler, gateway, pending_order):
        gateway.configure(should_succeed=False)

        with pytest.raises(GatewayError):
            await reconciler.poll(pending_order["id"])
        assert await status_of(session_factory, pending_order["id"]) is OrderStatus.PENDING

    @pytest.mark.asyncio
    async def test_unknown_order_id(self, reconciler, pending_order):
        with pytest.raises(NotFoundError):
            await reconciler.poll("missing")


class TestAdminOperations:
    @pytest.mark.asyncio
    async def test_cancel_pending(self, session_factory, reconciler, pending_order, redis):
        result = await reconciler.cancel(pending_order["id"], "Customer called")

        assert result.status is OrderStatus.CANCELLED
        assert redis.event_types()[-1] == "OrderCancelled"
        events = await ledger(session_factory, pending_order["id"])
        assert events[-1]["event_data"]["reason"] == "Customer called"

    @pytest.mark.asyncio
    async def test_cancel_paid_is_rejected(self, session_factory, reconciler, pending_order):
        await reconciler.reconcile(pending_order["external_session_id"], "settlement")

        with pytest.raises(ValidationError):
            await reconciler.cancel(pending_order["id"])
        assert await status_of(session_factory, pending_order["id"]) is OrderStatus.PAID

    @pytest.mark.asyncio
    async def test_delete_unpaid(self, session_factory, reconciler, pending_order, redis):
        await reconciler.delete(pending_order["id"])

        async with session_factory() as session:
            assert await queries.get_order(session, pending_order["id"]) is None
            assert await queries.get_order_items(session, pending_order["id"]) == []
        assert redis.event_types()[-1] == "OrderDeleted"

    @pytest.mark.asyncio
    async def test_delete_paid_is_rejected(self, session_factory, reconciler, pending_order):
        await reconciler.reconcile(pending_order["external_session_id"], "settlement")

        with pytest.raises(ValidationError):
            await reconciler.delete(pending_order["id"])
        async with session_factory() as session:
            assert await queries.get_order(session, pending_order["id"]) is not None

    @pytest.mark.asyncio
    async def test_delete_unknown(self, reconciler, pending_order):
        with pytest.raises(NotFoundError):
            await reconciler.delete("missing")


class TestGuardedUpdate:
    @pytest.mark.asyncio
    async def test_second_writer_with_stale_snapshot_loses(self, session_factory, pending_order):
        now = datetime.now(timezone.utc)
        order_id = pending_order["id"]

        # 2 つのリクエストが同時に PENDING を読んだ状況
        async with session_factory() as session:
            first = await commands.transition_status(
                session, order_id, [OrderStatus.PENDING], OrderStatus.PAID, now, apply_stock=True
            )
            await session.commit()
        async with session_factory() as session:
            second = await commands.transition_status(
                session, order_id, [OrderStatus.PENDING], OrderStatus.FAILED, now
            )
            await session.commit()

        assert first is True
        assert second is False
        assert await status_of(session_factory, order_id) is OrderStatus.PAID

    @pytest.mark.asyncio
    async def test_stock_applied_guard(self, session_factory, pending_order):
        now = datetime.now(timezone.utc)
        order_id = pending_order["id"]

        async with session_factory() as session:
            await commands.transition_status(
                session, order_id, [OrderStatus.PENDING], OrderStatus.PAID, now, apply_stock=True
            )
            await commands.transition_status(session, order_id, [OrderStatus.PAID], OrderStatus.FAILED, now)
            again = await commands.transition_status(
                session, order_id, [OrderStatus.FAILED], OrderStatus.PAID, now, apply_stock=True
            )
            await session.commit()

        assert again is False

    @pytest.mark.asyncio
    async def test_negative_stock_is_logged(self, session_factory, pending_order, caplog):
        now = datetime.now(timezone.utc)

        async with session_factory() as session:
            lines = await commands.decrement_stock(
                session, pending_order["id"], [{"product_id": BOTTLE, "quantity": 7}], now
            )
            await session.commit()

        assert lines == [{"product_id": BOTTLE, "quantity": 7, "remaining": -2}]
        assert "Stock went negative" in caplog.text


class TestLedgerReplay:
    @pytest.mark.asyncio
    async def test_replay_matches_row(self, session_factory, reconciler, pending_order):
        ref = pending_order["external_session_id"]
        await reconciler.reconcile(ref, "expire")
        await reconciler.reconcile(ref, "settlement")
        await reconciler.reconcile(ref, "settlement")

        agg = OrderAggregate.from_events(await ledger(session_factory, pending_order["id"]))

        assert agg.status == "PAID"
        assert agg.stock_applied is True
        assert agg.stock_decrements == 1
        assert agg.total_amount == 105000
        assert agg.version == 5
