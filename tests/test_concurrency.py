"""Tests for compare-and-swap transitions and the refund claim."""

from datetime import timedelta

import pytest
from sqlalchemy import update

from orderflow.core.errors import ConcurrencyConflict, InvalidTransition
from orderflow.db.store import OrderStore
from orderflow.models.order import Order, OrderStatus

S = OrderStatus


class TestRefundClaim:
    def test_second_cancel_during_refund_loses(self, flow, lifecycle, customer, admin, processor):
        """Пока идёт вызов процессора, второй cancel видит захват и не вызывает процессор повторно."""
        order_id = flow.paid()
        inner = []

        def cancel_again():
            processor.on_call = None
            try:
                lifecycle.cancel_order(order_id, admin)
            except ConcurrencyConflict as e:
                inner.append(e)

        processor.on_call = cancel_again

        result = lifecycle.cancel_order(order_id, customer)

        assert result.new_status == S.cancelled
        assert len(processor.calls) == 1
        assert len(inner) == 1
        order = flow.order(order_id)
        assert len(order.refunds) == 1
        assert flow.transitions(order_id).count(("paid", "cancelled")) == 1

    def test_cancel_after_completed_cancel_is_invalid(self, flow, lifecycle, customer, admin, processor):
        order_id = flow.paid()
        lifecycle.cancel_order(order_id, customer)

        with pytest.raises(InvalidTransition):
            lifecycle.cancel_order(order_id, admin)
        assert len(processor.calls) == 1

    def test_claimed_order_rejects_other_transitions(self, flow, lifecycle, admin, session_factory, clock):
        order_id = flow.paid()
        with session_factory() as session:
            assert OrderStore(session).claim_order(order_id, S.paid, "other-token", clock(), 120)
            session.commit()

        with pytest.raises(ConcurrencyConflict):
            lifecycle.mark_shipped(order_id, admin)
        assert flow.order(order_id).status == S.paid

    def test_stale_claim_can_be_taken_over(self, flow, lifecycle, customer, session_factory, clock, processor):
        order_id = flow.paid()
        with session_factory() as session:
            session.execute(
                update(Order)
                .where(Order.id == order_id)
                .values(transition_token="crashed-worker", transition_claimed_at=clock() - timedelta(minutes=10))
            )
            session.commit()

        result = lifecycle.cancel_order(order_id, customer)

        assert result.new_status == S.cancelled
        assert flow.order(order_id).transition_token is None
        assert len(processor.calls) == 1

    def test_fresh_claim_blocks_refund(self, flow, lifecycle, customer, session_factory, clock, processor):
        order_id = flow.paid()
        with session_factory() as session:
            OrderStore(session).claim_order(order_id, S.paid, "busy-worker", clock(), 120)
            session.commit()

        with pytest.raises(ConcurrencyConflict):
            lifecycle.cancel_order(order_id, customer)
        assert processor.calls == []


class TestConditionalUpdate:
    def test_wrong_expected_status(self, flow, session_factory):
        order_id = flow.create()
        with session_factory() as session:
            store = OrderStore(session)
            assert store.conditional_update_order(order_id, S.paid, {"status": S.shipped}) is False
            assert store.conditional_update_order(order_id, S.awaiting_payment, {"tracking_number": "X"}) is True
            session.commit()
        assert flow.order(order_id).tracking_number == "X"

    def test_immutable_fields(self, flow, session_factory):
        order_id = flow.create()
        with session_factory() as session:
            with pytest.raises(ValueError):
                OrderStore(session).conditional_update_order(order_id, S.awaiting_payment, {"total_amount": 1})

    def test_lost_race_is_retried(self, flow, lifecycle, admin, monkeypatch):
        order_id = flow.paid()
        original = OrderStore.conditional_update_order
        attempts = []

        def flaky(self, *args, **kwargs):
            attempts.append(1)
            if len(attempts) == 1:
                return False
            return original(self, *args, **kwargs)

        monkeypatch.setattr(OrderStore, "conditional_update_order", flaky)

        result = lifecycle.mark_shipped(order_id, admin)

        assert result.new_status == S.shipped
        assert len(attempts) == 2
        assert flow.transitions(order_id).count(("paid", "shipped")) == 1

    def test_retries_are_bounded(self, flow, lifecycle, admin, monkeypatch):
        order_id = flow.paid()
        monkeypatch.setattr(OrderStore, "conditional_update_order", lambda self, *a, **kw: False)

        with pytest.raises(ConcurrencyConflict):
            lifecycle.mark_shipped(order_id, admin)
        assert flow.order(order_id).status == S.paid
