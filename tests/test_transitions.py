"""Tests for the transition table, authorization and single-edge transitions."""

import pytest

from orderflow.core.errors import Forbidden, InvalidTransition, NotFound
from orderflow.models.order import OrderStatus, ReturnStatus
from orderflow.schemas.commands import Actor, CancelOrder, ConfirmPayment
from orderflow.services.transitions import TRANSITIONS, can_transition

S = OrderStatus


class TestTransitionTable:
    def test_terminal_statuses_have_no_exits(self):
        for status in (S.cancelled, S.refunded, S.partially_refunded):
            assert all(not can_transition(status, target) for target in S)

    def test_known_edges(self):
        assert can_transition(S.awaiting_payment, S.paid)
        assert can_transition(S.paid, S.cancelled)
        assert can_transition(S.return_requested, S.delivered)
        assert can_transition(S.partially_returned, S.return_requested)
        assert can_transition(S.returned, S.refunded)

    def test_no_shortcuts(self):
        assert not can_transition(S.awaiting_payment, S.shipped)
        assert not can_transition(S.shipped, S.cancelled)
        assert not can_transition(S.delivered, S.refunded)
        assert not can_transition(S.paid, S.refunded)

    def test_every_target_is_a_status(self):
        for source, targets in TRANSITIONS.items():
            assert source in S
            assert targets <= set(S)


class TestCreateOrder:
    def test_created_awaiting_payment_with_catalog_prices(self, flow):
        order = flow.order(flow.create(lines=[("widget", 2), ("gadget", 1)]))

        assert order.status == S.awaiting_payment
        assert order.total_amount == 2 * 1500 + 2500
        assert [i.price_at_purchase for i in order.items] == [1500, 2500]
        assert order.order_number.startswith("ORD-20260302-")
        assert flow.transitions(order.id) == [(None, "awaiting_payment")]

    def test_stock_untouched_until_payment(self, flow):
        flow.create(lines=[("widget", 3)])
        assert flow.stock("widget") == 10

    def test_discount_reduces_total(self, flow):
        order = flow.order(flow.create(discount_amount=1000))
        assert order.total_amount == 3000
        assert order.discount_amount == 1000

    def test_exactly_one_customer(self, authority, products, users):
        with pytest.raises(ValueError):
            authority.create_order([(products["widget"].id, 1)], {}, user_id=users["customer"].id,
                                   guest_email="guest@example.com")
        with pytest.raises(ValueError):
            authority.create_order([(products["widget"].id, 1)], {})

    def test_unknown_product(self, authority, users):
        with pytest.raises(NotFound):
            authority.create_order([("missing", 1)], {}, user_id=users["customer"].id)


class TestShippingAndDelivery:
    def test_mark_shipped_stores_tracking_number(self, flow, lifecycle, admin, notifier):
        order_id = flow.paid()
        result = lifecycle.mark_shipped(order_id, admin, tracking_number="TRK-42")

        assert result.previous_status == S.paid
        assert result.new_status == S.shipped
        assert flow.order(order_id).tracking_number == "TRK-42"
        assert notifier.kinds()[-1] == "shipping_notification"

    def test_mark_delivered_sets_return_deadline(self, flow, lifecycle, admin, clock):
        order_id = flow.shipped()
        lifecycle.mark_delivered(order_id, admin)

        order = flow.order(order_id)
        assert order.status == S.delivered
        assert order.delivered_at == clock.now
        assert (order.return_deadline - order.delivered_at).days == 30

    def test_history_records_each_step(self, flow):
        order_id = flow.delivered()
        assert flow.transitions(order_id) == [
            (None, "awaiting_payment"),
            ("awaiting_payment", "paid"),
            ("paid", "shipped"),
            ("shipped", "delivered"),
        ]

    def test_history_is_ordered_by_sequence(self, flow):
        order = flow.order(flow.delivered())
        assert [e.sequence for e in order.history] == list(range(1, len(order.history) + 1))


class TestInvalidTransitions:
    def test_ship_unpaid_order(self, flow, lifecycle, admin):
        order_id = flow.create()
        with pytest.raises(InvalidTransition) as exc:
            lifecycle.mark_shipped(order_id, admin)
        assert exc.value.message == "Only paid orders can be marked as shipped"
        assert flow.order(order_id).status == S.awaiting_payment

    def test_deliver_paid_order(self, flow, lifecycle, admin):
        order_id = flow.paid()
        with pytest.raises(InvalidTransition):
            lifecycle.mark_delivered(order_id, admin)

    def test_cancel_shipped_order(self, flow, lifecycle, customer):
        order_id = flow.shipped()
        with pytest.raises(InvalidTransition) as exc:
            lifecycle.cancel_order(order_id, customer)
        assert exc.value.details["current_status"] == "shipped"
        assert exc.value.details["target_status"] == "cancelled"

    def test_cancel_twice(self, flow, lifecycle, customer):
        order_id = flow.create()
        lifecycle.cancel_order(order_id, customer)
        before = flow.transitions(order_id)

        with pytest.raises(InvalidTransition):
            lifecycle.cancel_order(order_id, customer)
        assert flow.transitions(order_id) == before

    def test_return_before_delivery(self, flow, lifecycle, customer):
        order_id = flow.paid()
        with pytest.raises(InvalidTransition):
            lifecycle.request_return(order_id, customer, notes="Changed my mind")

    def test_approve_without_pending_return(self, flow, lifecycle, admin):
        order_id = flow.delivered()
        with pytest.raises(InvalidTransition):
            lifecycle.approve_return(order_id, admin)

    def test_refund_before_return(self, flow, lifecycle, admin, processor):
        order_id = flow.delivered()
        with pytest.raises(InvalidTransition):
            lifecycle.process_refund(order_id, admin)
        assert processor.calls == []

    def test_failed_transition_leaves_history_unchanged(self, flow, lifecycle, admin):
        order_id = flow.create()
        before = flow.order(order_id).history
        with pytest.raises(InvalidTransition):
            lifecycle.mark_delivered(order_id, admin)
        assert len(flow.order(order_id).history) == len(before)

    def test_unknown_order(self, lifecycle, admin):
        with pytest.raises(NotFound):
            lifecycle.mark_shipped("does-not-exist", admin)


class TestAuthorization:
    def test_owner_can_cancel(self, flow, lifecycle, customer):
        order_id = flow.create()
        result = lifecycle.cancel_order(order_id, customer)
        assert result.new_status == S.cancelled

    def test_other_customer_cannot_cancel(self, flow, lifecycle, other_customer):
        order_id = flow.create()
        with pytest.raises(Forbidden):
            lifecycle.cancel_order(order_id, other_customer)
        assert flow.order(order_id).status == S.awaiting_payment

    def test_customer_cannot_ship(self, flow, lifecycle, customer):
        order_id = flow.paid()
        with pytest.raises(Forbidden):
            lifecycle.mark_shipped(order_id, customer)

    def test_customer_cannot_refund(self, flow, lifecycle, customer, processor):
        order_id = flow.returned()
        with pytest.raises(Forbidden):
            lifecycle.process_refund(order_id, customer)
        assert processor.calls == []

    def test_admin_can_cancel_any_order(self, flow, lifecycle, admin):
        order_id = flow.create()
        assert lifecycle.cancel_order(order_id, admin).new_status == S.cancelled

    def test_guest_order_is_admin_managed(self, flow, lifecycle, customer):
        order_id = flow.create(guest_email="guest@example.com")
        with pytest.raises(Forbidden):
            lifecycle.cancel_order(order_id, customer)

    def test_forged_actor_id(self, flow, lifecycle, customer, users):
        order_id = flow.create()
        command = CancelOrder(order_id=order_id, actor_id=users["admin"].id)
        with pytest.raises(Forbidden):
            lifecycle.run(command, customer)

    def test_only_processor_confirms_payment(self, flow, lifecycle, admin):
        order_id = flow.create()
        command = ConfirmPayment(order_id=order_id, actor_id=admin.id, payment_intent_id="pi_x")
        with pytest.raises(Forbidden):
            lifecycle.run(command, admin)

    def test_system_actor_cannot_ship(self, flow, lifecycle):
        order_id = flow.paid()
        with pytest.raises(Forbidden):
            lifecycle.mark_shipped(order_id, Actor.system())

    def test_forbidden_checked_before_state(self, flow, lifecycle, other_customer):
        # Чужой заказ в недопустимом статусе: сначала отказ по правам
        order_id = flow.shipped()
        with pytest.raises(Forbidden):
            lifecycle.cancel_order(order_id, other_customer)


class TestNotifications:
    def test_notification_failure_does_not_undo_transition(self, flow, lifecycle, admin, notifier):
        order_id = flow.paid()
        notifier.fail = True

        result = lifecycle.mark_shipped(order_id, admin)

        assert flow.order(order_id).status == S.shipped
        assert result.notifications[0].success is False
        assert result.notifications[0].error == "rejected by provider"

    def test_notifier_exception_is_contained(self, flow, lifecycle, admin, notifier):
        order_id = flow.paid()
        notifier.raise_error = True

        result = lifecycle.mark_shipped(order_id, admin)

        assert result.success is True
        assert flow.order(order_id).status == S.shipped
        assert "mail server exploded" in result.notifications[0].error

    def test_guest_receives_mail_at_guest_email(self, flow, notifier):
        flow.paid(guest_email="guest@example.com")
        _, kind, recipient, data = notifier.sent[-1]
        assert kind.value == "order_confirmation"
        assert recipient == "guest@example.com"
        assert data["total_amount"] == 4000

    def test_customer_receives_mail_at_account_email(self, flow, notifier):
        flow.paid()
        assert notifier.sent[-1][2] == "anna@example.com"


class TestItemStatuses:
    def test_return_request_marks_items(self, flow):
        order_id = flow.return_requested()
        order = flow.order(order_id)
        assert {i.return_status for i in order.items} == {ReturnStatus.requested}
        assert {i.return_reason for i in order.items} == {"Does not fit"}

    def test_unknown_item_id(self, flow, lifecycle, customer):
        order_id = flow.delivered()
        with pytest.raises(NotFound):
            lifecycle.request_return(order_id, customer, notes="Broken", item_ids=["nope"])
