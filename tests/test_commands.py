"""Tests for typed transition commands."""

import pytest
from pydantic import ValidationError

from orderflow.schemas.commands import (
    Actor, ApproveReturn, CancelOrder, ConfirmPayment, ProcessRefund, RequestReturn,
)


class TestCommands:
    def test_request_return_requires_reason(self):
        with pytest.raises(ValidationError):
            RequestReturn(order_id="o1", actor_id="u1")
        with pytest.raises(ValidationError):
            RequestReturn(order_id="o1", actor_id="u1", notes="   ")
        assert RequestReturn(order_id="o1", actor_id="u1", notes="Broken").kind == "request_return"

    def test_partial_refund_requires_items(self):
        with pytest.raises(ValidationError):
            ProcessRefund(order_id="o1", actor_id="a1", scope="partial")

    def test_full_refund_forbids_items(self):
        with pytest.raises(ValidationError):
            ProcessRefund(order_id="o1", actor_id="a1", scope="full", item_ids=["i1"])

    def test_refund_override_must_be_positive(self):
        with pytest.raises(ValidationError):
            ProcessRefund(order_id="o1", actor_id="a1", amount_override=0)

    def test_item_ids_are_unique_and_non_empty(self):
        with pytest.raises(ValidationError):
            ApproveReturn(order_id="o1", actor_id="a1", item_ids=[])
        with pytest.raises(ValidationError):
            ApproveReturn(order_id="o1", actor_id="a1", item_ids=["i1", "i1"])

    def test_unknown_fields_are_rejected(self):
        with pytest.raises(ValidationError):
            CancelOrder(order_id="o1", actor_id="u1", refund_amount=100)

    def test_kind_cannot_be_spoofed(self):
        with pytest.raises(ValidationError):
            CancelOrder(kind="process_refund", order_id="o1", actor_id="u1")

    def test_commands_are_frozen(self):
        command = CancelOrder(order_id="o1", actor_id="u1")
        with pytest.raises(ValidationError):
            command.order_id = "o2"

    def test_confirm_payment_defaults_to_system_actor(self):
        command = ConfirmPayment(order_id="o1", payment_intent_id="pi_1")
        assert command.actor_id == Actor.system().id
        assert Actor.system().is_system is True
