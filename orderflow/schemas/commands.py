# orderflow/schemas/commands.py
# Типизированные команды переходов. Недопустимые сочетания полей
# отсекаются здесь, до бизнес-логики.
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

SYSTEM_ACTOR_ID = "system"


class Actor(BaseModel):
    """Аутентифицированный инициатор действия."""

    model_config = ConfigDict(frozen=True)

    id: str
    is_admin: bool = False
    is_system: bool = False

    @classmethod
    def system(cls) -> "Actor":
        return cls(id=SYSTEM_ACTOR_ID, is_system=True)


class TransitionCommand(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    kind: str
    order_id: str = Field(min_length=1)
    actor_id: str = Field(min_length=1)
    notes: Optional[str] = Field(default=None, max_length=2000)


class ItemScopedCommand(TransitionCommand):
    # None: все подходящие позиции заказа
    item_ids: Optional[list[str]] = None

    @field_validator("item_ids")
    @classmethod
    def _unique_non_empty(cls, v):
        if v is None:
            return v
        if not v:
            raise ValueError("item_ids must not be empty when provided")
        if len(set(v)) != len(v):
            raise ValueError("item_ids must not contain duplicates")
        return v


class ConfirmPayment(TransitionCommand):
    kind: Literal["confirm_payment"] = "confirm_payment"
    actor_id: str = SYSTEM_ACTOR_ID
    payment_intent_id: Optional[str] = None
    checkout_session_id: Optional[str] = None
    amount_received: Optional[int] = Field(default=None, ge=0)


class CancelOrder(TransitionCommand):
    kind: Literal["cancel"] = "cancel"


class MarkShipped(TransitionCommand):
    kind: Literal["mark_shipped"] = "mark_shipped"
    tracking_number: Optional[str] = Field(default=None, max_length=200)


class MarkDelivered(TransitionCommand):
    kind: Literal["mark_delivered"] = "mark_delivered"


class RequestReturn(ItemScopedCommand):
    kind: Literal["request_return"] = "request_return"

    @model_validator(mode="after")
    def _reason_required(self):
        if self.notes is None or not self.notes.strip():
            raise ValueError("a reason for the return is required")
        return self


class ApproveReturn(ItemScopedCommand):
    kind: Literal["approve_return"] = "approve_return"
    restore_stock: bool = False


class RejectReturn(ItemScopedCommand):
    kind: Literal["reject_return"] = "reject_return"


class ProcessRefund(ItemScopedCommand):
    """
    full — возврат денег за полностью возвращённый заказ (returned -> refunded);
    partial — за перечисленные одобренные позиции (partially_returned -> partially_refunded).
    """

    kind: Literal["process_refund"] = "process_refund"
    scope: Literal["full", "partial"] = "full"
    amount_override: Optional[int] = Field(default=None, gt=0)

    @model_validator(mode="after")
    def _scope_matches_items(self):
        if self.scope == "partial" and not self.item_ids:
            raise ValueError("a partial refund requires item_ids")
        if self.scope == "full" and self.item_ids:
            raise ValueError("a full refund covers every returned item; item_ids are not allowed")
        return self
