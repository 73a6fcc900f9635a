# orderflow/schemas/requests.py
# Тела HTTP-запросов и представления заказа в ответах.
from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from orderflow.models.order import HistoryKind, OrderStatus, RefundScope, ReturnStatus


class StrictBody(BaseModel):
    model_config = ConfigDict(extra="forbid")


class OrderLineIn(StrictBody):
    product_id: str
    quantity: int = Field(gt=0)


class CreateOrderIn(StrictBody):
    items: list[OrderLineIn] = Field(min_length=1)
    shipping_address: dict
    customer_name: Optional[str] = None
    guest_email: Optional[str] = Field(default=None, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class NotesIn(StrictBody):
    notes: Optional[str] = Field(default=None, max_length=2000)


class ShipIn(NotesIn):
    tracking_number: Optional[str] = Field(default=None, max_length=200)


class ReturnRequestIn(StrictBody):
    reason: str = Field(min_length=1, max_length=2000)
    item_ids: Optional[list[str]] = None


class ReviewReturnIn(NotesIn):
    item_ids: Optional[list[str]] = None


class ApproveReturnIn(ReviewReturnIn):
    restore_stock: bool = False


class RefundIn(NotesIn):
    scope: Literal["full", "partial"] = "full"
    item_ids: Optional[list[str]] = None
    amount: Optional[int] = Field(default=None, gt=0)


class OrderItemOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    product_id: str
    quantity: int
    price_at_purchase: int
    return_status: Optional[ReturnStatus] = None
    refund_record_id: Optional[str] = None


class HistoryEntryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    kind: HistoryKind
    previous_status: Optional[OrderStatus] = None
    new_status: OrderStatus
    actor_id: str
    alert_code: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime


class RefundOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    credit_note_number: str
    invoice_number: Optional[str] = None
    amount: int
    scope: RefundScope
    item_ids: list[str]
    external_refund_id: Optional[str] = None
    created_at: datetime


class OrderOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    order_number: str
    status: OrderStatus
    total_amount: int
    discount_amount: int
    user_id: Optional[str] = None
    guest_email: Optional[str] = None
    shipping_address: dict
    invoice_number: Optional[str] = None
    tracking_number: Optional[str] = None
    delivered_at: Optional[datetime] = None
    return_deadline: Optional[datetime] = None
    return_ship_by: Optional[datetime] = None
    created_at: datetime
    items: list[OrderItemOut] = []
    history: list[HistoryEntryOut] = []
    refunds: list[RefundOut] = []
