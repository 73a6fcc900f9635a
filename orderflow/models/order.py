# orderflow/models/order.py
# Модели Order, OrderItem, история статусов и записи о возвратах денег (credit notes).
# Суммы хранятся в центах. Статус заказа пишет только TransitionAuthority.
from sqlalchemy import (
    Column, Integer, String, ForeignKey, DateTime, Enum, Text, JSON, Boolean, CheckConstraint,
)
from sqlalchemy.orm import relationship
from orderflow.db.base import Base, new_id, utcnow
import enum

class OrderStatus(str, enum.Enum):
    awaiting_payment = "awaiting_payment"
    paid = "paid"
    shipped = "shipped"
    delivered = "delivered"
    cancelled = "cancelled"
    return_requested = "return_requested"
    returned = "returned"
    partially_returned = "partially_returned"
    refunded = "refunded"
    partially_refunded = "partially_refunded"

class ReturnStatus(str, enum.Enum):
    requested = "requested"
    approved = "approved"
    rejected = "rejected"

class RefundScope(str, enum.Enum):
    full = "full"
    partial = "partial"

class HistoryKind(str, enum.Enum):
    transition = "transition"
    alert = "alert"

class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (
        CheckConstraint("total_amount >= 0", name="ck_orders_total_non_negative"),
        CheckConstraint(
            "(user_id IS NULL) <> (guest_email IS NULL)",
            name="ck_orders_exactly_one_customer",
        ),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    order_number = Column(String, unique=True, index=True, nullable=False)
    status = Column(Enum(OrderStatus), default=OrderStatus.awaiting_payment, nullable=False, index=True)
    total_amount = Column(Integer, nullable=False)

    # Покупатель: либо зарегистрированный пользователь, либо гостевой email
    user_id = Column(String(36), ForeignKey("users.id"), nullable=True, index=True)
    guest_email = Column(String, nullable=True)
    customer_name = Column(String, nullable=True)

    # Снимок адреса на момент заказа, а не ссылка на профиль
    shipping_address = Column(JSON, nullable=False, default=dict)

    stripe_payment_intent_id = Column(String, nullable=True, index=True)
    stripe_checkout_session_id = Column(String, nullable=True, index=True)
    # Счёт на продажу, выставляется при подтверждении оплаты; на него ссылаются кредит-ноты
    invoice_number = Column(String, nullable=True, unique=True)

    coupon_id = Column(String, nullable=True)
    discount_amount = Column(Integer, nullable=False, default=0)

    tracking_number = Column(String, nullable=True)
    delivered_at = Column(DateTime, nullable=True)
    return_deadline = Column(DateTime, nullable=True)
    return_requested_at = Column(DateTime, nullable=True)
    return_ship_by = Column(DateTime, nullable=True)

    # Захват строки на время вызова платёжного процессора
    transition_token = Column(String(36), nullable=True)
    transition_claimed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    user = relationship("User")
    items = relationship("OrderItem", back_populates="order", order_by="OrderItem.position")
    history = relationship(
        "StatusHistoryEntry", back_populates="order", order_by="StatusHistoryEntry.sequence"
    )
    refunds = relationship("RefundRecord", back_populates="order", order_by="RefundRecord.created_at")

class OrderItem(Base):
    __tablename__ = "order_items"
    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_order_items_quantity_positive"),
        CheckConstraint("price_at_purchase >= 0", name="ck_order_items_price_non_negative"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=False, index=True)
    product_id = Column(String(36), ForeignKey("products.id"), nullable=False)
    position = Column(Integer, nullable=False, default=0)
    quantity = Column(Integer, nullable=False)
    price_at_purchase = Column(Integer, nullable=False)
    return_status = Column(Enum(ReturnStatus), nullable=True)
    return_reason = Column(Text, nullable=True)

    # Списан ли склад по этой позиции (при нехватке нет, и возвращать нечего)
    stock_deducted = Column(Boolean, nullable=False, default=False)
    refund_record_id = Column(String(36), ForeignKey("refund_records.id"), nullable=True)

    order = relationship("Order", back_populates="items")
    product = relationship("Product")

    @property
    def line_total(self) -> int:
        return self.price_at_purchase * self.quantity

class StatusHistoryEntry(Base):
    __tablename__ = "order_status_history"

    id = Column(String(36), primary_key=True, default=new_id)
    sequence = Column(Integer, nullable=False)
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=False, index=True)
    kind = Column(Enum(HistoryKind), nullable=False, default=HistoryKind.transition)
    previous_status = Column(Enum(OrderStatus), nullable=True)
    new_status = Column(Enum(OrderStatus), nullable=False)
    actor_id = Column(String(36), nullable=False)
    alert_code = Column(String, nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    order = relationship("Order", back_populates="history")

class RefundRecord(Base):
    __tablename__ = "refund_records"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_refund_records_amount_positive"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    credit_note_number = Column(String, unique=True, nullable=False)
    invoice_number = Column(String, nullable=True)
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    scope = Column(Enum(RefundScope), nullable=False)
    item_ids = Column(JSON, nullable=False, default=list)
    external_refund_id = Column(String, nullable=True, unique=True)
    actor_id = Column(String(36), nullable=False)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    order = relationship("Order", back_populates="refunds")
