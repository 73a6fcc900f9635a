"""Pytest fixtures for orderflow tests."""

import os

# Настройки читаются при импорте orderflow.core.config
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("SECRET_KEY", "test-secret-key")

from datetime import datetime, timedelta

import pytest
from sqlalchemy.orm import sessionmaker

from orderflow.db.base import Base
from orderflow.db.session import make_engine
from orderflow.db.store import OrderStore
from orderflow.models.order import Order
from orderflow.models.product import Product
from orderflow.models.user import RoleEnum, User
from orderflow.schemas.commands import Actor
from orderflow.services.lifecycle import OrderLifecycle
from orderflow.services.notifications import NotificationResult
from orderflow.services.payments import PaymentProcessorError, ProcessorRefund
from orderflow.services.reconciliation import RefundIssuer
from orderflow.services.transitions import TransitionAuthority

T0 = datetime(2026, 3, 2, 10, 0, 0)


class Clock:
    """Управляемые часы для окон возврата и TTL захвата."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeProcessor:
    """
    Платёжный процессор, записывающий каждый вызов create_refund.

    Как Stripe, запоминает ответ под idempotency key (включая отказы)
    и отдаёт его повторно, не исполняя запрос. Ошибки без ответа не запоминаются.
    """

    def __init__(self):
        self.calls = []
        self.replies = {}
        self.executed = 0
        self.status = "succeeded"
        self.error = None
        self.on_call = None

    def create_refund(self, payment_reference, amount_cents, metadata, idempotency_key=None):
        self.calls.append({
            "payment_reference": payment_reference,
            "amount": amount_cents,
            "metadata": metadata,
            "idempotency_key": idempotency_key,
        })
        if idempotency_key in self.replies:
            reply = self.replies[idempotency_key]
            if isinstance(reply, Exception):
                raise reply
            return reply
        if self.on_call is not None:
            self.on_call()
        if self.error is not None:
            if getattr(self.error, "answered", False):
                self.replies[idempotency_key] = self.error
            raise self.error
        self.executed += 1
        refund = ProcessorRefund(id=f"re_test_{len(self.calls)}", status=self.status)
        self.replies[idempotency_key] = refund
        return refund

    def fail_with(self, message="card_declined", answered=False):
        self.error = PaymentProcessorError(message, answered=answered)


class RecordingNotifier:
    def __init__(self):
        self.sent = []
        self.fail = False
        self.raise_error = False

    def send(self, order_id, template_kind, recipient, data):
        if self.raise_error:
            raise RuntimeError("mail server exploded")
        self.sent.append((order_id, template_kind, recipient, data))
        if self.fail:
            return NotificationResult(success=False, error="rejected by provider")
        return NotificationResult(success=True, id=f"msg-{len(self.sent)}")

    def kinds(self):
        return [kind.value for _, kind, _, _ in self.sent]


@pytest.fixture
def engine():
    engine = make_engine("sqlite://")
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


@pytest.fixture
def users(session_factory):
    """Покупатель, второй покупатель и администратор."""
    with session_factory() as session:
        customer = User(email="anna@example.com", full_name="Anna", role=RoleEnum.customer)
        other = User(email="boris@example.com", full_name="Boris", role=RoleEnum.customer)
        admin = User(email="admin@example.com", full_name="Admin", role=RoleEnum.admin)
        session.add_all([customer, other, admin])
        session.commit()
        return {"customer": customer, "other": other, "admin": admin}


@pytest.fixture
def products(session_factory):
    with session_factory() as session:
        widget = Product(name="Widget", price=1500, stock=10)
        gadget = Product(name="Gadget", price=2500, stock=5)
        scarce = Product(name="Last One", price=900, stock=1)
        session.add_all([widget, gadget, scarce])
        session.commit()
        return {"widget": widget, "gadget": gadget, "scarce": scarce}


@pytest.fixture
def customer(users):
    return Actor(id=users["customer"].id)


@pytest.fixture
def other_customer(users):
    return Actor(id=users["other"].id)


@pytest.fixture
def admin(users):
    return Actor(id=users["admin"].id, is_admin=True)


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def processor():
    return FakeProcessor()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def authority(session_factory, processor, clock):
    return TransitionAuthority(session_factory, RefundIssuer(processor), clock=clock)


@pytest.fixture
def lifecycle(authority, notifier):
    return OrderLifecycle(authority, notifier, conflict_retries=3, retry_delay=0)


def checkout_event(order_id, amount, payment_intent="pi_test_1", session_id="cs_test_1",
                   event_type="checkout.session.completed", event_id="evt_test_1"):
    return {
        "id": event_id,
        "type": event_type,
        "data": {
            "object": {
                "id": session_id,
                "payment_intent": payment_intent,
                "amount_total": amount,
                "metadata": {"order_id": order_id},
            }
        },
    }


class OrderFlow:
    """Проводит заказ по допустимым переходам до нужного статуса."""

    def __init__(self, lifecycle, session_factory, users, products, clock):
        self.lifecycle = lifecycle
        self.session_factory = session_factory
        self.users = users
        self.products = products
        self.clock = clock
        self.customer = Actor(id=users["customer"].id)
        self.admin = Actor(id=users["admin"].id, is_admin=True)

    def create(self, lines=None, guest_email=None, discount_amount=0):
        lines = lines or [("widget", 1), ("gadget", 1)]
        order = self.lifecycle.authority.create_order(
            [(self.products[name].id, qty) for name, qty in lines],
            shipping_address={"line1": "Main St 1", "city": "Riga", "country": "LV"},
            user_id=None if guest_email else self.users["customer"].id,
            guest_email=guest_email,
            customer_name="Anna",
            discount_amount=discount_amount,
        )
        return order.id

    def pay(self, order_id, payment_intent="pi_test_1"):
        order = self.order(order_id)
        event = checkout_event(order_id, order.total_amount, payment_intent=payment_intent)
        self.lifecycle.reconciliation.handle_event(event)
        return order_id

    def paid(self, **kwargs):
        return self.pay(self.create(**kwargs))

    def shipped(self, **kwargs):
        order_id = self.paid(**kwargs)
        self.lifecycle.mark_shipped(order_id, self.admin, tracking_number="TRK-1")
        return order_id

    def delivered(self, **kwargs):
        order_id = self.shipped(**kwargs)
        self.lifecycle.mark_delivered(order_id, self.admin)
        return order_id

    def return_requested(self, item_names=None, **kwargs):
        order_id = self.delivered(**kwargs)
        self.lifecycle.request_return(
            order_id, self.customer, notes="Does not fit", item_ids=self.item_ids(order_id, item_names),
        )
        return order_id

    def returned(self, **kwargs):
        order_id = self.return_requested(**kwargs)
        self.lifecycle.approve_return(order_id, self.admin, notes="Received in good condition")
        return order_id

    def item_ids(self, order_id, names=None):
        if names is None:
            return None
        by_product = {self.products[name].id: name for name in names}
        return [i.id for i in self.order(order_id).items if i.product_id in by_product]

    def order(self, order_id) -> Order:
        """Снимок заказа с позициями, историей и возвратами денег."""
        with self.session_factory() as session:
            order = OrderStore(session).get_order(order_id)
            list(order.history)
            list(order.refunds)
            return order

    def transitions(self, order_id):
        return [
            (e.previous_status.value if e.previous_status else None, e.new_status.value)
            for e in self.order(order_id).history if e.kind.value == "transition"
        ]

    def alerts(self, order_id):
        return [e.alert_code for e in self.order(order_id).history if e.kind.value == "alert"]

    def stock(self, name):
        with self.session_factory() as session:
            return OrderStore(session).stock_level(self.products[name].id)


@pytest.fixture
def flow(lifecycle, session_factory, users, products, clock):
    return OrderFlow(lifecycle, session_factory, users, products, clock)
