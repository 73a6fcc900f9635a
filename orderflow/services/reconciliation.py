# orderflow/services/reconciliation.py
# Сверка с платёжным процессором: исходящие возвраты денег и входящие события Stripe.
# Доставка событий at-least-once и без гарантии порядка, эффект ровно один.

import logging

from orderflow.core.errors import RefundFailed
from orderflow.db.store import OrderStore
from orderflow.schemas.commands import Actor, CancelOrder, ConfirmPayment, SYSTEM_ACTOR_ID
from orderflow.services.payments import PaymentProcessor, PaymentProcessorError, ProcessorRefund

logger = logging.getLogger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"
CHECKOUT_EXPIRED = "checkout.session.expired"
CHARGE_REFUNDED = "charge.refunded"


class RefundIssuer:
    """Синхронный возврат денег через процессор; любой отказ превращается в RefundFailed."""

    def __init__(self, processor: PaymentProcessor):
        self.processor = processor

    def issue_refund(self, order, plan, actor: Actor, notes: str | None = None) -> ProcessorRefund:
        if not order.stripe_payment_intent_id:
            logger.error(f"Order {order.id} has no payment reference, cannot refund {plan.amount}")
            raise RefundFailed(
                "This order has no recorded payment to refund", order_id=order.id,
            )
        metadata = {
            "order_id": order.id,
            "order_number": order.order_number,
            "actor_id": actor.id,
            "scope": plan.scope.value,
            "reason": notes or "",
        }
        logger.info(
            f"Requesting refund: order={order.id} amount={plan.amount} "
            f"payment_intent={order.stripe_payment_intent_id} key={plan.idempotency_key}"
        )
        try:
            refund = self.processor.create_refund(
                order.stripe_payment_intent_id, plan.amount, metadata, idempotency_key=plan.idempotency_key,
            )
        except (PaymentProcessorError, TimeoutError, ConnectionError) as e:
            logger.error(
                f"Refund call failed: order={order.id} amount={plan.amount} "
                f"payment_intent={order.stripe_payment_intent_id}: {e}"
            )
            raise RefundFailed(
                order_id=order.id, processor_error=str(e), processor_answered=getattr(e, "answered", False),
            ) from e
        if not refund.ok:
            logger.error(
                f"Refund rejected: order={order.id} amount={plan.amount} refund={refund.id} status={refund.status}"
            )
            raise RefundFailed(order_id=order.id, processor_status=refund.status, processor_answered=True)
        logger.info(
            f"Refund accepted: order={order.id} amount={plan.amount} refund={refund.id} status={refund.status}"
        )
        return refund


def _event_object(event) -> dict:
    return event.get("data", {}).get("object", {}) or {}


def _order_id_from(obj) -> str | None:
    metadata = obj.get("metadata") or {}
    return metadata.get("order_id") or metadata.get("orderId") or obj.get("client_reference_id")


class PaymentReconciliation:
    """
    Переводит события Stripe в команды TransitionAuthority.

    Args:
        lifecycle: OrderLifecycle, исполняет команды с повторами и пост-эффектами
        session_factory: фабрика сессий для сверки возвратов
    """

    def __init__(self, lifecycle, session_factory):
        self.lifecycle = lifecycle
        self.session_factory = session_factory

    def handle_event(self, event) -> dict:
        event_type = event.get("type")
        event_id = event.get("id")
        logger.info(f"Payment event received: type={event_type} id={event_id}")
        if event_type == CHECKOUT_COMPLETED:
            return self.handle_payment_confirmed(event).to_dict()
        if event_type == CHECKOUT_EXPIRED:
            return self.handle_checkout_expired(event).to_dict()
        if event_type == CHARGE_REFUNDED:
            return self.handle_refund_issued(event)
        logger.info(f"Ignoring payment event type {event_type}")
        return {"success": True, "ignored": True}

    def handle_payment_confirmed(self, event):
        obj = _event_object(event)
        order_id = _order_id_from(obj)
        if not order_id:
            raise ValueError("checkout event carries no order id in metadata")
        command = ConfirmPayment(
            order_id=order_id,
            payment_intent_id=obj.get("payment_intent"),
            checkout_session_id=obj.get("id"),
            amount_received=obj.get("amount_total"),
        )
        logger.info(
            f"Payment confirmed event: order={order_id} amount={obj.get('amount_total')} "
            f"payment_intent={obj.get('payment_intent')} session={obj.get('id')}"
        )
        return self.lifecycle.run(command, Actor.system())

    def handle_checkout_expired(self, event):
        obj = _event_object(event)
        order_id = _order_id_from(obj)
        if not order_id:
            raise ValueError("checkout event carries no order id in metadata")
        logger.info(f"Checkout expired: order={order_id} session={obj.get('id')}")
        command = CancelOrder(order_id=order_id, actor_id=SYSTEM_ACTOR_ID, notes="Checkout session expired")
        return self.lifecycle.run(command, Actor.system())

    def handle_refund_issued(self, event) -> dict:
        """Возвраты, сделанные мимо сервиса (например, из дашборда Stripe), помечаются на заказе."""
        charge = _event_object(event)
        payment_intent = charge.get("payment_intent")
        refunds = (charge.get("refunds") or {}).get("data") or []
        with self.session_factory() as session:
            store = OrderStore(session)
            order = store.find_order_by_payment_intent(payment_intent) if payment_intent else None
            if order is None:
                logger.warning(f"charge.refunded for unknown payment_intent {payment_intent}")
                return {"success": True, "ignored": True}
            alerts = []
            if refunds:
                for refund in refunds:
                    refund_id = refund.get("id")
                    if refund_id and store.find_refund_by_external_id(refund_id) is None:
                        alerts.append((
                            f"external_refund:{refund_id}",
                            f"External refund {refund_id} amount={refund.get('amount')}",
                        ))
            else:
                # Новые версии API не разворачивают список refunds в charge
                amount_refunded = charge.get("amount_refunded") or 0
                known = store.refunded_total(order.id)
                if amount_refunded > known:
                    alerts.append((
                        f"external_refund_amount:{amount_refunded}",
                        f"Processor reports {amount_refunded} refunded, orderflow recorded {known}",
                    ))
            order_id = order.id

        codes = []
        for code, message in alerts:
            logger.error(f"{message} on order {order_id} was not issued through orderflow; manual review required")
            if self.lifecycle.authority.record_alert(order_id, code, message, Actor.system()):
                codes.append(code)
        return {"success": True, "order_id": order_id, "alerts": codes}
