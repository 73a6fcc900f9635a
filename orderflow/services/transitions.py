# orderflow/services/transitions.py
# TransitionAuthority: единственный писатель статуса заказа и статусов возврата позиций.
#
# Каждый переход: проверки (заказ, права, допустимость, суммы) до любых изменений,
# затем одна транзакция: compare-and-swap статуса, поля, позиции, склад, история,
# запись о возврате денег. Если переход требует возврата денег, строка заказа
# сначала захватывается, процессор вызывается до записи статуса (fail-closed).

import logging
import secrets
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable

from orderflow.core.config import settings
from orderflow.core.errors import (
    AmountMismatch, ConcurrencyConflict, Forbidden, InsufficientStock, InvalidTransition,
    NotFound, RefundFailed, ReturnWindowExpired,
)
from orderflow.db.base import new_id, utcnow
from orderflow.db.store import OrderStore
from orderflow.models.order import (
    HistoryKind, Order, OrderItem, OrderStatus, RefundScope, ReturnStatus,
)
from orderflow.models.product import Product
from orderflow.schemas.commands import (
    SYSTEM_ACTOR_ID, Actor, ApproveReturn, CancelOrder, ConfirmPayment, MarkDelivered, MarkShipped,
    ProcessRefund, RejectReturn, RequestReturn, TransitionCommand,
)
from orderflow.services.effects import Effect, EffectOutcome
from orderflow.services.notifications import TemplateKind
from orderflow.services.stock import StockLedger

logger = logging.getLogger(__name__)

S = OrderStatus

# Единственный источник правды о допустимых рёбрах
TRANSITIONS: dict[OrderStatus, frozenset] = {
    S.awaiting_payment: frozenset({S.paid, S.cancelled}),
    S.paid: frozenset({S.shipped, S.cancelled}),
    S.shipped: frozenset({S.delivered}),
    S.delivered: frozenset({S.return_requested}),
    S.return_requested: frozenset({S.returned, S.partially_returned, S.delivered}),
    S.returned: frozenset({S.refunded, S.partially_returned}),
    S.partially_returned: frozenset({S.return_requested, S.partially_refunded}),
}

PAID_OR_LATER = frozenset({
    S.paid, S.shipped, S.delivered, S.return_requested, S.returned,
    S.partially_returned, S.refunded, S.partially_refunded,
})

ADMIN_ONLY = frozenset({"mark_shipped", "mark_delivered", "approve_return", "reject_return", "process_refund"})
OWNER_OR_ADMIN = frozenset({"cancel", "request_return"})
SYSTEM_ALLOWED = frozenset({"confirm_payment", "cancel"})

# Префикс алерта об окончательном отказе процессора в возврате денег
REFUND_FAILED_ALERT = "refund_failed:"

# Понятные покупателю причины отказа
CUSTOMER_MESSAGES = {
    "cancel": "This order can no longer be cancelled",
    "mark_shipped": "Only paid orders can be marked as shipped",
    "mark_delivered": "Only shipped orders can be marked as delivered",
    "request_return": "A return cannot be requested for this order",
    "approve_return": "There is no pending return to approve",
    "reject_return": "There is no pending return to reject",
    "process_refund": "This order is not ready to be refunded",
    "confirm_payment": "Payment cannot be applied to this order",
}


def can_transition(source: OrderStatus, target: OrderStatus) -> bool:
    return target in TRANSITIONS.get(source, frozenset())


@dataclass
class RefundPlan:
    amount: int
    item_ids: list[str]
    scope: RefundScope
    idempotency_key: str


@dataclass
class StockMove:
    item_id: str
    product_id: str
    quantity: int
    restore: bool


@dataclass
class Plan:
    """Всё, что переход запишет, вычисленное до первой записи."""

    source: OrderStatus
    target: OrderStatus
    order_fields: dict = field(default_factory=dict)
    item_updates: list[tuple[list[str], dict]] = field(default_factory=list)
    stock_moves: list[StockMove] = field(default_factory=list)
    refund: RefundPlan | None = None
    affected_item_ids: list[str] = field(default_factory=list)
    alerts: list[tuple[str, str]] = field(default_factory=list)
    notify: TemplateKind | None = None
    notify_data: dict = field(default_factory=dict)
    # Статус не меняется (например, отклонена часть позиций возврата)
    in_place: bool = False


@dataclass
class TransitionResult:
    success: bool
    order_id: str
    previous_status: OrderStatus | None
    new_status: OrderStatus
    affected_item_ids: list[str] = field(default_factory=list)
    refund_reference: str | None = None
    refund_amount: int | None = None
    credit_note_number: str | None = None
    duplicate: bool = False
    alerts: list[str] = field(default_factory=list)
    effects: list[Effect] = field(default_factory=list)
    notifications: list[EffectOutcome] = field(default_factory=list)

    def to_dict(self) -> dict:
        data = {
            "success": self.success,
            "order_id": self.order_id,
            "previous_status": self.previous_status.value if self.previous_status else None,
            "new_status": self.new_status.value,
            "affected_item_ids": list(self.affected_item_ids),
            "duplicate": self.duplicate,
        }
        if self.refund_reference is not None:
            data["refund_reference"] = self.refund_reference
            data["refund_amount"] = self.refund_amount
            data["credit_note_number"] = self.credit_note_number
        if self.alerts:
            data["alerts"] = list(self.alerts)
        if self.notifications:
            data["notifications"] = [n.to_dict() for n in self.notifications]
        return data


class TransitionAuthority:
    """
    Проверяет и исполняет переходы заказа.

    Args:
        session_factory: фабрика SQLAlchemy-сессий (sessionmaker)
        refunds: объект с issue_refund(order, plan, actor, notes) -> ProcessorRefund
        ledger: StockLedger
        clock: источник текущего времени (naive UTC)
    """

    def __init__(
        self,
        session_factory,
        refunds,
        ledger: StockLedger | None = None,
        clock: Callable = utcnow,
        return_window_days: int = settings.RETURN_REQUEST_WINDOW_DAYS,
        return_shipping_window_days: int = settings.RETURN_SHIPPING_WINDOW_DAYS,
        claim_ttl_seconds: int = settings.TRANSITION_CLAIM_TTL_SECONDS,
    ):
        self.session_factory = session_factory
        self.refunds = refunds
        self.ledger = ledger or StockLedger()
        self.clock = clock
        self.return_window = timedelta(days=return_window_days)
        self.return_shipping_window = timedelta(days=return_shipping_window_days)
        self.claim_ttl_seconds = claim_ttl_seconds
        self._planners = {
            "confirm_payment": self._plan_confirm_payment,
            "cancel": self._plan_cancel,
            "mark_shipped": self._plan_mark_shipped,
            "mark_delivered": self._plan_mark_delivered,
            "request_return": self._plan_request_return,
            "approve_return": self._plan_approve_return,
            "reject_return": self._plan_reject_return,
            "process_refund": self._plan_process_refund,
        }

    # ------------------------------------------------------------------
    # Авторизация: одна проверка для всех точек входа
    # ------------------------------------------------------------------

    def authorize(self, command: TransitionCommand, actor: Actor, order: Order) -> None:
        if command.actor_id != actor.id:
            raise Forbidden("Command actor does not match the authenticated actor")
        kind = command.kind
        if actor.is_system:
            if kind not in SYSTEM_ALLOWED:
                raise Forbidden(f"System actor cannot perform {kind}")
            return
        if kind == "confirm_payment":
            raise Forbidden("Payments are confirmed by the payment processor only")
        if actor.is_admin:
            return
        if kind in ADMIN_ONLY:
            raise Forbidden("Admin access required")
        if kind in OWNER_OR_ADMIN and order.user_id is not None and order.user_id == actor.id:
            return
        raise Forbidden()

    # ------------------------------------------------------------------
    # Исполнение
    # ------------------------------------------------------------------

    def execute(self, command: TransitionCommand, actor: Actor) -> TransitionResult:
        planner = self._planners.get(command.kind)
        if planner is None:
            raise ValueError(f"Unknown transition command: {command.kind}")

        with self.session_factory() as session:
            store = OrderStore(session)
            order = store.get_order(command.order_id)
            self.authorize(command, actor, order)
            plan = planner(store, order, command, actor)
            if isinstance(plan, TransitionResult):
                # Повторная доставка события или уже достигнутое состояние
                session.commit()
                return plan
            if not plan.in_place and not can_transition(plan.source, plan.target):
                raise InvalidTransition(plan.source, plan.target, CUSTOMER_MESSAGES.get(command.kind))

            token = None
            refund = None
            if plan.refund is not None:
                token = new_id()
                if not store.claim_order(order.id, plan.source, token, self.clock(), self.claim_ttl_seconds):
                    session.rollback()
                    raise ConcurrencyConflict(order_id=order.id)
                session.commit()
                try:
                    refund = self.refunds.issue_refund(order, plan.refund, actor, command.notes)
                except Exception as e:
                    store.release_claim(order.id, token)
                    if isinstance(e, RefundFailed) and e.processor_answered:
                        # Отказ сохранён процессором под этим ключом; следующая попытка получит новый
                        self._alert(
                            store, order, plan.source, actor, f"{REFUND_FAILED_ALERT}{token}",
                            f"Refund of {plan.refund.amount} declined by the processor ({plan.refund.idempotency_key})",
                            self.clock(),
                        )
                    session.commit()
                    raise

            try:
                result = self._commit(store, order, plan, command, actor, token, refund)
                session.commit()
            except Exception:
                session.rollback()
                if token is not None:
                    store.release_claim(order.id, token)
                    session.commit()
                if refund is not None:
                    logger.critical(
                        f"Refund {refund.id} for order {order.id} (amount={plan.refund.amount}) was issued "
                        f"but the {plan.source.value} -> {plan.target.value} transition did not commit; "
                        "manual reconciliation required"
                    )
                raise

        logger.info(
            f"Order {order.id} {plan.source.value} -> {plan.target.value} by {actor.id}"
            + (f" refund={result.refund_reference} amount={result.refund_amount}" if refund else "")
        )
        return result

    def create_order(
        self,
        lines: list[tuple[str, int]],
        shipping_address: dict,
        user_id: str | None = None,
        guest_email: str | None = None,
        customer_name: str | None = None,
        coupon_id: str | None = None,
        discount_amount: int = 0,
    ) -> Order:
        """
        Создаёт заказ в awaiting_payment. Цены берутся из каталога, склад не резервируется.

        Args:
            lines: [(product_id, quantity)]
        """
        if (user_id is None) == (guest_email is None):
            raise ValueError("exactly one of user_id or guest_email is required")
        if not lines:
            raise ValueError("an order needs at least one item")
        if discount_amount < 0:
            raise ValueError("discount_amount must not be negative")

        with self.session_factory() as session:
            store = OrderStore(session)
            now = self.clock()
            items = []
            subtotal = 0
            for position, (product_id, quantity) in enumerate(lines):
                if quantity <= 0:
                    raise ValueError("quantity must be positive")
                product = session.get(Product, product_id)
                if product is None or not product.active:
                    raise NotFound(f"Product {product_id} not found", product_id=product_id)
                items.append(OrderItem(
                    product_id=product.id, position=position,
                    quantity=quantity, price_at_purchase=product.price,
                ))
                subtotal += product.price * quantity
            if discount_amount > subtotal:
                raise ValueError("discount exceeds the order subtotal")

            order = Order(
                order_number=f"{settings.ORDER_NUMBER_PREFIX}-{now:%Y%m%d}-{secrets.token_hex(3).upper()}",
                status=S.awaiting_payment,
                total_amount=subtotal - discount_amount,
                user_id=user_id,
                guest_email=guest_email,
                customer_name=customer_name,
                shipping_address=dict(shipping_address),
                coupon_id=coupon_id,
                discount_amount=discount_amount,
                items=items,
                created_at=now,
            )
            session.add(order)
            session.flush()
            store.insert_status_history(
                order.id, None, S.awaiting_payment, user_id or SYSTEM_ACTOR_ID,
                notes="Order created", created_at=now,
            )
            session.commit()
            logger.info(f"Order {order.id} ({order.order_number}) created: total={order.total_amount}")
            return order

    def record_alert(self, order_id: str, code: str, message: str, actor: Actor) -> bool:
        """Операционный алерт в истории заказа без смены статуса. Повтор того же code ничего не пишет."""
        with self.session_factory() as session:
            store = OrderStore(session)
            order = store.get_order(order_id)
            if store.has_alert(order.id, code):
                return False
            self._alert(store, order, order.status, actor, code, message, self.clock())
            session.commit()
        return True

    def _commit(self, store, order, plan, command, actor, token, refund) -> TransitionResult:
        now = self.clock()
        fields = dict(plan.order_fields)
        if plan.target != plan.source:
            fields["status"] = plan.target
        if not store.conditional_update_order(order.id, plan.source, fields, claim_token=token):
            raise ConcurrencyConflict(order_id=order.id)

        for item_ids, item_fields in plan.item_updates:
            store.update_items(order.id, item_ids, item_fields)

        notes = command.notes
        if refund is not None:
            notes = f"{notes} | refund {refund.id}" if notes else f"refund {refund.id}"
        store.insert_status_history(order.id, plan.source, plan.target, actor.id, notes=notes, created_at=now)

        alerts = []
        for move in plan.stock_moves:
            if move.restore:
                self.ledger.restore(store, move.product_id, move.quantity)
                store.update_items(order.id, [move.item_id], {"stock_deducted": False})
                continue
            try:
                self.ledger.decrement(store, move.product_id, move.quantity)
            except InsufficientStock as e:
                # Оплата уже получена, заказ остаётся paid, нехватка уходит на ручной разбор
                alerts.append(self._alert(store, order, plan.target, actor, f"insufficient_stock:{move.item_id}", e.message, now))
                continue
            store.update_items(order.id, [move.item_id], {"stock_deducted": True})

        for code, message in plan.alerts:
            alerts.append(self._alert(store, order, plan.target, actor, code, message, now))

        record = None
        if plan.refund is not None:
            record = store.insert_refund_record(
                order, plan.refund.amount, plan.refund.scope, plan.refund.item_ids,
                refund.id, actor.id, command.notes, created_at=now,
            )

        effects = []
        if plan.notify is not None:
            data = dict(plan.notify_data)
            data.update({
                "order_number": order.order_number,
                "customer_name": order.customer_name,
                "total_amount": order.total_amount,
                "status": plan.target.value,
            })
            if record is not None:
                data["refund_amount"] = record.amount
                data["credit_note_number"] = record.credit_note_number
                data["invoice_number"] = record.invoice_number
            effects.append(Effect(order.id, plan.notify, self._recipient(order), data))

        return TransitionResult(
            success=True,
            order_id=order.id,
            previous_status=plan.source,
            new_status=plan.target,
            affected_item_ids=list(plan.affected_item_ids),
            refund_reference=refund.id if refund is not None else None,
            refund_amount=record.amount if record is not None else None,
            credit_note_number=record.credit_note_number if record is not None else None,
            alerts=alerts,
            effects=effects,
        )

    def _alert(self, store, order, status, actor, code, message, now) -> str:
        logger.error(f"Operational alert on order {order.id}: {code} {message}")
        store.insert_status_history(
            order.id, status, status, actor.id, notes=message,
            kind=HistoryKind.alert, alert_code=code, created_at=now,
        )
        return code

    @staticmethod
    def _recipient(order: Order) -> str | None:
        if order.guest_email:
            return order.guest_email
        if order.user is not None:
            return order.user.email
        return None

    @staticmethod
    def _noop(order: Order) -> TransitionResult:
        return TransitionResult(
            success=True, order_id=order.id, previous_status=order.status,
            new_status=order.status, duplicate=True,
        )

    # ------------------------------------------------------------------
    # Планировщики переходов
    # ------------------------------------------------------------------

    def _plan_confirm_payment(self, store, order, command: ConfirmPayment, actor):
        if order.status in PAID_OR_LATER:
            logger.info(f"Duplicate payment confirmation for order {order.id} (status={order.status.value})")
            return self._noop(order)
        if order.status == S.cancelled:
            # Деньги пришли за отменённый заказ: статус не трогаем, но оставляем след для ручного возврата
            code = f"payment_after_cancel:{command.payment_intent_id or command.checkout_session_id}"
            if not store.has_alert(order.id, code):
                self._alert(
                    store, order, order.status, actor, code,
                    "Payment confirmed for a cancelled order; refund it manually", self.clock(),
                )
            return self._noop(order)

        fields = {"invoice_number": order.invoice_number or f"INV-{order.order_number}"}
        if command.payment_intent_id:
            fields["stripe_payment_intent_id"] = command.payment_intent_id
        if command.checkout_session_id:
            fields["stripe_checkout_session_id"] = command.checkout_session_id
        plan = Plan(
            source=order.status,
            target=S.paid,
            order_fields=fields,
            stock_moves=[StockMove(i.id, i.product_id, i.quantity, restore=False) for i in order.items],
            affected_item_ids=[i.id for i in order.items],
            notify=TemplateKind.order_confirmation,
        )
        if command.amount_received is not None and command.amount_received != order.total_amount:
            plan.alerts.append((
                "payment_amount_mismatch",
                f"Processor reported {command.amount_received}, order total is {order.total_amount}",
            ))
        return plan

    def _plan_cancel(self, store, order, command: CancelOrder, actor):
        if actor.is_system and order.status != S.awaiting_payment:
            # Истечение checkout-сессии для уже оплаченного/отменённого заказа ничего не меняет
            logger.info(f"Ignoring system cancel for order {order.id} (status={order.status.value})")
            return self._noop(order)
        plan = Plan(source=order.status, target=S.cancelled, notify=TemplateKind.order_cancelled)
        if not can_transition(order.status, S.cancelled):
            return plan
        if order.status == S.paid:
            restorable = [i for i in order.items if i.stock_deducted]
            plan.stock_moves = [StockMove(i.id, i.product_id, i.quantity, restore=True) for i in restorable]
            plan.affected_item_ids = [i.id for i in order.items]
            remaining = order.total_amount - store.refunded_total(order.id)
            if remaining > 0:
                plan.refund = RefundPlan(
                    amount=remaining,
                    item_ids=[i.id for i in order.items],
                    scope=RefundScope.full,
                    idempotency_key=self._idempotency_key(store, order, S.cancelled, remaining),
                )
        return plan

    def _plan_mark_shipped(self, store, order, command: MarkShipped, actor):
        fields = {}
        if command.tracking_number:
            fields["tracking_number"] = command.tracking_number
        return Plan(
            source=order.status, target=S.shipped, order_fields=fields,
            notify=TemplateKind.shipping_notification,
            notify_data={"tracking_number": command.tracking_number},
        )

    def _plan_mark_delivered(self, store, order, command: MarkDelivered, actor):
        now = self.clock()
        return Plan(
            source=order.status,
            target=S.delivered,
            order_fields={"delivered_at": now, "return_deadline": now + self.return_window},
        )

    def _plan_request_return(self, store, order, command: RequestReturn, actor):
        plan = Plan(source=order.status, target=S.return_requested, notify=TemplateKind.return_initiated)
        if not can_transition(order.status, S.return_requested):
            return plan
        now = self.clock()
        if order.return_deadline is None:
            raise InvalidTransition(order.status, S.return_requested, CUSTOMER_MESSAGES["request_return"])

        returnable = [i for i in order.items if i.return_status is None]
        if order.status == S.partially_returned:
            # Позиции, не рассмотренные при частичном одобрении, снова уходят на рассмотрение
            returnable += [i for i in order.items if i.return_status == ReturnStatus.requested]
        targets = self._select_items(order, command.item_ids, returnable, "cannot be returned")
        if not targets:
            raise InvalidTransition(order.status, S.return_requested, "There are no items left to return")
        new_items = [i for i in targets if i.return_status is None]
        plan.affected_item_ids = [i.id for i in targets]
        if not new_items:
            # Запрос уже был подан в срок, окно возврата не проверяется
            plan.notify = None
            return plan

        if now > order.return_deadline:
            raise ReturnWindowExpired(
                order.status, S.return_requested,
                return_deadline=order.return_deadline.isoformat(),
            )
        ship_by = now + self.return_shipping_window
        plan.order_fields = {"return_requested_at": now, "return_ship_by": ship_by}
        plan.item_updates = [([i.id for i in new_items], {"return_status": ReturnStatus.requested, "return_reason": command.notes})]
        plan.notify_data = {"return_ship_by": ship_by.date().isoformat(), "notes": command.notes}
        return plan

    def _plan_approve_return(self, store, order, command: ApproveReturn, actor):
        if order.status != S.return_requested:
            raise InvalidTransition(order.status, S.returned, CUSTOMER_MESSAGES["approve_return"])
        requested = [i for i in order.items if i.return_status == ReturnStatus.requested]
        targets = self._select_items(order, command.item_ids, requested, "has no pending return")
        target_ids = {i.id for i in targets}
        all_approved = all(
            i.id in target_ids or i.return_status == ReturnStatus.approved for i in order.items
        )
        plan = Plan(
            source=order.status,
            target=S.returned if all_approved else S.partially_returned,
            item_updates=[(sorted(target_ids), {"return_status": ReturnStatus.approved})],
            affected_item_ids=[i.id for i in targets],
            notify=TemplateKind.return_approved,
        )
        if command.restore_stock:
            plan.stock_moves = [
                StockMove(i.id, i.product_id, i.quantity, restore=True) for i in targets if i.stock_deducted
            ]
        return plan

    def _plan_reject_return(self, store, order, command: RejectReturn, actor):
        if order.status != S.return_requested:
            raise InvalidTransition(order.status, S.delivered, CUSTOMER_MESSAGES["reject_return"])
        requested = [i for i in order.items if i.return_status == ReturnStatus.requested]
        targets = self._select_items(order, command.item_ids, requested, "has no pending return")
        target_ids = {i.id for i in targets}
        still_requested = [i for i in requested if i.id not in target_ids]
        if still_requested:
            target = S.return_requested
            fields = {}
        else:
            # Возврат к состоянию до запроса: delivered или partially_returned
            target = store.status_before(order.id, S.return_requested) or S.delivered
            if target not in (S.delivered, S.partially_returned):
                target = S.delivered
            fields = {"return_requested_at": None, "return_ship_by": None}
        return Plan(
            source=order.status,
            target=target,
            order_fields=fields,
            in_place=target == order.status,
            item_updates=[(sorted(target_ids), {"return_status": None})],
            affected_item_ids=[i.id for i in targets],
            notify=TemplateKind.return_rejected,
            notify_data={"notes": command.notes},
        )

    def _plan_process_refund(self, store, order, command: ProcessRefund, actor):
        if command.scope == "full":
            source, target = S.returned, S.refunded
        else:
            source, target = S.partially_returned, S.partially_refunded
        if order.status != source:
            raise InvalidTransition(order.status, target, CUSTOMER_MESSAGES["process_refund"])
        pending = [i.id for i in order.items if i.return_status == ReturnStatus.requested]
        if pending:
            # partially_refunded конечный: после него запрос по этим позициям уже не решить
            raise InvalidTransition(
                order.status, target, "Approve or reject the pending return items before refunding",
                pending_item_ids=pending,
            )

        refundable = [
            i for i in order.items
            if i.return_status == ReturnStatus.approved and i.refund_record_id is None
        ]
        targets = self._select_items(order, command.item_ids, refundable, "is not eligible for a refund")
        refunded_before = store.refunded_total(order.id)
        remaining = order.total_amount - refunded_before
        eligible = min(sum(i.line_total for i in targets), remaining)
        if eligible <= 0:
            raise AmountMismatch(
                "Nothing left to refund for this order", eligible=eligible, remaining=remaining,
            )
        amount = eligible
        if command.amount_override is not None:
            if command.amount_override > eligible:
                raise AmountMismatch(
                    f"Refund amount ({command.amount_override}) exceeds the refundable amount ({eligible})",
                    requested=command.amount_override,
                    eligible=eligible,
                )
            amount = command.amount_override
        scope = RefundScope.full if refunded_before == 0 and amount == order.total_amount else RefundScope.partial
        return Plan(
            source=source,
            target=target,
            affected_item_ids=[i.id for i in targets],
            refund=RefundPlan(
                amount=amount,
                item_ids=[i.id for i in targets],
                scope=scope,
                idempotency_key=self._idempotency_key(store, order, target, amount, refunded_before),
            ),
            notify=TemplateKind.refund_processed,
        )

    # ------------------------------------------------------------------

    @staticmethod
    def _select_items(order: Order, item_ids, eligible: list[OrderItem], reason: str) -> list[OrderItem]:
        """Позиции из item_ids (или все eligible), с проверкой принадлежности и пригодности."""
        if item_ids is None:
            return list(eligible)
        by_id = {i.id: i for i in order.items}
        eligible_ids = {i.id for i in eligible}
        selected = []
        for item_id in item_ids:
            if item_id not in by_id:
                raise NotFound(f"Item {item_id} does not belong to this order", item_id=item_id)
            if item_id not in eligible_ids:
                raise InvalidTransition(
                    order.status, None, f"Item {item_id} {reason}", item_id=item_id,
                )
            selected.append(by_id[item_id])
        return selected

    @staticmethod
    def _idempotency_key(store, order: Order, target: OrderStatus, amount: int, refunded_before: int = 0) -> str:
        """
        Ключ одинаков для повторов одной и той же попытки (таймаут, падение после вызова),
        но меняется после каждого окончательного отказа процессора.
        """
        declined = store.count_alerts(order.id, REFUND_FAILED_ALERT)
        return f"refund:{order.id}:{order.status.value}:{target.value}:{refunded_before}:{amount}:{declined}"
