# orderflow/db/store.py
# Слой доступа к данным заказа: чтение, условные (compare-and-swap) обновления,
# история статусов и записи о возвратах денег. Коммитом управляет вызывающий код.

import logging
from datetime import datetime, timedelta

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session, selectinload

from orderflow.core.errors import NotFound
from orderflow.db.base import utcnow
from orderflow.models.product import Product
from orderflow.models.order import (
    HistoryKind, Order, OrderItem, OrderStatus, RefundRecord, RefundScope, StatusHistoryEntry,
)

logger = logging.getLogger(__name__)

# Поля, фиксируемые при создании заказа и не меняющиеся никогда
IMMUTABLE_ORDER_FIELDS = frozenset({
    "id", "order_number", "total_amount", "user_id", "guest_email",
    "coupon_id", "discount_amount", "shipping_address", "created_at",
})


class OrderStore:
    """Команды персистентности поверх одной SQLAlchemy-сессии."""

    def __init__(self, session: Session):
        self.session = session

    def get_order(self, order_id: str) -> Order:
        """Заказ со свежими позициями; NotFound если его нет."""
        order = self.session.execute(
            select(Order)
            .where(Order.id == order_id)
            .options(selectinload(Order.items))
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if order is None:
            raise NotFound(f"Order {order_id} not found", order_id=order_id)
        return order

    def find_order_by_payment_intent(self, payment_intent_id: str) -> Order | None:
        return self.session.execute(
            select(Order).where(Order.stripe_payment_intent_id == payment_intent_id)
        ).scalars().first()

    def conditional_update_order(
        self,
        order_id: str,
        expected_status: OrderStatus,
        new_fields: dict,
        claim_token: str | None = None,
    ) -> bool:
        """
        Обновляет заказ, только если его статус всё ещё expected_status.

        Без claim_token строка не должна быть захвачена другим переходом;
        с claim_token должна быть захвачена именно им, и захват снимается.
        Возвращает False, если гонка проиграна.
        """
        forbidden = IMMUTABLE_ORDER_FIELDS.intersection(new_fields)
        if forbidden:
            raise ValueError(f"Immutable order fields cannot be updated: {sorted(forbidden)}")

        values = dict(new_fields)
        values["updated_at"] = utcnow()
        stmt = update(Order).where(Order.id == order_id, Order.status == expected_status)
        if claim_token is None:
            stmt = stmt.where(Order.transition_token.is_(None))
        else:
            stmt = stmt.where(Order.transition_token == claim_token)
            values["transition_token"] = None
            values["transition_claimed_at"] = None
        result = self.session.execute(
            stmt.values(**values).execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def claim_order(
        self, order_id: str, expected_status: OrderStatus, token: str, now: datetime, ttl_seconds: int
    ) -> bool:
        """Захватывает строку заказа на время внешнего вызова (протухший захват можно перехватить)."""
        stale_before = now - timedelta(seconds=ttl_seconds)
        result = self.session.execute(
            update(Order)
            .where(
                Order.id == order_id,
                Order.status == expected_status,
                or_(Order.transition_token.is_(None), Order.transition_claimed_at < stale_before),
            )
            .values(transition_token=token, transition_claimed_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def release_claim(self, order_id: str, token: str) -> None:
        self.session.execute(
            update(Order)
            .where(Order.id == order_id, Order.transition_token == token)
            .values(transition_token=None, transition_claimed_at=None)
            .execution_options(synchronize_session=False)
        )

    def update_items(self, order_id: str, item_ids, fields: dict) -> int:
        if not item_ids:
            return 0
        result = self.session.execute(
            update(OrderItem)
            .where(OrderItem.order_id == order_id, OrderItem.id.in_(list(item_ids)))
            .values(**fields)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    def insert_status_history(
        self,
        order_id: str,
        previous_status: OrderStatus | None,
        new_status: OrderStatus,
        actor_id: str,
        notes: str | None = None,
        kind: HistoryKind = HistoryKind.transition,
        alert_code: str | None = None,
        created_at: datetime | None = None,
    ) -> StatusHistoryEntry:
        sequence = self.session.execute(
            select(func.coalesce(func.max(StatusHistoryEntry.sequence), 0))
            .where(StatusHistoryEntry.order_id == order_id)
        ).scalar_one() + 1
        entry = StatusHistoryEntry(
            order_id=order_id,
            sequence=sequence,
            kind=kind,
            previous_status=previous_status,
            new_status=new_status,
            actor_id=actor_id,
            alert_code=alert_code,
            notes=notes,
            created_at=created_at or utcnow(),
        )
        self.session.add(entry)
        self.session.flush()
        return entry

    def has_alert(self, order_id: str, alert_code: str) -> bool:
        return self.session.execute(
            select(StatusHistoryEntry.id).where(
                StatusHistoryEntry.order_id == order_id,
                StatusHistoryEntry.kind == HistoryKind.alert,
                StatusHistoryEntry.alert_code == alert_code,
            )
        ).first() is not None

    def count_alerts(self, order_id: str, code_prefix: str) -> int:
        return self.session.execute(
            select(func.count(StatusHistoryEntry.id)).where(
                StatusHistoryEntry.order_id == order_id,
                StatusHistoryEntry.kind == HistoryKind.alert,
                StatusHistoryEntry.alert_code.startswith(code_prefix, autoescape=True),
            )
        ).scalar_one()

    def history(self, order_id: str) -> list[StatusHistoryEntry]:
        return list(self.session.execute(
            select(StatusHistoryEntry)
            .where(StatusHistoryEntry.order_id == order_id)
            .order_by(StatusHistoryEntry.sequence)
        ).scalars())

    def status_before(self, order_id: str, status: OrderStatus) -> OrderStatus | None:
        """Статус, из которого заказ последний раз вошёл в status."""
        return self.session.execute(
            select(StatusHistoryEntry.previous_status)
            .where(
                StatusHistoryEntry.order_id == order_id,
                StatusHistoryEntry.kind == HistoryKind.transition,
                StatusHistoryEntry.new_status == status,
                StatusHistoryEntry.previous_status != status,
            )
            .order_by(StatusHistoryEntry.sequence.desc())
            .limit(1)
        ).scalar_one_or_none()

    def refunded_total(self, order_id: str) -> int:
        return self.session.execute(
            select(func.coalesce(func.sum(RefundRecord.amount), 0))
            .where(RefundRecord.order_id == order_id)
        ).scalar_one()

    def refunds(self, order_id: str) -> list[RefundRecord]:
        return list(self.session.execute(
            select(RefundRecord)
            .where(RefundRecord.order_id == order_id)
            .order_by(RefundRecord.created_at)
        ).scalars())

    def find_refund_by_external_id(self, external_refund_id: str) -> RefundRecord | None:
        return self.session.execute(
            select(RefundRecord).where(RefundRecord.external_refund_id == external_refund_id)
        ).scalar_one_or_none()

    def insert_refund_record(
        self,
        order: Order,
        amount: int,
        scope: RefundScope,
        item_ids: list[str],
        external_refund_id: str | None,
        actor_id: str,
        notes: str | None = None,
        created_at: datetime | None = None,
    ) -> RefundRecord:
        count = self.session.execute(
            select(func.count(RefundRecord.id)).where(RefundRecord.order_id == order.id)
        ).scalar_one()
        record = RefundRecord(
            credit_note_number=f"CN-{order.order_number}-{count + 1:02d}",
            invoice_number=order.invoice_number,
            order_id=order.id,
            amount=amount,
            scope=scope,
            item_ids=list(item_ids),
            external_refund_id=external_refund_id,
            actor_id=actor_id,
            notes=notes,
            created_at=created_at or utcnow(),
        )
        self.session.add(record)
        self.session.flush()
        if item_ids:
            self.update_items(order.id, item_ids, {"refund_record_id": record.id})
        logger.info(
            f"Refund record {record.credit_note_number} for order {order.id}: "
            f"amount={amount} scope={scope.value} external={external_refund_id}"
        )
        return record

    def conditional_update_stock(self, product_id: str, delta: int, min_resulting: int = 0) -> int | None:
        """
        Атомарно сдвигает stock на delta, если итог не меньше min_resulting.
        Возвращает новый уровень или None, если условие не выполнено.
        """
        result = self.session.execute(
            update(Product)
            .where(Product.id == product_id, Product.stock + delta >= min_resulting)
            .values(stock=Product.stock + delta)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return None
        return self.session.execute(
            select(Product.stock).where(Product.id == product_id)
        ).scalar_one()

    def stock_level(self, product_id: str) -> int | None:
        return self.session.execute(
            select(Product.stock).where(Product.id == product_id)
        ).scalar_one_or_none()
