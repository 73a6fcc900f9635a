# orderflow/services/lifecycle.py
# Точки входа жизненного цикла заказа: по одной на каждый внешний переход.
# Повторяет проигранные гонки ограниченное число раз и исполняет пост-эффекты после коммита.

import logging
import time

from orderflow.core.config import settings
from orderflow.core.errors import ConcurrencyConflict
from orderflow.schemas.commands import (
    Actor, ApproveReturn, CancelOrder, MarkDelivered, MarkShipped, ProcessRefund,
    RejectReturn, RequestReturn, TransitionCommand,
)
from orderflow.services.effects import run_effects
from orderflow.services.notifications import Notifier
from orderflow.services.reconciliation import PaymentReconciliation
from orderflow.services.transitions import TransitionAuthority, TransitionResult

logger = logging.getLogger(__name__)


class OrderLifecycle:
    def __init__(
        self,
        authority: TransitionAuthority,
        notifier: Notifier,
        conflict_retries: int = settings.CONFLICT_RETRIES,
        retry_delay: float = settings.CONFLICT_RETRY_DELAY,
    ):
        self.authority = authority
        self.notifier = notifier
        self.conflict_retries = conflict_retries
        self.retry_delay = retry_delay
        self.reconciliation = PaymentReconciliation(self, authority.session_factory)

    def run(self, command: TransitionCommand, actor: Actor) -> TransitionResult:
        """Исполняет команду; ConcurrencyConflict повторяется не более conflict_retries раз."""
        attempt = 0
        while True:
            try:
                result = self.authority.execute(command, actor)
                break
            except ConcurrencyConflict:
                attempt += 1
                if attempt > self.conflict_retries:
                    logger.warning(
                        f"Giving up on {command.kind} for order {command.order_id} after {attempt} conflicts"
                    )
                    raise
                logger.info(f"Conflict on {command.kind} for order {command.order_id}, retry {attempt}")
                if self.retry_delay:
                    time.sleep(self.retry_delay * attempt)
        if result.effects:
            result.notifications = run_effects(result.effects, self.notifier)
        return result

    def cancel_order(self, order_id: str, actor: Actor, notes: str | None = None) -> TransitionResult:
        return self.run(CancelOrder(order_id=order_id, actor_id=actor.id, notes=notes), actor)

    def mark_shipped(
        self, order_id: str, actor: Actor, notes: str | None = None, tracking_number: str | None = None
    ) -> TransitionResult:
        command = MarkShipped(order_id=order_id, actor_id=actor.id, notes=notes, tracking_number=tracking_number)
        return self.run(command, actor)

    def mark_delivered(self, order_id: str, actor: Actor, notes: str | None = None) -> TransitionResult:
        return self.run(MarkDelivered(order_id=order_id, actor_id=actor.id, notes=notes), actor)

    def request_return(
        self, order_id: str, actor: Actor, notes: str | None = None, item_ids: list[str] | None = None
    ) -> TransitionResult:
        command = RequestReturn(order_id=order_id, actor_id=actor.id, notes=notes, item_ids=item_ids)
        return self.run(command, actor)

    def approve_return(
        self,
        order_id: str,
        actor: Actor,
        notes: str | None = None,
        item_ids: list[str] | None = None,
        restore_stock: bool = False,
    ) -> TransitionResult:
        command = ApproveReturn(
            order_id=order_id, actor_id=actor.id, notes=notes, item_ids=item_ids, restore_stock=restore_stock,
        )
        return self.run(command, actor)

    def reject_return(
        self, order_id: str, actor: Actor, notes: str | None = None, item_ids: list[str] | None = None
    ) -> TransitionResult:
        command = RejectReturn(order_id=order_id, actor_id=actor.id, notes=notes, item_ids=item_ids)
        return self.run(command, actor)

    def process_refund(
        self,
        order_id: str,
        actor: Actor,
        notes: str | None = None,
        item_ids: list[str] | None = None,
        amount_override: int | None = None,
        scope: str | None = None,
    ) -> TransitionResult:
        command = ProcessRefund(
            order_id=order_id,
            actor_id=actor.id,
            notes=notes,
            item_ids=item_ids,
            scope=scope or ("partial" if item_ids else "full"),
            amount_override=amount_override,
        )
        return self.run(command, actor)

    def handle_payment_confirmed(self, event) -> TransitionResult:
        return self.reconciliation.handle_payment_confirmed(event)
