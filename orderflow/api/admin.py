# orderflow/api/admin.py
# Админские роуты переходов заказа. Права дополнительно проверяет TransitionAuthority.
from fastapi import APIRouter, Depends

from orderflow.api.deps import get_lifecycle
from orderflow.core import security
from orderflow.schemas.commands import Actor
from orderflow.schemas.requests import ApproveReturnIn, NotesIn, RefundIn, ReviewReturnIn, ShipIn
from orderflow.services.lifecycle import OrderLifecycle

router = APIRouter()


@router.post("/orders/{order_id}/cancel")
def cancel_order(
    order_id: str,
    body: NotesIn,
    admin: Actor = Depends(security.require_admin),
    lifecycle: OrderLifecycle = Depends(get_lifecycle),
):
    """Отмена администратором; оплаченный заказ сначала возвращается через процессор."""
    return lifecycle.cancel_order(order_id, admin, notes=body.notes or "Cancelled by admin").to_dict()


@router.post("/orders/{order_id}/ship")
def mark_shipped(
    order_id: str,
    body: ShipIn,
    admin: Actor = Depends(security.require_admin),
    lifecycle: OrderLifecycle = Depends(get_lifecycle),
):
    result = lifecycle.mark_shipped(
        order_id, admin, notes=body.notes or "Marked as shipped", tracking_number=body.tracking_number,
    )
    return result.to_dict()


@router.post("/orders/{order_id}/deliver")
def mark_delivered(
    order_id: str,
    body: NotesIn,
    admin: Actor = Depends(security.require_admin),
    lifecycle: OrderLifecycle = Depends(get_lifecycle),
):
    return lifecycle.mark_delivered(order_id, admin, notes=body.notes or "Marked as delivered").to_dict()


@router.post("/orders/{order_id}/approve-return")
def approve_return(
    order_id: str,
    body: ApproveReturnIn,
    admin: Actor = Depends(security.require_admin),
    lifecycle: OrderLifecycle = Depends(get_lifecycle),
):
    result = lifecycle.approve_return(
        order_id, admin, notes=body.notes, item_ids=body.item_ids, restore_stock=body.restore_stock,
    )
    return result.to_dict()


@router.post("/orders/{order_id}/reject-return")
def reject_return(
    order_id: str,
    body: ReviewReturnIn,
    admin: Actor = Depends(security.require_admin),
    lifecycle: OrderLifecycle = Depends(get_lifecycle),
):
    return lifecycle.reject_return(order_id, admin, notes=body.notes, item_ids=body.item_ids).to_dict()


@router.post("/orders/{order_id}/refund")
def process_refund(
    order_id: str,
    body: RefundIn,
    admin: Actor = Depends(security.require_admin),
    lifecycle: OrderLifecycle = Depends(get_lifecycle),
):
    """Сумма считается на сервере; body.amount может только уменьшить её."""
    result = lifecycle.process_refund(
        order_id, admin, notes=body.notes, item_ids=body.item_ids,
        amount_override=body.amount, scope=body.scope,
    )
    return result.to_dict()
