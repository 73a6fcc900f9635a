# orderflow/api/orders.py
# Роуты покупателя: оформление заказа, просмотр, отмена и запрос возврата.
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from orderflow.api.deps import get_lifecycle
from orderflow.core import security
from orderflow.core.errors import Forbidden
from orderflow.db.store import OrderStore
from orderflow.schemas.commands import Actor
from orderflow.schemas.requests import CreateOrderIn, NotesIn, OrderOut, ReturnRequestIn
from orderflow.services.lifecycle import OrderLifecycle

router = APIRouter()


@router.post("", status_code=201)
def create_order(
    body: CreateOrderIn,
    actor: Actor = Depends(security.get_current_actor),
    lifecycle: OrderLifecycle = Depends(get_lifecycle),
):
    """
    Создаёт заказ в статусе awaiting_payment.
    Цены берутся из каталога на сервере, клиент передаёт только товары и количество.
    """
    order = lifecycle.authority.create_order(
        [(line.product_id, line.quantity) for line in body.items],
        shipping_address=body.shipping_address,
        user_id=None if body.guest_email else actor.id,
        guest_email=body.guest_email,
        customer_name=body.customer_name,
    )
    return {
        "success": True,
        "order_id": order.id,
        "order_number": order.order_number,
        "status": order.status.value,
        "total_amount": order.total_amount,
    }


@router.get("/{order_id}", response_model=OrderOut)
def get_order(
    order_id: str,
    actor: Actor = Depends(security.get_current_actor),
    db: Session = Depends(security.get_db),
):
    """Заказ с позициями, историей и возвратами денег, только владельцу или администратору."""
    store = OrderStore(db)
    order = store.get_order(order_id)
    if not actor.is_admin and order.user_id != actor.id:
        raise Forbidden()
    return OrderOut.model_validate(order)


@router.post("/{order_id}/cancel")
def cancel_order(
    order_id: str,
    body: NotesIn | None = None,
    actor: Actor = Depends(security.get_current_actor),
    lifecycle: OrderLifecycle = Depends(get_lifecycle),
):
    notes = body.notes if body else None
    return lifecycle.cancel_order(order_id, actor, notes=notes).to_dict()


@router.post("/{order_id}/return")
def request_return(
    order_id: str,
    body: ReturnRequestIn,
    actor: Actor = Depends(security.get_current_actor),
    lifecycle: OrderLifecycle = Depends(get_lifecycle),
):
    return lifecycle.request_return(order_id, actor, notes=body.reason, item_ids=body.item_ids).to_dict()
