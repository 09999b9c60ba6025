"""Seller-side order lifecycle after settlement.

    pending    -> processing | cancel
    processing -> confirm | cancel
    confirm    -> delivery | cancel
    delivery   -> success | cancel
    cancel     -> confirm

Entering ``confirm`` takes the line's quantity out of ``inventory``;
leaving ``confirm`` for ``cancel`` puts it back.
"""
import logging
from typing import Dict, List, Optional

from sqlalchemy import select, update

from marketplace import inventory
from marketplace.database import get_session, run_in_transaction
from marketplace.errors import ConflictError, InvalidTransitionError, NotFoundError
from marketplace.models import Order, OrderStatus, PaymentMethod
from marketplace.notifications import Notifier

logger = logging.getLogger(__name__)

TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.PROCESSING, OrderStatus.CANCEL},
    OrderStatus.PROCESSING: {OrderStatus.CONFIRM, OrderStatus.CANCEL},
    OrderStatus.CONFIRM: {OrderStatus.DELIVERY, OrderStatus.CANCEL},
    OrderStatus.DELIVERY: {OrderStatus.SUCCESS, OrderStatus.CANCEL},
    OrderStatus.CANCEL: {OrderStatus.CONFIRM},
}


def machine_state(status: str) -> str:
    # A cash-on-delivery order enters the seller's queue as "order placed"
    return OrderStatus.PENDING if status == OrderStatus.ORDER_PLACED else status


def can_transition(current: str, requested: str) -> bool:
    return requested in TRANSITIONS.get(machine_state(current), ())


def check_transition(current: str, requested: str) -> None:
    if not can_transition(current, requested):
        raise InvalidTransitionError(current, requested)


def is_settled(order: Order) -> bool:
    return order.is_paid or order.payment == PaymentMethod.COD


class FulfillmentService:
    def __init__(self, session_factory=get_session, notifier: Notifier = None):
        self._session_factory = session_factory
        self.notifier = notifier

    def update_status(self, *, merchant_id: str, code: str, status: str, order_id: Optional[str] = None) -> Dict:
        def work(session):
            stmt = select(Order).where(Order.code == code, Order.merchant_id == merchant_id)
            if order_id:
                stmt = stmt.where(Order.id == order_id)
            lines = list(session.execute(stmt.order_by(Order.created_at, Order.id)).scalars())
            if not lines:
                raise NotFoundError("No order found with that code")

            for line in lines:
                if not is_settled(line):
                    raise ConflictError(f"Order line {line.id} has not been placed yet")
                check_transition(line.status, status)

            for line in lines:
                current = machine_state(line.status)
                if status == OrderStatus.CONFIRM:
                    if not inventory.decrement(session, line.product_id, line.quantity):
                        raise ConflictError(f"Insufficient inventory to confirm order line {line.id}")
                elif status == OrderStatus.CANCEL and current == OrderStatus.CONFIRM:
                    inventory.restock(session, line.product_id, line.quantity)
                moved = session.execute(
                    update(Order)
                    .where(Order.id == line.id, Order.status == line.status)
                    .values(status=status)
                    .execution_options(synchronize_session=False)
                ).rowcount
                if not moved:
                    raise ConflictError(f"Order line {line.id} was changed concurrently")
            if status == OrderStatus.CONFIRM:
                inventory.mark_out_of_stock(session, [line.product_id for line in lines])
            return lines

        lines = run_in_transaction(work, session_factory=self._session_factory)
        logger.info("fulfillment.status code=%s merchant=%s status=%s lines=%s", code, merchant_id, status, len(lines))
        if self.notifier is not None:
            for user_id in sorted({line.user_id for line in lines}):
                self.notifier.notify(user_id, "order", f"Your order {code} is now {status}", link=f"orders/{code}")
        return {"message": "Order status updated", "code": code, "status": status, "updated": len(lines)}

    def list_orders(self, *, merchant_id: str, status: Optional[str] = None) -> List[Dict]:
        with self._session_factory() as session:
            stmt = select(Order).where(Order.merchant_id == merchant_id)
            if status:
                stmt = stmt.where(Order.status == status)
            rows = session.execute(stmt.order_by(Order.created_at.desc())).scalars()
            return [
                {
                    "id": o.id,
                    "code": o.code,
                    "productId": o.product_id,
                    "quantity": o.quantity,
                    "price": float(o.price),
                    "status": o.status,
                    "payment": o.payment,
                    "isPaid": o.is_paid,
                    "createdAt": o.created_at.isoformat(),
                }
                for o in rows
            ]
