import logging
import secrets
import time
import uuid
from collections import OrderedDict
from datetime import timedelta
from typing import Dict, List, Tuple

from sqlalchemy import select, update

from marketplace.config import settings
from marketplace.database import get_session, run_in_transaction, utcnow
from marketplace.errors import ConflictError, ExpiredError, NotFoundError, ValidationError
from marketplace.jobs import JobQueue, ORDER_EXPIRATION_QUEUE, order_job_id
from marketplace.models import Order, OrderStatus, Product
from marketplace.money import line_total, to_major, to_minor

logger = logging.getLogger(__name__)


def generate_order_code() -> str:
    return f"ORD-{int(time.time() * 1000)}-{secrets.token_hex(3).upper()}"


def is_valid_id(value: str) -> bool:
    try:
        uuid.UUID(value)
    except (TypeError, ValueError, AttributeError):
        return False
    return True


def parse_products(raw: str) -> List[Tuple[str, int]]:
    """Parse ``qty_id#qty_id`` into ``[(id, qty)]``, summing duplicate ids."""
    if not raw or not raw.strip():
        raise ValidationError("Products are required")
    merged: Dict[str, int] = OrderedDict()
    for chunk in raw.split("#"):
        chunk = chunk.strip()
        if not chunk:
            continue
        qty, sep, product_id = chunk.partition("_")
        if not sep or not qty.isdigit() or int(qty) <= 0:
            raise ValidationError(f"Invalid product entry '{chunk}'")
        if not is_valid_id(product_id):
            raise ValidationError("Invalid Product Id")
        merged[product_id] = merged.get(product_id, 0) + int(qty)
    if not merged:
        raise ValidationError("Products are required")
    return list(merged.items())


def order_ttl() -> timedelta:
    return timedelta(seconds=settings.order_ttl_seconds)


def ensure_not_expired(first_order: Order, now=None) -> None:
    now = now or utcnow()
    if now - first_order.created_at > order_ttl():
        raise ExpiredError("Order has expired, please order again")


def group_totals(orders) -> Tuple[int, int]:
    """(total, shipping) in minor units."""
    total = sum(line_total(o.price, o.shipping_cost, o.quantity) for o in orders)
    shipping = sum(to_minor(o.shipping_cost) * o.quantity for o in orders)
    return total, shipping


class OrderService:
    """Turns a cart submission into an order group and schedules its expiry."""

    def __init__(self, session_factory=get_session, queue: JobQueue = None):
        self._session_factory = session_factory
        self.queue = queue or JobQueue(ORDER_EXPIRATION_QUEUE, session_factory=session_factory)

    def create_order(self, *, user_id: str, products: str) -> Dict:
        requested = parse_products(products)
        ids = [pid for pid, _ in requested]

        def work(session):
            found = {
                p.id: p
                for p in session.execute(select(Product).where(Product.id.in_(ids))).scalars()
            }
            missing = [pid for pid in ids if pid not in found]
            if missing:
                raise NotFoundError(f"Products not found: {', '.join(missing)}")

            for pid, qty in requested:
                product = found[pid]
                if qty > product.inventory:
                    raise ConflictError(f"Insufficient inventory for '{product.name}'")

            code = generate_order_code()
            now = utcnow()
            orders = [
                Order(
                    id=str(uuid.uuid4()),
                    code=code,
                    user_id=user_id,
                    product_id=pid,
                    merchant_id=found[pid].merchant_id,
                    quantity=qty,
                    price=found[pid].price,
                    shipping_cost=found[pid].shipping_cost or 0,
                    status=OrderStatus.PENDING,
                    inventory_reserved=False,
                    is_paid=False,
                    created_at=now,
                )
                for pid, qty in requested
            ]
            session.add_all(orders)
            # Enqueued in the same transaction: no job, no orders
            self.queue.add(session, order_job_id(code), {"code": code}, order_ttl())
            total, _ = group_totals(orders)
            return code, total, len(orders), now + order_ttl()

        code, total, count, expires_at = run_in_transaction(work, session_factory=self._session_factory)
        logger.info("order.created code=%s user=%s lines=%s total=%s", code, user_id, count, total)
        return {
            "code": code,
            "total": to_major(total),
            "discount": 0,
            "orderCount": count,
            "expiresAt": expires_at.isoformat() + "Z",
        }

    def get_order_group(self, *, code: str, user_id: str) -> Dict:
        with self._session_factory() as session:
            orders = list(
                session.execute(
                    select(Order).where(Order.code == code, Order.user_id == user_id).order_by(Order.created_at)
                ).scalars()
            )
            if not orders:
                raise NotFoundError("Order not found")
            total, shipping = group_totals(orders)
            return {
                "code": code,
                "total": to_major(total),
                "totalShipping": to_major(shipping),
                "items": [
                    {
                        "id": o.id,
                        "productId": o.product_id,
                        "quantity": o.quantity,
                        "price": float(o.price),
                        "status": o.status,
                        "payment": o.payment,
                        "isPaid": o.is_paid,
                        "inventoryReserved": o.inventory_reserved,
                    }
                    for o in orders
                ],
            }


def claim_reservation(session, order_id: str) -> bool:
    """Take ownership of a line's reservation flag.

    Settlement, cash-on-delivery and expiry all race for the same flag;
    only the caller whose update flips it may move the reserved units.
    """
    stmt = (
        update(Order)
        .where(Order.id == order_id, Order.inventory_reserved.is_(True), Order.is_paid.is_(False))
        .values(inventory_reserved=False)
        .execution_options(synchronize_session=False)
    )
    return session.execute(stmt).rowcount == 1
