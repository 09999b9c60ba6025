import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, List

from sqlalchemy import select, update

from marketplace import inventory
from marketplace.config import settings
from marketplace.database import get_session, run_in_transaction, utcnow
from marketplace.errors import ConflictError, NotFoundError, PaymentError, ValidationError
from marketplace.models import Order, OrderStatus, Product
from marketplace.money import to_major, to_minor
from marketplace.orders import ensure_not_expired, group_totals
from marketplace.stripe_service import CheckoutSession, create_checkout_session, retrieve_checkout_session

logger = logging.getLogger(__name__)

# Stripe rejects sessions expiring less than 30 minutes out by its own clock
SESSION_EXPIRY_SLACK = timedelta(minutes=1)


def session_expiry(now: datetime = None) -> int:
    """Session deadline as a unix timestamp, floored to the minute.

    The deadline is part of the idempotency key: a retry within the same
    minute replays the stored session, a later one asks for a new session
    instead of reusing a key with different parameters.
    """
    now = now or datetime.now(timezone.utc)
    deadline = now + timedelta(seconds=settings.checkout_session_ttl_seconds) + SESSION_EXPIRY_SLACK
    return int(deadline.timestamp()) // 60 * 60


def load_pending_group(session, code: str, user_id: str) -> List[Order]:
    stmt = (
        select(Order)
        .where(
            Order.code == code,
            Order.user_id == user_id,
            Order.status == OrderStatus.PENDING,
            Order.is_paid.is_(False),
        )
        .order_by(Order.created_at, Order.id)
    )
    return list(session.execute(stmt).scalars())


def _check_complete(product: Product) -> None:
    if not product.name or not product.images or to_minor(product.price) <= 0:
        raise ConflictError(f"Product '{product.name or product.id}' is not available for checkout")


def _line_item(order: Order, product: Product) -> dict:
    return {
        "price_data": {
            "currency": settings.currency,
            "product_data": {
                "name": product.name,
                "images": [product.images[0]],
            },
            "unit_amount": to_minor(order.price) + to_minor(order.shipping_cost),
        },
        "quantity": order.quantity,
    }


class CheckoutService:
    """Reserves a group's stock and opens a payment window for it."""

    def __init__(self, session_factory=get_session):
        self._session_factory = session_factory

    def create_checkout_session(self, *, code: str, user_id: str) -> Dict:
        with self._session_factory() as session:
            orders = load_pending_group(session, code, user_id)
            if not orders:
                raise NotFoundError("Invalid order code")
            ensure_not_expired(orders[0])
            already_reserved = all(o.inventory_reserved for o in orders)
            previous_session_id = orders[0].stripe_session_id

        if already_reserved and previous_session_id:
            existing = self._retrieve_open(previous_session_id)
            if existing is not None:
                logger.info("checkout.reused code=%s session=%s", code, existing.id)
                return self._response(existing, orders)

        if already_reserved:
            line_items, orders = self._line_items_for_reserved(code, user_id)
        else:
            line_items, orders = run_in_transaction(
                lambda s: self._reserve(s, code, user_id), session_factory=self._session_factory
            )

        total, shipping = group_totals(orders)
        expires_at = session_expiry()
        checkout = create_checkout_session(
            line_items=line_items,
            metadata={
                "userId": user_id,
                "orderCode": code,
                "totalAmount": str(total),
                "totalShipping": str(shipping),
            },
            expires_at=expires_at,
            idempotency_key=f"checkout:{code}:{previous_session_id or 'new'}:{expires_at}",
        )

        with self._session_factory() as session:
            session.execute(
                update(Order)
                .where(Order.code == code, Order.status == OrderStatus.PENDING, Order.is_paid.is_(False))
                .values(stripe_session_id=checkout.id)
                .execution_options(synchronize_session=False)
            )
        logger.info("checkout.session_created code=%s session=%s total=%s", code, checkout.id, total)
        return self._response(checkout, orders)

    def _retrieve_open(self, session_id: str):
        try:
            existing = retrieve_checkout_session(session_id)
        except PaymentError as exc:
            logger.warning("checkout.retrieve_failed session=%s error=%s", session_id, exc)
            return None
        return existing if existing.is_open else None

    def _products(self, session, orders) -> Dict[str, Product]:
        ids = [o.product_id for o in orders]
        return {p.id: p for p in session.execute(select(Product).where(Product.id.in_(ids))).scalars()}

    def _line_items_for_reserved(self, code: str, user_id: str):
        with self._session_factory() as session:
            orders = load_pending_group(session, code, user_id)
            if not orders:
                raise NotFoundError("Invalid order code")
            products = self._products(session, orders)
            items = []
            for order in orders:
                product = products.get(order.product_id)
                if product is None:
                    raise ConflictError(f"Product '{order.product_id}' is no longer available")
                _check_complete(product)
                items.append(_line_item(order, product))
            return items, orders

    def _reserve(self, session, code: str, user_id: str):
        orders = load_pending_group(session, code, user_id)
        if not orders:
            raise NotFoundError("Invalid order code")
        if any(o.inventory_reserved for o in orders):
            raise ConflictError("Checkout for this order is already in progress")
        products = self._products(session, orders)

        items = []
        for order in orders:
            product = products.get(order.product_id)
            if product is None:
                raise ConflictError(f"Product '{order.product_id}' is no longer available")
            _check_complete(product)
            if product.inventory < order.quantity:
                raise ConflictError(f"Insufficient inventory for '{product.name}'")
            items.append(_line_item(order, product))

        total, _ = group_totals(orders)
        if total < settings.min_charge_amount:
            raise ValidationError(
                f"Order total must be at least {to_major(settings.min_charge_amount):.2f}"
            )

        for order in orders:
            if not inventory.reserve(session, order.product_id, order.quantity):
                # Lost the race for the last units; the whole group rolls back
                raise ConflictError(f"Insufficient inventory for '{products[order.product_id].name}'")

        now = utcnow()
        marked = session.execute(
            update(Order)
            .where(
                Order.code == code,
                Order.status == OrderStatus.PENDING,
                Order.is_paid.is_(False),
                Order.inventory_reserved.is_(False),
            )
            .values(inventory_reserved=True, reserved_at=now)
            .execution_options(synchronize_session=False)
        ).rowcount
        if marked != len(orders):
            raise ConflictError("Checkout for this order is already in progress")
        logger.info("checkout.reserved code=%s lines=%s", code, len(orders))
        return items, orders

    def _response(self, checkout: CheckoutSession, orders) -> Dict:
        total, shipping = group_totals(orders)
        expires_at = None
        if checkout.expires_at:
            expires_at = datetime.fromtimestamp(checkout.expires_at, tz=timezone.utc).isoformat()
        return {
            "sessionId": checkout.id,
            "url": checkout.url,
            "totalAmount": to_major(total),
            "totalShipping": to_major(shipping),
            "expiresAt": expires_at,
            "itemCount": len(orders),
        }
