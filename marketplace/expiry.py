import logging
from datetime import timedelta
from typing import Dict

from sqlalchemy import delete, select, update

from marketplace import inventory
from marketplace.config import settings
from marketplace.database import get_session, run_in_transaction, utcnow
from marketplace.errors import ConflictError
from marketplace.models import Order, OrderStatus
from marketplace.orders import claim_reservation

logger = logging.getLogger(__name__)


class ExpiryService:
    """Releases order groups nobody paid for in time.

    Only ``pending`` unpaid lines are touched, so running twice, or after
    settlement already happened, changes nothing.
    """

    def __init__(self, session_factory=get_session):
        self._session_factory = session_factory

    def expire_order_group(self, code: str) -> int:
        def work(session):
            orders = list(
                session.execute(
                    select(Order).where(
                        Order.code == code,
                        Order.status == OrderStatus.PENDING,
                        Order.is_paid.is_(False),
                    )
                ).scalars()
            )
            if not orders:
                return 0
            released = 0
            for order in orders:
                if claim_reservation(session, order.id):
                    if not inventory.release(session, order.product_id, order.quantity):
                        raise ConflictError(
                            f"Reserved inventory for product {order.product_id} is lower than order {order.id}"
                        )
                    released += order.quantity
            expired = session.execute(
                update(Order)
                .where(Order.code == code, Order.status == OrderStatus.PENDING, Order.is_paid.is_(False))
                .values(status=OrderStatus.EXPIRED, expired_at=utcnow(), inventory_reserved=False)
                .execution_options(synchronize_session=False)
            ).rowcount
            logger.info("expiry.expired code=%s lines=%s released_units=%s", code, expired, released)
            return expired

        return run_in_transaction(work, session_factory=self._session_factory)

    def handle(self, payload: Dict) -> None:
        self.expire_order_group(payload["code"])

    def purge_expired(self, retention: timedelta = None) -> int:
        retention = retention or timedelta(days=settings.expired_order_retention_days)
        cutoff = utcnow() - retention
        with self._session_factory() as session:
            purged = session.execute(
                delete(Order)
                .where(Order.status == OrderStatus.EXPIRED, Order.expired_at < cutoff)
                .execution_options(synchronize_session=False)
            ).rowcount
        if purged:
            logger.info("expiry.purged rows=%s cutoff=%s", purged, cutoff.isoformat())
        return purged
