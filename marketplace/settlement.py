"""Settlement engine.

Turns a paid checkout session (or a cash-on-delivery confirmation) into
sold units, seller credit and payment history. A group settles or refunds
as a whole; partial settlement is never persisted.
"""
import logging
from collections import defaultdict
from typing import Dict, List, Optional

from sqlalchemy import select, update

from marketplace import inventory
from marketplace.checkout import load_pending_group
from marketplace.database import get_session, run_in_transaction, utcnow
from marketplace.errors import ConflictError, NotFoundError, PaymentError, ValidationError
from marketplace.jobs import JobQueue, ORDER_EXPIRATION_QUEUE, order_job_id
from marketplace.models import Order, OrderStatus, PaymentHistory, PaymentMethod, Product, Seller
from marketplace.money import line_total, to_major
from marketplace.notifications import Notifier, record_event
from marketplace.orders import claim_reservation, ensure_not_expired, group_totals
from marketplace.stripe_service import (
    CheckoutSession,
    expire_checkout_session,
    refund_payment,
    retrieve_checkout_session,
)

logger = logging.getLogger(__name__)

SETTLEABLE = (OrderStatus.PENDING, OrderStatus.EXPIRED)
REFUNDED = (OrderStatus.REFUND, OrderStatus.REFUND_FAILED)
INSUFFICIENT_INVENTORY = "insufficient_inventory"
ORDER_NOT_PAYABLE = "order_not_payable"


class InventoryShortfall(Exception):
    def __init__(self, products: List[str]):
        super().__init__(", ".join(products))
        self.products = products


class SettlementService:
    def __init__(self, session_factory=get_session, queue: JobQueue = None, notifier: Notifier = None):
        self._session_factory = session_factory
        self.queue = queue or JobQueue(ORDER_EXPIRATION_QUEUE, session_factory=session_factory)
        self.notifier = notifier

    # -- card payments --------------------------------------------------

    def settle_checkout(self, *, session_id: str) -> Dict:
        checkout = retrieve_checkout_session(session_id)
        if not checkout.is_paid:
            raise PaymentError("Payment not completed")
        code = checkout.metadata.get("orderCode")
        if not code:
            raise PaymentError("Payment session is not linked to an order")

        outcome = self._existing_outcome(code, checkout)
        if outcome is not None:
            return outcome

        try:
            settled = run_in_transaction(
                lambda s: self._settle(s, code, checkout), session_factory=self._session_factory
            )
        except InventoryShortfall as shortfall:
            return self._refund(code, checkout, shortfall.products)
        except ConflictError:
            # Another settlement or a cash-on-delivery confirmation committed first
            outcome = self._existing_outcome(code, checkout)
            if outcome is not None:
                return outcome
            raise

        total = sum(line_total(o.price, o.shipping_cost, o.quantity) for o in settled)
        self.queue.remove(order_job_id(code))
        self._after_settlement(settled, kind="purchase", message=f"Order {code} has been paid")
        logger.info("settlement.settled code=%s session=%s total=%s", code, checkout.id, total)
        return {"status": "success", "orderCode": code, "totalAmount": to_major(total)}

    def _existing_outcome(self, code: str, checkout: CheckoutSession) -> Optional[Dict]:
        """Result for a group this payment can no longer settle, or None."""
        with self._session_factory() as session:
            orders = list(session.execute(select(Order).where(Order.code == code)).scalars())
        if not orders:
            raise NotFoundError("Order not found")
        total, _ = group_totals(orders)
        paid = [o for o in orders if o.is_paid]
        if paid:
            if paid[0].stripe_session_id not in (None, checkout.id):
                # Settled by a different session; this one is a second charge
                return self._refund_unpayable(code, checkout, orders)
            return {"status": "already_processed", "orderCode": code, "totalAmount": to_major(total)}
        if any(o.status in REFUNDED for o in orders):
            return {
                "status": "refunded",
                "orderCode": code,
                "totalAmount": to_major(total),
                "reason": orders[0].refund_reason,
                "refundStatus": "failed" if orders[0].status == OrderStatus.REFUND_FAILED else "succeeded",
            }
        if not any(o.status in SETTLEABLE for o in orders):
            return self._refund_unpayable(code, checkout, orders)
        return None

    def _settle(self, session, code: str, checkout: CheckoutSession) -> List[Order]:
        orders = list(
            session.execute(
                select(Order)
                .where(Order.code == code, Order.is_paid.is_(False), Order.status.in_(SETTLEABLE))
                .order_by(Order.created_at, Order.id)
            ).scalars()
        )
        if not orders:
            raise ConflictError("Order is already settled")
        names = {
            p.id: p.name
            for p in session.execute(
                select(Product).where(Product.id.in_([o.product_id for o in orders]))
            ).scalars()
        }

        short = []
        for order in orders:
            if claim_reservation(session, order.id):
                converted = inventory.commit_reserved(session, order.product_id, order.quantity)
            else:
                converted = inventory.sell_available(session, order.product_id, order.quantity)
            if not converted:
                short.append(names.get(order.product_id, order.product_id))
        if short:
            raise InventoryShortfall(short)

        now = utcnow()
        paid = session.execute(
            update(Order)
            .where(Order.code == code, Order.is_paid.is_(False), Order.status.in_(SETTLEABLE))
            .values(
                is_paid=True,
                status=OrderStatus.CONFIRM,
                payment=PaymentMethod.STRIPE,
                stripe_session_id=checkout.id,
                inventory_reserved=False,
                paid_at=now,
                expired_at=None,
            )
            .execution_options(synchronize_session=False)
        ).rowcount
        if paid != len(orders):
            raise ConflictError("Order is already settled")

        by_merchant = defaultdict(int)
        for order in orders:
            by_merchant[order.merchant_id] += line_total(order.price, order.shipping_cost, order.quantity)
        for merchant_id, amount in by_merchant.items():
            credited = session.execute(
                update(Seller)
                .where(Seller.id == merchant_id)
                .values(balance=Seller.balance + amount)
                .execution_options(synchronize_session=False)
            ).rowcount
            if not credited:
                raise NotFoundError(f"Merchant {merchant_id} not found")
            session.add(
                PaymentHistory(
                    customer_id=orders[0].user_id,
                    merchant_id=merchant_id,
                    payment_method=PaymentMethod.STRIPE,
                    amount=amount,
                    order_code=code,
                    status="income",
                )
            )

        inventory.mark_out_of_stock(session, [o.product_id for o in orders])
        return orders

    def _refund(self, code: str, checkout: CheckoutSession, products: List[str]) -> Dict:
        reason = f"{INSUFFICIENT_INVENTORY}: {', '.join(products)}"

        def work(session):
            orders = list(
                session.execute(
                    select(Order).where(
                        Order.code == code, Order.is_paid.is_(False), Order.status.in_(SETTLEABLE)
                    )
                ).scalars()
            )
            for order in orders:
                # The buyer is being refunded; held units go back on sale
                if claim_reservation(session, order.id):
                    inventory.release(session, order.product_id, order.quantity)
            session.execute(
                update(Order)
                .where(Order.code == code, Order.is_paid.is_(False), Order.status.in_(SETTLEABLE))
                .values(
                    status=OrderStatus.REFUND,
                    payment=PaymentMethod.STRIPE,
                    stripe_session_id=checkout.id,
                    inventory_reserved=False,
                    refund_reason=reason,
                )
                .execution_options(synchronize_session=False)
            )
            return orders

        orders = run_in_transaction(work, session_factory=self._session_factory)
        self.queue.remove(order_job_id(code))

        refund_status = self._issue_refund(code, checkout, INSUFFICIENT_INVENTORY)
        if refund_status == "failed":
            with self._session_factory() as session:
                session.execute(
                    update(Order)
                    .where(Order.code == code, Order.status == OrderStatus.REFUND)
                    .values(status=OrderStatus.REFUND_FAILED)
                    .execution_options(synchronize_session=False)
                )

        total, _ = group_totals(orders)
        logger.warning("settlement.refunded code=%s products=%s status=%s", code, products, refund_status)
        if self.notifier is not None and orders:
            self.notifier.notify(
                orders[0].user_id,
                "payment",
                f"Order {code} could not be fulfilled and has been refunded",
            )
        return {
            "status": "refunded",
            "orderCode": code,
            "totalAmount": to_major(total),
            "reason": reason,
            "refundStatus": refund_status,
        }

    def _refund_unpayable(self, code: str, checkout: CheckoutSession, orders: List[Order]) -> Dict:
        # The group stays as it is; only the stray payment is returned
        refund_status = self._issue_refund(code, checkout, ORDER_NOT_PAYABLE)
        total, _ = group_totals(orders)
        logger.warning(
            "settlement.unpayable_refunded code=%s session=%s status=%s", code, checkout.id, refund_status
        )
        if self.notifier is not None:
            self.notifier.notify(
                orders[0].user_id,
                "payment",
                f"Payment for order {code} was not needed and has been refunded",
            )
        return {
            "status": "refunded",
            "orderCode": code,
            "totalAmount": to_major(total),
            "reason": ORDER_NOT_PAYABLE,
            "refundStatus": refund_status,
        }

    def _issue_refund(self, code: str, checkout: CheckoutSession, reason: str) -> str:
        try:
            if not checkout.payment_intent:
                raise PaymentError("Payment session has no payment intent")
            refund_payment(checkout.payment_intent, reason=reason, order_code=code)
        except PaymentError as exc:
            logger.error("settlement.refund_failed code=%s intent=%s error=%s", code, checkout.payment_intent, exc)
            return "failed"
        return "succeeded"

    # -- cash on delivery -----------------------------------------------

    def confirm_cash_on_delivery(self, *, code: str, user_id: str) -> Dict:
        def work(session):
            orders = load_pending_group(session, code, user_id)
            if not orders:
                raise NotFoundError("Invalid order code")
            ensure_not_expired(orders[0])
            products = {
                p.id: p
                for p in session.execute(
                    select(Product).where(Product.id.in_([o.product_id for o in orders]))
                ).scalars()
            }

            # Everything is checked before the first write
            for order in orders:
                product = products.get(order.product_id)
                if product is None:
                    raise NotFoundError(f"Product '{order.product_id}' not found")
                if not product.cash_on_delivery:
                    raise ValidationError(f"Cash on delivery is not available for '{product.name}'")
                held = order.quantity if order.inventory_reserved else 0
                if product.inventory + held < order.quantity:
                    raise ConflictError(f"Insufficient inventory for '{product.name}'")

            for order in orders:
                if claim_reservation(session, order.id):
                    inventory.release(session, order.product_id, order.quantity)
                if not inventory.sell_available(session, order.product_id, order.quantity):
                    raise ConflictError(f"Insufficient inventory for '{products[order.product_id].name}'")

            placed = session.execute(
                update(Order)
                .where(Order.code == code, Order.status == OrderStatus.PENDING, Order.is_paid.is_(False))
                .values(status=OrderStatus.ORDER_PLACED, payment=PaymentMethod.COD, inventory_reserved=False)
                .execution_options(synchronize_session=False)
            ).rowcount
            if placed != len(orders):
                raise ConflictError("Order is already being processed")
            inventory.mark_out_of_stock(session, list(products))
            return orders

        orders = run_in_transaction(work, session_factory=self._session_factory)
        self.queue.remove(order_job_id(code))
        if orders[0].stripe_session_id:
            self._close_card_session(orders[0].stripe_session_id)
        self._after_settlement(orders, kind="order", message=f"New cash on delivery order {code}")
        logger.info("settlement.cod_placed code=%s lines=%s", code, len(orders))
        return {"message": "Order placed with cash on delivery", "orderCode": code}

    # -- side effects ---------------------------------------------------

    def _close_card_session(self, session_id: str) -> None:
        # Best-effort; a payment that still lands is refunded at settlement
        try:
            expire_checkout_session(session_id)
        except PaymentError as exc:
            logger.warning("settlement.session_expire_failed session=%s error=%s", session_id, exc)

    def _after_settlement(self, orders: List[Order], kind: str, message: str) -> None:
        try:
            with self._session_factory() as session:
                for order in orders:
                    record_event(session, kind, order.product_id, order.user_id, per_user=(kind != "purchase"))
        except Exception:
            logger.warning("analytics.failed kind=%s", kind, exc_info=True)

        if self.notifier is None:
            return
        for merchant_id in sorted({o.merchant_id for o in orders}):
            self.notifier.notify(merchant_id, "order", message, link="orders")
