import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import stripe

from marketplace.config import settings
from marketplace.errors import PaymentError, PaymentRateLimitError, PaymentUnavailableError

logger = logging.getLogger(__name__)

stripe.api_key = settings.stripe_secret_key


@dataclass
class CheckoutSession:
    id: str
    url: Optional[str]
    status: Optional[str]               # open | complete | expired
    payment_status: Optional[str]       # paid | unpaid | no_payment_required
    payment_intent: Optional[str]
    expires_at: Optional[int]
    metadata: Dict[str, str] = field(default_factory=dict)

    @property
    def is_open(self) -> bool:
        return self.status == "open"

    @property
    def is_paid(self) -> bool:
        return self.payment_status == "paid"


def _to_session(obj) -> CheckoutSession:
    intent = obj["payment_intent"] if "payment_intent" in obj else None
    if intent is not None and not isinstance(intent, str):
        intent = intent["id"]
    return CheckoutSession(
        id=obj["id"],
        url=obj["url"] if "url" in obj else None,
        status=obj["status"] if "status" in obj else None,
        payment_status=obj["payment_status"] if "payment_status" in obj else None,
        payment_intent=intent,
        expires_at=obj["expires_at"] if "expires_at" in obj else None,
        metadata=dict(obj["metadata"] or {}) if "metadata" in obj else {},
    )


def _translate(exc: Exception) -> PaymentError:
    if isinstance(exc, stripe.error.RateLimitError):
        return PaymentRateLimitError()
    if isinstance(exc, (stripe.error.APIConnectionError, stripe.error.APIError)):
        return PaymentUnavailableError()
    if isinstance(exc, stripe.error.InvalidRequestError):
        return PaymentError(getattr(exc, "user_message", None) or "Invalid payment request")
    if isinstance(exc, stripe.error.CardError):
        return PaymentError(getattr(exc, "user_message", None) or "Card was declined")
    return PaymentError()


def create_checkout_session(
    line_items: List[dict],
    metadata: Dict[str, str],
    expires_at: int,
    idempotency_key: str,
) -> CheckoutSession:
    try:
        obj = stripe.checkout.Session.create(
            payment_method_types=["card"],
            line_items=line_items,
            mode="payment",
            success_url=settings.success_url,
            cancel_url=settings.cancel_url,
            expires_at=expires_at,
            metadata=metadata,
            idempotency_key=idempotency_key,
        )
    except stripe.error.StripeError as exc:
        logger.warning("stripe.session_create_failed key=%s error=%s", idempotency_key, exc)
        raise _translate(exc) from exc
    return _to_session(obj)


def retrieve_checkout_session(session_id: str) -> CheckoutSession:
    try:
        obj = stripe.checkout.Session.retrieve(session_id)
    except stripe.error.InvalidRequestError as exc:
        raise PaymentError("Session not found") from exc
    except stripe.error.StripeError as exc:
        raise _translate(exc) from exc
    if not obj:
        raise PaymentError("Session not found")
    return _to_session(obj)


def expire_checkout_session(session_id: str) -> CheckoutSession:
    try:
        obj = stripe.checkout.Session.expire(session_id)
    except stripe.error.StripeError as exc:
        raise _translate(exc) from exc
    return _to_session(obj)


def refund_payment(payment_intent_id: str, reason: str, order_code: str):
    try:
        return stripe.Refund.create(
            payment_intent=payment_intent_id,
            metadata={"orderCode": order_code, "reason": reason},
            idempotency_key=f"refund:{payment_intent_id}",
        )
    except stripe.error.StripeError as exc:
        raise _translate(exc) from exc


def construct_event(payload: bytes, signature: str):
    return stripe.Webhook.construct_event(payload, signature, settings.stripe_webhook_secret)
