class MarketplaceError(Exception):
    status_code = 400
    default_message = "Request failed"

    def __init__(self, message: str = None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message

    @property
    def status(self) -> str:
        return "error" if self.status_code >= 500 else "fail"


class ValidationError(MarketplaceError):
    status_code = 400
    default_message = "Invalid request"


class NotFoundError(MarketplaceError):
    status_code = 404
    default_message = "Not found"


class ConflictError(MarketplaceError):
    status_code = 409
    default_message = "Conflicting state"


class ExpiredError(MarketplaceError):
    status_code = 400
    default_message = "Order has expired"


class InvalidTransitionError(MarketplaceError):
    status_code = 400

    def __init__(self, current: str, requested: str):
        super().__init__(f"Cannot change order status from '{current}' to '{requested}'")
        self.current = current
        self.requested = requested


class PaymentError(MarketplaceError):
    status_code = 400
    default_message = "Payment failed"


class PaymentRateLimitError(PaymentError):
    status_code = 429
    default_message = "Payment provider is busy, please retry shortly"


class PaymentUnavailableError(PaymentError):
    status_code = 503
    default_message = "Payment provider is unavailable"


class InternalError(MarketplaceError):
    status_code = 500
    default_message = "Something went wrong, please try again"
