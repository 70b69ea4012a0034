"""Exception taxonomy for the checkout engine."""

from typing import Any, Dict, Optional


class CheckoutError(Exception):
    """Base exception for all checkout errors."""

    code = "CHECKOUT_ERROR"

    def __init__(self, message: str = "An internal error occurred", payload: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.payload = payload

    def to_dict(self) -> Dict[str, Any]:
        rv = dict(self.payload or ())
        rv["message"] = self.message
        rv["code"] = self.code
        return rv


class ValidationError(CheckoutError):
    """Bad user input for the current step; recoverable with a re-prompt."""

    code = "VALIDATION_ERROR"


class CollaboratorError(CheckoutError):
    """An inventory, delivery or catalog lookup failed."""

    code = "COLLABORATOR_ERROR"


class OutOfStockError(CollaboratorError):
    """The inventory refused the requested quantity."""

    code = "OUT_OF_STOCK"

    def __init__(self, product_id: str, quantity: int, product_name: Optional[str] = None):
        super().__init__(
            f"Product {product_id} is not available in quantity {quantity}",
            payload={"product_id": product_id, "quantity": quantity, "product_name": product_name},
        )
        self.product_id = product_id
        self.quantity = quantity


class PaymentProviderError(CheckoutError):
    """Payment initiation failed at or before the provider call."""

    code = "PAYMENT_PROVIDER_ERROR"


class WebhookVerificationError(CheckoutError):
    """A provider callback failed its signature or secret check."""

    code = "INVALID_WEBHOOK"


class ReconciliationTimeoutError(CheckoutError):
    """No terminal payment event arrived within the configured bound."""

    code = "RECONCILIATION_TIMEOUT"


class SessionExpiredError(CheckoutError):
    """The session is gone; the customer must start over."""

    code = "SESSION_EXPIRED"

    def __init__(self, session_id: str):
        super().__init__(f"Session {session_id} has expired", payload={"session_id": session_id})
        self.session_id = session_id


class InvalidTransitionError(CheckoutError):
    """A status change that the order or payment lifecycle does not allow."""

    code = "INVALID_TRANSITION"
