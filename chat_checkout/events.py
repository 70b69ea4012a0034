"""
Payment event channel and provider webhook parsing.

Providers report payment outcomes to webhooks. The parsers below verify
and translate those callbacks into PaymentEvents, which are published on a
per-transaction channel of the event bus.
"""

import hmac
import json
import logging
import threading
from typing import Any, Dict, Mapping, Optional, Tuple

import stripe

from chat_checkout import config
from chat_checkout.collaborators import PaymentEventHandler, TransportErrorHandler
from chat_checkout.errors import ValidationError, WebhookVerificationError
from chat_checkout.models import PaymentEvent, PaymentOutcome, PaymentProvider

logger = logging.getLogger(__name__)


class InMemoryPaymentEventBus:
    """
    Process-local publish/subscribe keyed by transaction id.

    Handlers run on the publisher's thread, outside the bus lock.
    """

    def __init__(self):
        self._subscribers: Dict[str, Tuple[PaymentEventHandler, Optional[TransportErrorHandler]]] = {}
        self._lock = threading.Lock()

    def subscribe(
        self,
        transaction_id: str,
        handler: PaymentEventHandler,
        on_error: Optional[TransportErrorHandler] = None,
    ) -> None:
        with self._lock:
            if transaction_id in self._subscribers:
                logger.warning("Replacing subscriber for transaction %s", transaction_id)
            self._subscribers[transaction_id] = (handler, on_error)

    def unsubscribe(self, transaction_id: str) -> None:
        with self._lock:
            self._subscribers.pop(transaction_id, None)

    def is_subscribed(self, transaction_id: str) -> bool:
        with self._lock:
            return transaction_id in self._subscribers

    def publish(self, event: PaymentEvent) -> bool:
        """
        Deliver an event to the subscriber of its transaction.

        Returns:
            True if a subscriber received it, False if nobody listens
        """
        with self._lock:
            subscriber = self._subscribers.get(event.transaction_id)
        if subscriber is None:
            logger.info("No subscriber for transaction %s, event dropped", event.transaction_id)
            return False

        handler, _ = subscriber
        handler(event)
        return True

    def report_transport_error(self, transaction_id: str, error: Exception) -> bool:
        """Tell the subscriber that its channel failed."""
        with self._lock:
            subscriber = self._subscribers.get(transaction_id)
        if subscriber is None or subscriber[1] is None:
            logger.warning("Transport error for transaction %s with no error handler: %s", transaction_id, error)
            return False

        _, on_error = subscriber
        on_error(transaction_id, error)
        return True


# =============================================================================
# Webhook parsing
# =============================================================================

BICTORYS_OUTCOMES = {
    "succeeded": PaymentOutcome.SUCCESS,
    "failed": PaymentOutcome.FAILURE,
    "cancelled": PaymentOutcome.FAILURE,
}


def parse_bictorys_webhook(
    payload: Mapping[str, Any],
    secret_header: Optional[str],
    secret: Optional[str] = None,
) -> Optional[PaymentEvent]:
    """
    Verify and translate a Bictorys callback.

    Args:
        payload: Decoded JSON body
        secret_header: Value of the X-Secret-Key header
        secret: Expected secret; the configured one by default

    Returns:
        A PaymentEvent for terminal statuses, None for pending ones

    Raises:
        WebhookVerificationError: If the secret does not match
        ValidationError: If the payload lacks merchantReference or status
    """
    expected = secret or config.BICTORYS_WEBHOOK_SECRET
    if not expected or not secret_header or not hmac.compare_digest(secret_header, expected):
        logger.warning("Invalid Bictorys webhook secret")
        raise WebhookVerificationError("Invalid signature")

    reference = payload.get("merchantReference")
    status = payload.get("status")
    if not reference or not status:
        raise ValidationError("Invalid payload", payload={"keys": sorted(payload)})

    outcome = BICTORYS_OUTCOMES.get(str(status).lower())
    if outcome is None:
        logger.info("Bictorys transaction %s is still %s", reference, status)
        return None

    provider = None
    method = str(payload.get("paymentMethod") or payload.get("paymentType") or "").lower()
    if "wave" in method:
        provider = PaymentProvider.WAVE
    elif "orange" in method:
        provider = PaymentProvider.ORANGE_MONEY

    return PaymentEvent(
        transaction_id=reference,
        outcome=outcome,
        reason=None if outcome is PaymentOutcome.SUCCESS else str(status).lower(),
        provider=provider,
        amount=payload.get("amount"),
    )


def parse_stripe_event(
    raw_body: bytes,
    signature_header: Optional[str],
    secret: Optional[str] = None,
    tolerance: int = stripe.Webhook.DEFAULT_TOLERANCE,
) -> Optional[PaymentEvent]:
    """
    Verify and translate a Stripe webhook.

    Handles checkout.session.completed, checkout.session.expired and
    payment_intent.payment_failed; other event types return None.

    Raises:
        WebhookVerificationError: If the Stripe-Signature header does not verify
        ValidationError: If the body is not JSON or carries no transaction reference
    """
    secret = secret or config.STRIPE_WEBHOOK_SECRET
    if not secret or not signature_header:
        logger.warning("Missing Stripe webhook secret or signature header")
        raise WebhookVerificationError("Invalid signature")

    payload = raw_body.decode("utf-8") if isinstance(raw_body, bytes) else raw_body
    try:
        stripe.WebhookSignature.verify_header(payload, signature_header, secret, tolerance)
    except stripe.SignatureVerificationError as e:
        logger.warning("Invalid Stripe signature: %s", e)
        raise WebhookVerificationError("Invalid signature") from e

    try:
        event = json.loads(payload)
    except ValueError as e:
        raise ValidationError("Invalid payload") from e

    event_type = event.get("type")
    obj = (event.get("data") or {}).get("object") or {}
    metadata = obj.get("metadata") or {}
    transaction_id = metadata.get("transaction_id") or obj.get("client_reference_id")

    if event_type == "checkout.session.completed":
        outcome, reason = PaymentOutcome.SUCCESS, None
    elif event_type == "payment_intent.payment_failed":
        error = obj.get("last_payment_error") or {}
        outcome, reason = PaymentOutcome.FAILURE, error.get("message") or "card declined"
    elif event_type == "checkout.session.expired":
        outcome, reason = PaymentOutcome.FAILURE, "checkout expired"
    else:
        logger.info("Ignoring Stripe event %s", event_type)
        return None

    if not transaction_id:
        raise ValidationError("Stripe event carries no transaction reference", payload={"type": event_type})

    amount = obj.get("amount_total") or obj.get("amount")
    return PaymentEvent(
        transaction_id=transaction_id,
        outcome=outcome,
        reason=reason,
        provider=PaymentProvider.CARD,
        amount=amount,
    )
