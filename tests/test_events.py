"""
Tests for the payment event bus and the provider webhook parsers.
"""

import hashlib
import hmac
import json
import time
from unittest.mock import Mock

import pytest

from chat_checkout.errors import ValidationError, WebhookVerificationError
from chat_checkout.events import (
    parse_bictorys_webhook, parse_stripe_event
)
from chat_checkout.models import PaymentEvent, PaymentOutcome, PaymentProvider

SECRET = "whsec_test"


def _stripe_header(body: bytes, secret: str = SECRET, timestamp: int = None) -> str:
    timestamp = timestamp or int(time.time())
    signature = hmac.new(secret.encode(), f"{timestamp}.".encode() + body, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def _stripe_body(event_type: str, **obj) -> bytes:
    return json.dumps({"id": "evt_1", "type": event_type, "data": {"object": obj}}).encode()


# =============================================================================
# Event bus
# =============================================================================

class TestInMemoryPaymentEventBus:

    def test_publish_reaches_subscriber(self, bus):
        handler = Mock()
        bus.subscribe("tx-1", handler)
        event = PaymentEvent(transaction_id="tx-1", outcome=PaymentOutcome.SUCCESS)

        assert bus.publish(event)
        handler.assert_called_once_with(event)

    def test_events_are_keyed_by_transaction(self, bus):
        first, second = Mock(), Mock()
        bus.subscribe("tx-1", first)
        bus.subscribe("tx-2", second)

        bus.publish(PaymentEvent(transaction_id="tx-2", outcome=PaymentOutcome.FAILURE))

        first.assert_not_called()
        second.assert_called_once()

    def test_unsubscribed_events_are_dropped(self, bus):
        handler = Mock()
        bus.subscribe("tx-1", handler)
        bus.unsubscribe("tx-1")

        assert not bus.publish(PaymentEvent(transaction_id="tx-1", outcome=PaymentOutcome.SUCCESS))
        handler.assert_not_called()
        assert not bus.is_subscribed("tx-1")

    def test_transport_error_goes_to_error_handler(self, bus):
        on_error = Mock()
        bus.subscribe("tx-1", Mock(), on_error=on_error)
        error = ConnectionError("socket closed")

        assert bus.report_transport_error("tx-1", error)
        on_error.assert_called_once_with("tx-1", error)

    def test_transport_error_without_handler(self, bus):
        bus.subscribe("tx-1", Mock())
        assert not bus.report_transport_error("tx-1", ConnectionError())


# =============================================================================
# Bictorys webhook
# =============================================================================

class TestBictorysWebhook:

    def test_succeeded(self):
        event = parse_bictorys_webhook(
            {"merchantReference": "bct_1", "status": "succeeded", "amount": 28200, "paymentMethod": "wave_money"},
            SECRET, secret=SECRET,
        )
        assert event.transaction_id == "bct_1"
        assert event.outcome == PaymentOutcome.SUCCESS
        assert event.provider == PaymentProvider.WAVE
        assert event.amount == 28200

    @pytest.mark.parametrize("status", ["failed", "cancelled"])
    def test_failures(self, status):
        event = parse_bictorys_webhook({"merchantReference": "bct_1", "status": status}, SECRET, secret=SECRET)
        assert event.outcome == PaymentOutcome.FAILURE
        assert event.reason == status

    def test_pending_is_not_terminal(self):
        assert parse_bictorys_webhook({"merchantReference": "bct_1", "status": "pending"}, SECRET, secret=SECRET) is None

    def test_wrong_secret(self):
        with pytest.raises(WebhookVerificationError):
            parse_bictorys_webhook({"merchantReference": "bct_1", "status": "succeeded"}, "nope", secret=SECRET)

    def test_missing_secret_header(self):
        with pytest.raises(WebhookVerificationError):
            parse_bictorys_webhook({"merchantReference": "bct_1", "status": "succeeded"}, None, secret=SECRET)

    def test_invalid_payload(self):
        with pytest.raises(ValidationError):
            parse_bictorys_webhook({"status": "succeeded"}, SECRET, secret=SECRET)


# =============================================================================
# Stripe webhook
# =============================================================================

class TestStripeWebhook:

    def test_checkout_completed(self):
        body = _stripe_body(
            "checkout.session.completed",
            id="cs_1", amount_total=28200, metadata={"transaction_id": "stp_1"},
        )
        event = parse_stripe_event(body, _stripe_header(body), secret=SECRET)
        assert event.transaction_id == "stp_1"
        assert event.outcome == PaymentOutcome.SUCCESS
        assert event.provider == PaymentProvider.CARD

    def test_client_reference_fallback(self):
        body = _stripe_body("checkout.session.completed", id="cs_1", client_reference_id="stp_2")
        assert parse_stripe_event(body, _stripe_header(body), secret=SECRET).transaction_id == "stp_2"

    def test_payment_failed(self):
        body = _stripe_body(
            "payment_intent.payment_failed",
            id="pi_1", metadata={"transaction_id": "stp_1"},
            last_payment_error={"message": "Your card was declined."},
        )
        event = parse_stripe_event(body, _stripe_header(body), secret=SECRET)
        assert event.outcome == PaymentOutcome.FAILURE
        assert event.reason == "Your card was declined."

    def test_session_expired(self):
        body = _stripe_body("checkout.session.expired", id="cs_1", metadata={"transaction_id": "stp_1"})
        event = parse_stripe_event(body, _stripe_header(body), secret=SECRET)
        assert event.outcome == PaymentOutcome.FAILURE
        assert event.reason == "checkout expired"

    def test_other_events_are_ignored(self):
        body = _stripe_body("customer.created", id="cus_1")
        assert parse_stripe_event(body, _stripe_header(body), secret=SECRET) is None

    def test_tampered_body(self):
        body = _stripe_body("checkout.session.completed", metadata={"transaction_id": "stp_1"})
        header = _stripe_header(body)
        with pytest.raises(WebhookVerificationError):
            parse_stripe_event(body.replace(b"stp_1", b"stp_9"), header, secret=SECRET)

    def test_old_timestamp(self):
        body = _stripe_body("checkout.session.completed", metadata={"transaction_id": "stp_1"})
        header = _stripe_header(body, timestamp=int(time.time()) - 3600)
        with pytest.raises(WebhookVerificationError):
            parse_stripe_event(body, header, secret=SECRET)

    def test_custom_tolerance_accepts_older_signature(self):
        body = _stripe_body("checkout.session.completed", metadata={"transaction_id": "stp_1"})
        header = _stripe_header(body, timestamp=int(time.time()) - 3600)
        assert parse_stripe_event(body, header, secret=SECRET, tolerance=7200).transaction_id == "stp_1"

    @pytest.mark.parametrize("header", ["garbage", None, ""])
    def test_malformed_header(self, header):
        with pytest.raises(WebhookVerificationError):
            parse_stripe_event(b"{}", header, secret=SECRET)

    def test_wrong_secret(self):
        body = _stripe_body("checkout.session.completed", metadata={"transaction_id": "stp_1"})
        with pytest.raises(WebhookVerificationError):
            parse_stripe_event(body, _stripe_header(body, secret="whsec_other"), secret=SECRET)

    def test_event_without_reference(self):
        body = _stripe_body("checkout.session.completed", id="cs_1")
        with pytest.raises(ValidationError):
            parse_stripe_event(body, _stripe_header(body), secret=SECRET)
