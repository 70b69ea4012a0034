"""
Payment gateway abstraction.

One adapter per payment provider, all answering with a PaymentInitResult.
Mobile money (Wave, Orange Money) goes through the Bictorys REST API and
cards through a Stripe Checkout Session; both hand back a checkout URL and
complete later through a webhook. Cash on delivery needs no provider and
is confirmed on the spot.
"""

import logging
import uuid
from typing import Any, Dict, Mapping, Optional, Protocol

import requests
import stripe

from chat_checkout import config
from chat_checkout.errors import PaymentProviderError
from chat_checkout.models import CustomerInfo, PaymentInitResult, PaymentProvider, PaymentStatus
from chat_checkout.pricing import format_amount

logger = logging.getLogger(__name__)

CUSTOMER_INFO_MISSING = "customer info missing"


def new_transaction_reference(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


class PaymentProviderAdapter(Protocol):
    def initiate(
        self,
        amount: float,
        currency: str,
        provider: PaymentProvider,
        customer: CustomerInfo,
        order_id: str,
    ) -> PaymentInitResult:
        """
        Start a payment with the provider.

        Raises:
            PaymentProviderError: If the provider call fails or answers badly
        """
        ...


# =============================================================================
# Provider adapters
# =============================================================================

class BictorysMobileMoneyAdapter:
    """Wave and Orange Money charges through the Bictorys API."""

    PAYMENT_TYPES = {
        PaymentProvider.WAVE: "wave_money",
        PaymentProvider.ORANGE_MONEY: "orange_money",
    }

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_url: Optional[str] = None,
        public_base_url: Optional[str] = None,
        timeout: int = config.PROVIDER_HTTP_TIMEOUT,
    ):
        self.api_key = api_key or config.BICTORYS_API_KEY
        self.api_url = (api_url or config.BICTORYS_API_URL).rstrip("/")
        self.public_base_url = (public_base_url or config.PUBLIC_BASE_URL).rstrip("/")
        self.timeout = timeout

    def initiate(
        self,
        amount: float,
        currency: str,
        provider: PaymentProvider,
        customer: CustomerInfo,
        order_id: str,
    ) -> PaymentInitResult:
        if provider not in self.PAYMENT_TYPES:
            raise PaymentProviderError(f"Bictorys does not handle {provider.value}")
        if not self.api_key:
            raise PaymentProviderError("Bictorys API key is not configured")

        reference = new_transaction_reference("bct")
        payload = {
            "amount": amount,
            "currency": currency,
            "paymentType": self.PAYMENT_TYPES[provider],
            "phoneNumber": customer.phone,
            "merchantReference": reference,
            "customerObject": {
                "name": customer.full_name,
                "phone": customer.phone,
                "city": customer.city,
                "country": customer.country,
            },
            "successRedirectUrl": f"{self.public_base_url}/payment/success?ref={reference}",
            "errorRedirectUrl": f"{self.public_base_url}/payment/error?ref={reference}",
            "webhookUrl": f"{self.public_base_url}/api/webhook/bictorys",
            "metadata": {"orderId": order_id},
        }
        headers = {
            'Authorization': f'Bearer {self.api_key}',
            'Content-Type': 'application/json'
        }

        logger.info("[Bictorys] Creating %s charge %s for order %s", provider.value, reference, order_id)

        data = _post_json(f"{self.api_url}/v1/payments", "Bictorys", json=payload, headers=headers, timeout=self.timeout)
        checkout_url = data.get("paymentUrl") or data.get("iframeUrl")
        if not checkout_url:
            raise PaymentProviderError("Bictorys response has no payment URL", payload={"response": data})

        return PaymentInitResult(
            success=True,
            transaction_id=reference,
            checkout_url=checkout_url,
            status=PaymentStatus.PENDING,
        )


class StripeCheckoutAdapter:
    """Card payments through a hosted Stripe Checkout Session."""

    # Stripe expects these currencies in whole units rather than cents
    ZERO_DECIMAL_CURRENCIES = frozenset({"xof", "xaf", "gnf", "jpy", "krw", "rwf", "ugx"})

    def __init__(
        self,
        secret_key: Optional[str] = None,
        public_base_url: Optional[str] = None,
    ):
        self.secret_key = secret_key or config.STRIPE_SECRET_KEY
        self.public_base_url = (public_base_url or config.PUBLIC_BASE_URL).rstrip("/")

    def initiate(
        self,
        amount: float,
        currency: str,
        provider: PaymentProvider,
        customer: CustomerInfo,
        order_id: str,
    ) -> PaymentInitResult:
        if provider is not PaymentProvider.CARD:
            raise PaymentProviderError(f"Stripe does not handle {provider.value}")
        if not self.secret_key:
            raise PaymentProviderError("Stripe secret key is not configured")

        reference = new_transaction_reference("stp")
        currency = currency.lower()
        unit_amount = int(round(amount)) if currency in self.ZERO_DECIMAL_CURRENCIES else int(round(amount * 100))
        metadata = {"transaction_id": reference, "order_id": order_id}
        if customer.full_name:
            metadata["customer_name"] = customer.full_name

        logger.info("[Stripe] Creating checkout session %s for order %s", reference, order_id)

        try:
            session = stripe.checkout.Session.create(
                api_key=self.secret_key,
                mode="payment",
                client_reference_id=reference,
                line_items=[{
                    "quantity": 1,
                    "price_data": {
                        "currency": currency,
                        "unit_amount": unit_amount,
                        "product_data": {"name": f"Order {order_id[:8]}"},
                    },
                }],
                metadata=metadata,
                payment_intent_data={"metadata": {"transaction_id": reference, "order_id": order_id}},
                success_url=f"{self.public_base_url}/payment/success?ref={reference}",
                cancel_url=f"{self.public_base_url}/payment/error?ref={reference}",
            )
        except stripe.StripeError as e:
            logger.error("[Stripe] Checkout session failed: %s", e)
            raise PaymentProviderError(
                "Stripe rejected the payment request",
                payload={"status_code": e.http_status},
            ) from e

        if not session.url:
            raise PaymentProviderError("Stripe response has no checkout URL", payload={"session_id": session.id})

        return PaymentInitResult(
            success=True,
            transaction_id=reference,
            checkout_url=session.url,
            status=PaymentStatus.PENDING,
        )


class CashOnDeliveryAdapter:
    """No provider call: the order is confirmed and paid to the courier."""

    def initiate(
        self,
        amount: float,
        currency: str,
        provider: PaymentProvider,
        customer: CustomerInfo,
        order_id: str,
    ) -> PaymentInitResult:
        if provider is not PaymentProvider.CASH:
            raise PaymentProviderError(f"Cash on delivery does not handle {provider.value}")
        reference = new_transaction_reference("cash")
        logger.info("Cash on delivery confirmed for order %s (%s)", order_id, reference)
        return PaymentInitResult(
            success=True,
            transaction_id=reference,
            status=PaymentStatus.COMPLETED,
        )


def _post_json(url: str, provider_name: str, **kwargs) -> Dict[str, Any]:
    """POST to a provider and return its JSON body, mapping failures to PaymentProviderError."""
    try:
        response = requests.post(url, **kwargs)
        response.raise_for_status()
        data = response.json()
    except requests.HTTPError as e:
        body = e.response.text if e.response is not None else ""
        logger.error("[%s] HTTP error: %s %s", provider_name, e, body)
        raise PaymentProviderError(
            f"{provider_name} rejected the payment request",
            payload={"status_code": e.response.status_code if e.response is not None else None},
        ) from e
    except ValueError as e:
        # requests' JSONDecodeError is both a ValueError and a RequestException
        logger.error("[%s] Malformed response: %s", provider_name, e)
        raise PaymentProviderError(f"{provider_name} returned a malformed response") from e
    except requests.RequestException as e:
        logger.error("[%s] Request failed: %s", provider_name, e)
        raise PaymentProviderError(f"{provider_name} is unreachable") from e

    if not isinstance(data, dict):
        raise PaymentProviderError(f"{provider_name} returned a malformed response")
    return data


# =============================================================================
# Gateway
# =============================================================================

class PaymentGateway:
    """
    Uniform entry point over the closed set of payment providers.

    Every PaymentProvider member must have an adapter; a gateway with a
    gap refuses to start.
    """

    def __init__(self, adapters: Mapping[PaymentProvider, PaymentProviderAdapter]):
        missing = [p.value for p in PaymentProvider if p not in adapters]
        if missing:
            raise ValueError(f"No payment adapter for: {', '.join(missing)}")
        self.adapters: Dict[PaymentProvider, PaymentProviderAdapter] = dict(adapters)

    def initiate(
        self,
        amount: float,
        currency: str,
        provider: PaymentProvider,
        customer_info: CustomerInfo,
        order_id: str,
    ) -> PaymentInitResult:
        """
        Start a payment.

        Never raises for provider trouble: failures come back as a result
        with success=False and a user-safe error.
        """
        provider = PaymentProvider(provider)

        if not customer_info.is_complete:
            logger.warning(
                "Payment for order %s refused, missing customer fields: %s",
                order_id, customer_info.missing_fields()
            )
            return PaymentInitResult(success=False, error=CUSTOMER_INFO_MISSING, status=PaymentStatus.FAILED)

        if not config.MIN_PAYMENT_AMOUNT <= amount <= config.MAX_PAYMENT_AMOUNT:
            logger.warning("Payment for order %s refused, amount %s out of range", order_id, amount)
            return PaymentInitResult(
                success=False,
                error=(
                    f"amount must be between {format_amount(config.MIN_PAYMENT_AMOUNT, currency)} "
                    f"and {format_amount(config.MAX_PAYMENT_AMOUNT, currency)}"
                ),
                status=PaymentStatus.FAILED,
            )

        try:
            return self.adapters[provider].initiate(amount, currency, provider, customer_info, order_id)
        except PaymentProviderError as e:
            logger.error("Payment initiation failed for order %s via %s: %s", order_id, provider.value, e.to_dict())
            return PaymentInitResult(success=False, error=e.message, status=PaymentStatus.FAILED)


def payment_instructions(provider: PaymentProvider, transaction_id: str, checkout_url: Optional[str] = None) -> str:
    """What the customer has to do next for a freshly initiated payment."""
    instructions = {
        PaymentProvider.WAVE: [
            "To pay with Wave:",
            "",
            "1. Open your Wave app",
            "2. Tap \"Pay\"",
            f"3. Scan the QR code or use this link: {checkout_url}",
            "4. Confirm the payment in the app",
        ],
        PaymentProvider.ORANGE_MONEY: [
            "To pay with Orange Money:",
            "",
            f"1. Open the payment page: {checkout_url}",
            "2. Enter your Orange Money number",
            "3. Confirm with your secret code",
            f"Reference: {transaction_id}",
        ],
        PaymentProvider.CARD: [
            "You will be redirected to a secure payment page.",
            f"Use this link to pay by card: {checkout_url}",
        ],
        PaymentProvider.CASH: [
            "You chose to pay on delivery.",
            "Our courier will contact you soon!",
        ],
    }
    return "\n".join(instructions[provider])


def build_default_gateway() -> PaymentGateway:
    """Gateway wired with the providers configured in the environment."""
    mobile_money = BictorysMobileMoneyAdapter()
    return PaymentGateway({
        PaymentProvider.WAVE: mobile_money,
        PaymentProvider.ORANGE_MONEY: mobile_money,
        PaymentProvider.CARD: StripeCheckoutAdapter(),
        PaymentProvider.CASH: CashOnDeliveryAdapter(),
    })
