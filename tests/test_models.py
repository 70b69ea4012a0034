"""
Tests for the order aggregate: pricing rules, pydantic models and the
order / payment status machines.
"""

import pytest

from chat_checkout import config
from chat_checkout.errors import CheckoutError, InvalidTransitionError, OutOfStockError
from chat_checkout.models import (
    ConversationStep, CustomerInfo, OrderDraft, OrderItem, OrderStatus, OrderSummary,
    PaymentAttempt, PaymentProvider, PaymentStatus, Product, Session, StockStatus
)
from chat_checkout.pricing import format_amount, is_free_delivery_city, line_total


# =============================================================================
# Test Fixtures
# =============================================================================

@pytest.fixture
def sample_product():
    """Create a sample product for testing."""
    return Product(
        product_id="couples",
        name="Card Game for Unmarried Couples",
        description="150 questions for couples who want to talk about their future.",
        price=14000,
        category="Couples",
        stock_status=StockStatus.IN_STOCK,
        stock_quantity=25
    )


@pytest.fixture
def complete_customer():
    return CustomerInfo(
        first_name="Jean",
        last_name="Dupont",
        phone="771234567",
        city="Dakar",
        address="12 Rue Carnot, Plateau",
    )


# =============================================================================
# Pricing
# =============================================================================

class TestPricing:
    """Quantity pricing tiers."""

    def test_single_unit_is_unit_price(self):
        assert line_total(1, 14000) == 14000

    def test_two_units_use_duo_price(self):
        assert line_total(2, 14000) == config.DUO_BUNDLE_PRICE == 25200

    def test_three_units_use_trio_price(self):
        assert line_total(3, 14000) == config.TRIO_BUNDLE_PRICE == 35700

    def test_four_units_and_more_get_percentage_discount(self):
        assert line_total(4, 14000) == 44800
        assert line_total(10, 14000) == 112000

    def test_bundle_prices_ignore_unit_price(self):
        """Duo and trio are fixed amounts whatever the unit price."""
        assert line_total(2, 9000) == 25200
        assert line_total(3, 20000) == 35700

    def test_free_delivery_city_is_case_insensitive(self):
        assert is_free_delivery_city("Dakar")
        assert is_free_delivery_city("  dakar ")
        assert is_free_delivery_city("DAKAR")
        assert not is_free_delivery_city("Thiès")

    def test_format_amount(self):
        assert format_amount(28200) == "28 200 FCFA"
        assert format_amount(3000, "XOF") == "3 000 FCFA"
        assert format_amount(12.5, "EUR") == "12.50 EUR"


# =============================================================================
# Products
# =============================================================================

class TestProduct:

    def test_product_price_must_be_positive(self):
        with pytest.raises(ValueError):
            Product(
                product_id="bad",
                name="Broken Product",
                description="A test product that should fail validation.",
                price=-10.00,
                category="Test",
                stock_quantity=10
            )

    def test_zero_quantity_forces_out_of_stock(self):
        product = Product(
            product_id="stvalentin",
            name="Valentine's Day Edition",
            description="A special edition of romantic questions.",
            price=14000,
            category="Couples",
            stock_status=StockStatus.IN_STOCK,
            stock_quantity=0
        )
        assert product.stock_status == StockStatus.OUT_OF_STOCK

    def test_restocked_product_leaves_out_of_stock(self):
        product = Product(
            product_id="collegues",
            name="Card Game for Colleagues",
            description="Questions designed for teams at work.",
            price=14000,
            category="Work",
            stock_status=StockStatus.OUT_OF_STOCK,
            stock_quantity=5
        )
        assert product.stock_status == StockStatus.LOW_STOCK


# =============================================================================
# Customer info and order lines
# =============================================================================

class TestCustomerInfo:

    def test_new_customer_is_incomplete(self):
        customer = CustomerInfo()
        assert not customer.is_complete
        assert "first_name" in customer.missing_fields()
        assert customer.country == config.DEFAULT_COUNTRY

    def test_complete_customer(self, complete_customer):
        assert complete_customer.is_complete
        assert complete_customer.full_name == "Jean Dupont"

    def test_phone_must_be_digits(self):
        with pytest.raises(ValueError):
            CustomerInfo(phone="77 123 45 67")
        with pytest.raises(ValueError):
            CustomerInfo(phone="12345")

    def test_address_minimum_length(self):
        with pytest.raises(ValueError):
            CustomerInfo(address="Rue")


class TestOrderItem:

    def test_line_total_is_computed(self):
        item = OrderItem(product_id="couples", name="Couples", unit_price=14000, quantity=2)
        assert item.line_total == 25200

    def test_line_total_ignores_given_value(self):
        item = OrderItem(product_id="couples", name="Couples", unit_price=14000, quantity=1, line_total=1)
        assert item.line_total == 14000

    def test_quantity_must_be_positive(self):
        with pytest.raises(ValueError):
            OrderItem(product_id="couples", name="Couples", unit_price=14000, quantity=0)

    def test_with_quantity_recomputes(self):
        item = OrderItem(product_id="couples", name="Couples", unit_price=14000, quantity=1)
        assert item.with_quantity(3).line_total == 35700


# =============================================================================
# Order draft
# =============================================================================

class TestOrderDraft:

    def test_totals_include_delivery(self, complete_customer):
        order = OrderDraft(
            items=[OrderItem(product_id="couples", name="Couples", unit_price=14000, quantity=2)],
            customer=complete_customer,
            delivery_fee=3000,
        )
        assert order.subtotal == 25200
        assert order.total == 28200

    def test_recalculate_after_change(self):
        order = OrderDraft(items=[OrderItem(product_id="couples", name="Couples", unit_price=14000, quantity=1)])
        order.delivery_fee = 3000
        order.recalculate()
        assert order.total == 17000

    def test_unknown_delivery_fee_counts_as_zero(self):
        order = OrderDraft(items=[OrderItem(product_id="couples", name="Couples", unit_price=14000, quantity=1)])
        assert order.delivery_fee is None
        assert order.total == 14000

    def test_happy_path_transitions(self):
        order = OrderDraft()
        order.transition_to(OrderStatus.AWAITING_PAYMENT)
        order.transition_to(OrderStatus.PAID)
        assert order.status == OrderStatus.PAID

    def test_failed_order_can_be_retried(self):
        order = OrderDraft(status=OrderStatus.FAILED)
        order.transition_to(OrderStatus.AWAITING_PAYMENT)
        assert order.status == OrderStatus.AWAITING_PAYMENT

    def test_paid_order_is_frozen(self):
        order = OrderDraft(status=OrderStatus.PAID)
        with pytest.raises(InvalidTransitionError):
            order.transition_to(OrderStatus.FAILED)

    def test_draft_cannot_jump_to_paid(self):
        with pytest.raises(InvalidTransitionError):
            OrderDraft().transition_to(OrderStatus.PAID)

    def test_same_status_is_a_no_op(self):
        order = OrderDraft(status=OrderStatus.PAID)
        order.transition_to(OrderStatus.PAID)
        assert order.status == OrderStatus.PAID

    def test_summary_projection(self, complete_customer):
        order = OrderDraft(
            items=[OrderItem(product_id="couples", name="Couples", unit_price=14000, quantity=1)],
            customer=complete_customer,
        )
        summary = OrderSummary.from_order(order)
        assert summary.delivery_fee == 0
        assert summary.total == 14000
        summary.items[0].quantity = 5
        assert order.items[0].quantity == 1


# =============================================================================
# Payment attempts and sessions
# =============================================================================

class TestPaymentAttempt:

    def _attempt(self, **kwargs):
        return PaymentAttempt(
            transaction_id="tx-1",
            order_id="order-1",
            provider=PaymentProvider.WAVE,
            amount=14000,
            **kwargs
        )

    def test_pending_to_completed(self):
        attempt = self._attempt()
        attempt.transition_to(PaymentStatus.COMPLETED)
        assert attempt.status.is_terminal

    def test_failure_keeps_reason(self):
        attempt = self._attempt()
        attempt.transition_to(PaymentStatus.FAILED, "timeout")
        assert attempt.failure_reason == "timeout"

    def test_completed_is_terminal(self):
        attempt = self._attempt(status=PaymentStatus.COMPLETED)
        with pytest.raises(InvalidTransitionError):
            attempt.transition_to(PaymentStatus.FAILED)

    def test_provider_labels(self):
        assert PaymentProvider.ORANGE_MONEY.label == "Orange Money"
        assert PaymentProvider.CASH.label == "Cash on delivery"


class TestSession:

    def test_live_payment_tracking(self):
        session = Session(session_id="s1", product_id="couples")
        assert not session.has_live_payment

        attempt = PaymentAttempt(transaction_id="tx-1", order_id="o", provider=PaymentProvider.CARD, amount=100)
        session.supersede_attempt(attempt)
        assert session.has_live_payment

        attempt.transition_to(PaymentStatus.COMPLETED)
        assert not session.has_live_payment

    def test_supersede_keeps_audit_trail(self):
        session = Session(session_id="s1", product_id="couples")
        first = PaymentAttempt(transaction_id="tx-1", order_id="o", provider=PaymentProvider.CARD, amount=100)
        second = PaymentAttempt(transaction_id="tx-2", order_id="o", provider=PaymentProvider.WAVE, amount=100)
        session.supersede_attempt(first)
        session.supersede_attempt(second)
        assert session.payment_attempt.transaction_id == "tx-2"
        assert [a.transaction_id for a in session.superseded_attempts] == ["tx-1"]

    def test_only_completion_is_terminal_step(self):
        assert ConversationStep.PAYMENT_COMPLETED.is_terminal
        assert not ConversationStep.PAYMENT_FAILED.is_terminal


class TestErrors:

    def test_error_to_dict(self):
        error = OutOfStockError("stvalentin", 2, "Valentine's Day Edition")
        data = error.to_dict()
        assert data["code"] == "OUT_OF_STOCK"
        assert data["product_id"] == "stvalentin"
        assert data["quantity"] == 2
        assert isinstance(error, CheckoutError)
