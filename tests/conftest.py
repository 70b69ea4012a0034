"""Shared fixtures for the checkout engine tests."""

import os
import sys
import itertools
from datetime import timedelta
from unittest.mock import Mock

import pytest

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from chat_checkout.catalog import JsonProductCatalog
from chat_checkout.chatbot import ConversationalCheckoutAssistant
from chat_checkout.collaborators import CatalogInventory, FixedRateDeliveryPricing
from chat_checkout.database import OrderDatabase
from chat_checkout.events import InMemoryPaymentEventBus
from chat_checkout.gateway import CashOnDeliveryAdapter, PaymentGateway
from chat_checkout.models import PaymentInitResult, PaymentProvider, PaymentStatus, utcnow
from chat_checkout.orders import OrderManager
from chat_checkout.reconciliation import ReconciliationListener
from chat_checkout.recommendations import RecommendationEngine, load_cross_selling
from chat_checkout.session_store import InMemorySessionStore


class FakeClock:
    """Controllable clock starting at the current time."""

    def __init__(self):
        self.now = utcnow()

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


class FakeProviderAdapter:
    """Provider stand-in that hands out pending transactions."""

    def __init__(self, fail_with=None):
        self.fail_with = fail_with
        self.calls = []
        self._ids = itertools.count(1)

    def initiate(self, amount, currency, provider, customer, order_id):
        self.calls.append((amount, currency, provider, order_id))
        if self.fail_with:
            return PaymentInitResult(success=False, error=self.fail_with, status=PaymentStatus.FAILED)
        transaction_id = f"tx-{provider.value}-{next(self._ids)}"
        return PaymentInitResult(
            success=True,
            transaction_id=transaction_id,
            checkout_url=f"https://pay.example.com/{transaction_id}",
            status=PaymentStatus.PENDING,
        )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def catalog():
    return JsonProductCatalog()


@pytest.fixture
def inventory(catalog):
    return CatalogInventory(catalog)


@pytest.fixture
def store(clock):
    return InMemorySessionStore(clock=clock)


@pytest.fixture
def orders(store, catalog, inventory):
    return OrderManager(store, catalog, inventory)


@pytest.fixture
def bus():
    return InMemoryPaymentEventBus()


@pytest.fixture
def persistence():
    return Mock()


@pytest.fixture
def listener(orders, bus, persistence, inventory, clock):
    return ReconciliationListener(orders, bus, persistence, inventory, clock=clock)


@pytest.fixture
def provider_adapter():
    return FakeProviderAdapter()


@pytest.fixture
def gateway(provider_adapter):
    return PaymentGateway({
        PaymentProvider.WAVE: provider_adapter,
        PaymentProvider.ORANGE_MONEY: provider_adapter,
        PaymentProvider.CARD: provider_adapter,
        PaymentProvider.CASH: CashOnDeliveryAdapter(),
    })


@pytest.fixture
def recommender(catalog):
    return RecommendationEngine(catalog, load_cross_selling())


@pytest.fixture
def test_database(tmp_path):
    """Create a temporary test database."""
    return OrderDatabase(str(tmp_path / "test_orders.db"))


@pytest.fixture
def assistant(orders, gateway, listener, recommender, test_database):
    listener.persistence = test_database
    return ConversationalCheckoutAssistant(
        orders=orders,
        delivery=FixedRateDeliveryPricing(),
        gateway=gateway,
        listener=listener,
        recommender=recommender,
        persistence=test_database,
    )
