"""
Conversational Checkout Engine

Turns a scripted chat into a validated order, collects delivery details,
starts a payment with one of several providers and reconciles the
provider's asynchronous confirmation back into the order and the chat.
"""

from chat_checkout.models import (
    AssistantMessage,
    ConversationStep,
    CustomerInfo,
    OrderDraft,
    OrderItem,
    OrderStatus,
    OrderSummary,
    PaymentAttempt,
    PaymentEvent,
    PaymentOutcome,
    PaymentProvider,
    PaymentStatus,
    Product,
    Recommendation,
    Session,
    StockStatus,
)
from chat_checkout.errors import (
    CheckoutError,
    CollaboratorError,
    InvalidTransitionError,
    OutOfStockError,
    PaymentProviderError,
    ReconciliationTimeoutError,
    SessionExpiredError,
    ValidationError,
)
from chat_checkout.database import OrderDatabase, get_database
from chat_checkout.session_store import InMemorySessionStore, SqliteSessionStore
from chat_checkout.orders import OrderManager
from chat_checkout.gateway import PaymentGateway, build_default_gateway
from chat_checkout.events import InMemoryPaymentEventBus
from chat_checkout.reconciliation import ReconciliationListener, TimeoutWatcher
from chat_checkout.recommendations import RecommendationEngine
from chat_checkout.recovery import RecoveryPolicy
from chat_checkout.chatbot import ConversationalCheckoutAssistant, build_assistant

__version__ = "1.0.0"
__all__ = [
    "AssistantMessage",
    "ConversationStep",
    "CustomerInfo",
    "OrderDraft",
    "OrderItem",
    "OrderStatus",
    "OrderSummary",
    "PaymentAttempt",
    "PaymentEvent",
    "PaymentOutcome",
    "PaymentProvider",
    "PaymentStatus",
    "Product",
    "Recommendation",
    "Session",
    "StockStatus",
    "CheckoutError",
    "CollaboratorError",
    "InvalidTransitionError",
    "OutOfStockError",
    "PaymentProviderError",
    "ReconciliationTimeoutError",
    "SessionExpiredError",
    "ValidationError",
    "OrderDatabase",
    "get_database",
    "InMemorySessionStore",
    "SqliteSessionStore",
    "OrderManager",
    "PaymentGateway",
    "build_default_gateway",
    "InMemoryPaymentEventBus",
    "ReconciliationListener",
    "TimeoutWatcher",
    "RecommendationEngine",
    "RecoveryPolicy",
    "ConversationalCheckoutAssistant",
    "build_assistant",
]
