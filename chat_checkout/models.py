"""
Pydantic models for the conversational checkout engine.

Defines the order aggregate (items, customer, totals), payment attempts,
sessions and the message contract exposed to the chat UI, with field
constraints and validators for the business rules.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import ClassVar, Dict, List, Optional, Set
from pydantic import BaseModel, Field, field_validator, model_validator
import uuid

from chat_checkout import config
from chat_checkout.errors import InvalidTransitionError
from chat_checkout.pricing import line_total


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StockStatus(str, Enum):
    """Enumeration for product stock status."""
    IN_STOCK = "in_stock"
    LOW_STOCK = "low_stock"
    OUT_OF_STOCK = "out_of_stock"


class ConversationStep(str, Enum):
    """Steps of the purchase conversation."""
    CONTACT_INFO = "contact-info"
    CITY = "city"
    ADDRESS = "address"
    PHONE = "phone"
    SUMMARY = "summary"
    QUANTITY = "quantity"
    PAYMENT_METHOD = "payment-method"
    PAYMENT_PROCESSING = "payment-processing"
    PAYMENT_COMPLETED = "payment-completed"
    PAYMENT_FAILED = "payment-failed"
    ERROR_RECOVERY = "error-recovery"

    @property
    def is_terminal(self) -> bool:
        return self is ConversationStep.PAYMENT_COMPLETED


class OrderStatus(str, Enum):
    """Enumeration for order status."""
    DRAFT = "draft"
    AWAITING_PAYMENT = "awaiting_payment"
    PAID = "paid"
    FAILED = "failed"
    ABANDONED = "abandoned"


ORDER_TRANSITIONS: Dict[OrderStatus, Set[OrderStatus]] = {
    OrderStatus.DRAFT: {OrderStatus.AWAITING_PAYMENT, OrderStatus.ABANDONED},
    OrderStatus.AWAITING_PAYMENT: {OrderStatus.PAID, OrderStatus.FAILED, OrderStatus.ABANDONED},
    OrderStatus.FAILED: {OrderStatus.AWAITING_PAYMENT, OrderStatus.ABANDONED},
    OrderStatus.PAID: set(),
    OrderStatus.ABANDONED: set(),
}


class PaymentProvider(str, Enum):
    """The closed set of payment providers."""
    WAVE = "wave"
    ORANGE_MONEY = "orange_money"
    CARD = "card"
    CASH = "cash"

    @property
    def label(self) -> str:
        return {
            PaymentProvider.WAVE: "Wave",
            PaymentProvider.ORANGE_MONEY: "Orange Money",
            PaymentProvider.CARD: "Card",
            PaymentProvider.CASH: "Cash on delivery",
        }[self]


class PaymentStatus(str, Enum):
    """Lifecycle of a single payment attempt."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (PaymentStatus.COMPLETED, PaymentStatus.FAILED, PaymentStatus.CANCELLED)


PAYMENT_TRANSITIONS: Dict[PaymentStatus, Set[PaymentStatus]] = {
    PaymentStatus.PENDING: {
        PaymentStatus.PROCESSING, PaymentStatus.COMPLETED,
        PaymentStatus.FAILED, PaymentStatus.CANCELLED,
    },
    PaymentStatus.PROCESSING: {PaymentStatus.COMPLETED, PaymentStatus.FAILED, PaymentStatus.CANCELLED},
    PaymentStatus.COMPLETED: set(),
    PaymentStatus.FAILED: set(),
    PaymentStatus.CANCELLED: set(),
}


class PaymentOutcome(str, Enum):
    """Terminal outcome carried by an asynchronous payment event."""
    SUCCESS = "success"
    FAILURE = "failure"


class Product(BaseModel):
    """
    Product model with validation constraints.

    Attributes:
        product_id: Unique identifier for the product
        name: Product name (minimum 2 characters)
        description: Detailed product description
        price: Unit price in FCFA (must be greater than 0)
        category: Product category
        stock_status: Current stock availability status
        stock_quantity: Number of items in stock (must be >= 0)
    """
    product_id: str = Field(..., min_length=1, description="Unique product identifier")
    name: str = Field(..., min_length=2, description="Product name")
    description: str = Field(..., min_length=10, description="Product description")
    price: float = Field(..., gt=0, description="Unit price")
    category: str = Field(..., min_length=1, description="Product category")
    stock_status: StockStatus = Field(default=StockStatus.IN_STOCK, description="Stock availability status")
    stock_quantity: int = Field(..., ge=0, description="Quantity in stock")

    @field_validator('price')
    @classmethod
    def validate_price(cls, v: float) -> float:
        """Ensure price has at most 2 decimal places."""
        return round(v, 2)

    @model_validator(mode='after')
    def validate_stock_consistency(self) -> 'Product':
        """Ensure stock_status matches stock_quantity."""
        if self.stock_quantity == 0 and self.stock_status != StockStatus.OUT_OF_STOCK:
            self.stock_status = StockStatus.OUT_OF_STOCK
        elif self.stock_quantity > 0 and self.stock_status == StockStatus.OUT_OF_STOCK:
            self.stock_status = StockStatus.LOW_STOCK if self.stock_quantity < 10 else StockStatus.IN_STOCK
        return self


class StockCheck(BaseModel):
    """Answer of the inventory collaborator for one product and quantity."""
    product_id: str
    quantity: int = Field(..., ge=1)
    available: bool
    in_stock: Optional[int] = Field(None, ge=0, description="Units left, when known")


class CustomerInfo(BaseModel):
    """
    Customer block of an order draft.

    Every field starts empty and is filled in by one conversation step;
    all of them are required before a summary can be produced.
    """
    first_name: Optional[str] = Field(None, min_length=1)
    last_name: Optional[str] = Field(None, min_length=1)
    phone: Optional[str] = Field(None, pattern=r"^\d{9,}$", description="Digits only")
    city: Optional[str] = Field(None, min_length=1)
    address: Optional[str] = Field(None, min_length=5)
    country: str = Field(default=config.DEFAULT_COUNTRY, min_length=2)

    REQUIRED_FIELDS: ClassVar[tuple] = ("first_name", "last_name", "phone", "city", "address", "country")

    @property
    def full_name(self) -> str:
        return " ".join(part for part in (self.first_name, self.last_name) if part)

    def missing_fields(self) -> List[str]:
        return [name for name in self.REQUIRED_FIELDS if not getattr(self, name)]

    @property
    def is_complete(self) -> bool:
        return not self.missing_fields()


class OrderItem(BaseModel):
    """
    Individual line within an order draft.

    Attributes:
        product_id: Reference to the product
        name: Name of the product at the time it was added
        unit_price: Price per unit (must be > 0)
        quantity: Number of units (must be >= 1)
        line_total: Price of the line after bundle discounts
    """
    product_id: str = Field(..., min_length=1, description="Product identifier")
    name: str = Field(..., min_length=2, description="Product name")
    unit_price: float = Field(..., gt=0, description="Price per unit")
    quantity: int = Field(..., ge=1, description="Quantity ordered")
    line_total: float = Field(default=0, ge=0, description="Line total after discounts")

    @model_validator(mode='after')
    def calculate_line_total(self) -> 'OrderItem':
        """Apply the quantity pricing rule to the line."""
        self.line_total = line_total(self.quantity, self.unit_price)
        return self

    def with_quantity(self, quantity: int) -> 'OrderItem':
        return OrderItem(
            product_id=self.product_id,
            name=self.name,
            unit_price=self.unit_price,
            quantity=quantity,
        )


class OrderDraft(BaseModel):
    """
    The accumulating purchase owned by one session.

    Totals are derived: call recalculate() after changing items or the
    delivery fee. Status changes go through transition_to() so that the
    lifecycle stays monotonic.
    """
    order_id: str = Field(default_factory=lambda: str(uuid.uuid4()), description="Unique order ID")
    items: List[OrderItem] = Field(default_factory=list)
    customer: CustomerInfo = Field(default_factory=CustomerInfo)
    delivery_fee: Optional[float] = Field(None, ge=0, description="Known once the city is set")
    subtotal: float = Field(default=0, ge=0)
    total: float = Field(default=0, ge=0)
    currency: str = Field(default=config.DEFAULT_CURRENCY, min_length=3, max_length=3)
    status: OrderStatus = Field(default=OrderStatus.DRAFT)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode='after')
    def validate_totals(self) -> 'OrderDraft':
        """Keep subtotal and total consistent with items and delivery."""
        self.recalculate()
        return self

    def recalculate(self) -> None:
        self.subtotal = round(sum(item.line_total for item in self.items), 2)
        self.total = round(self.subtotal + (self.delivery_fee or 0), 2)

    def find_item(self, product_id: str) -> Optional[OrderItem]:
        for item in self.items:
            if item.product_id == product_id:
                return item
        return None

    def transition_to(self, status: OrderStatus) -> None:
        if status == self.status:
            return
        if status not in ORDER_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Order {self.order_id} cannot go from {self.status.value} to {status.value}",
                payload={"order_id": self.order_id},
            )
        self.status = status
        self.updated_at = utcnow()


class PaymentAttempt(BaseModel):
    """One outstanding request to a payment provider."""
    transaction_id: str = Field(..., min_length=1, description="Provider-issued transaction id")
    order_id: str = Field(..., min_length=1)
    provider: PaymentProvider
    amount: float = Field(..., gt=0)
    currency: str = Field(default=config.DEFAULT_CURRENCY, min_length=3, max_length=3)
    status: PaymentStatus = Field(default=PaymentStatus.PENDING)
    checkout_url: Optional[str] = Field(None, description="Redirect target or iframe source")
    failure_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def transition_to(self, status: PaymentStatus, reason: Optional[str] = None) -> None:
        if status not in PAYMENT_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Payment {self.transaction_id} cannot go from {self.status.value} to {status.value}",
                payload={"transaction_id": self.transaction_id},
            )
        self.status = status
        if reason:
            self.failure_reason = reason
        self.updated_at = utcnow()


class Recommendation(BaseModel):
    """A cross-sell candidate; never part of the order until the user adds it."""
    product_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=2)
    reason: str = Field(default="")
    priority: int = Field(..., ge=0)


class OrderSummary(BaseModel):
    """Read-only projection of an order draft for display and persistence."""
    order_id: str
    items: List[OrderItem]
    customer: CustomerInfo
    subtotal: float
    delivery_fee: float
    total: float
    currency: str

    @classmethod
    def from_order(cls, order: OrderDraft) -> 'OrderSummary':
        return cls(
            order_id=order.order_id,
            items=[item.model_copy() for item in order.items],
            customer=order.customer.model_copy(),
            subtotal=order.subtotal,
            delivery_fee=order.delivery_fee or 0,
            total=order.total,
            currency=order.currency,
        )


class MessageMetadata(BaseModel):
    """Machine-readable part of an assistant message."""
    next_step: ConversationStep
    payment_status: Optional[PaymentStatus] = None
    transaction_id: Optional[str] = None
    checkout_url: Optional[str] = None
    recommendations: Optional[List[Recommendation]] = None
    order_summary: Optional[OrderSummary] = None
    error_code: Optional[str] = None


class AssistantMessage(BaseModel):
    """The only structure the chat UI consumes."""
    text: str = Field(..., min_length=1)
    choices: List[str] = Field(default_factory=list)
    metadata: MessageMetadata
    created_at: datetime = Field(default_factory=utcnow)


class Session(BaseModel):
    """
    One customer's conversational purchase attempt.

    Conversation progress (current_step) and payment lifecycle
    (payment_attempt.status) are tracked separately and linked by the
    attempt's transaction id.
    """
    session_id: str = Field(..., min_length=1)
    product_id: str = Field(..., min_length=1, description="Product that started the conversation")
    current_step: ConversationStep = Field(default=ConversationStep.CONTACT_INFO)
    resume_step: Optional[ConversationStep] = Field(None, description="Step to retry after error recovery")
    order: OrderDraft = Field(default_factory=OrderDraft)
    payment_attempt: Optional[PaymentAttempt] = None
    superseded_attempts: List[PaymentAttempt] = Field(default_factory=list)
    outbox: List[AssistantMessage] = Field(default_factory=list)
    intent_score: float = Field(default=0, ge=0, le=1)
    started_at: datetime = Field(default_factory=utcnow)
    last_updated: datetime = Field(default_factory=utcnow)

    @property
    def has_live_payment(self) -> bool:
        """True while reconciliation still waits on the live attempt."""
        return self.payment_attempt is not None and not self.payment_attempt.status.is_terminal

    def supersede_attempt(self, attempt: Optional[PaymentAttempt]) -> None:
        if self.payment_attempt is not None:
            self.superseded_attempts.append(self.payment_attempt)
        self.payment_attempt = attempt

    def touch(self, now: Optional[datetime] = None) -> None:
        self.last_updated = now or utcnow()


class PaymentInitResult(BaseModel):
    """Uniform answer of every payment provider adapter."""
    success: bool
    transaction_id: Optional[str] = None
    checkout_url: Optional[str] = None
    error: Optional[str] = None
    status: PaymentStatus = Field(default=PaymentStatus.PENDING)


class PaymentEvent(BaseModel):
    """Asynchronous payment notification keyed by transaction id."""
    transaction_id: str = Field(..., min_length=1)
    outcome: PaymentOutcome
    reason: Optional[str] = None
    provider: Optional[PaymentProvider] = None
    amount: Optional[float] = None
    received_at: datetime = Field(default_factory=utcnow)
