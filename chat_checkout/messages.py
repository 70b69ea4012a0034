"""Assistant wording: prompts, validation messages and choice labels."""

from typing import List, Optional, Sequence

from chat_checkout import config
from chat_checkout.models import OrderDraft, OrderSummary, PaymentProvider, Recommendation
from chat_checkout.pricing import format_amount, line_total


# =============================================================================
# Choices
# =============================================================================

CHOICE_CONFIRM = "Confirm"
CHOICE_MODIFY = "Modify"
CHOICE_RETRY = "Retry"
CHOICE_CHANGE_METHOD = "Change payment method"
CHOICE_CHECK_STATUS = "Check payment status"
CHOICE_HUMAN = "Talk to a human"
CHOICE_TRACK = "Track my order"
CHOICE_OTHER_PRODUCTS = "See other products"
CHOICE_START_OVER = "Start over"
CHOICE_CHANGE_QUANTITY = "Change quantity"
ADD_PREFIX = "Add "
REMOVE_PREFIX = "Remove "

PAYMENT_CHOICES = [provider.label for provider in PaymentProvider]


def add_choice(product_name: str) -> str:
    return f"{ADD_PREFIX}{product_name}"


def remove_choice(product_name: str) -> str:
    return f"{REMOVE_PREFIX}{product_name}"


# =============================================================================
# Prompts
# =============================================================================

ASK_CONTACT = "To place your order, please give me your first and last name."
ASK_CITY = "Which city should we deliver to?"
ASK_ADDRESS = "What is your delivery address? Street, district and a landmark help our courier."
ASK_PHONE = "What phone number can our courier reach you on?"
ASK_PAYMENT_METHOD = "How would you like to pay?"

INVALID_NAME = "Please provide first and last name, for example: Jean Dupont."
INVALID_CITY = "Please tell me the city for the delivery."
INVALID_ADDRESS = "Please provide a complete address (at least 5 characters)."
INVALID_PHONE = "Please provide a valid phone number (digits only, at least 9)."
INVALID_SUMMARY_CHOICE = "Please confirm the order, change the quantity or choose to modify it."
INVALID_QUANTITY = "Please give the number of copies you want, for example: 2."
INVALID_PAYMENT_METHOD = "Please choose one of these payment methods: " + ", ".join(PAYMENT_CHOICES) + "."
INVALID_FAILED_CHOICE = "Would you like to retry the payment or use another payment method?"
INVALID_RECOVERY_CHOICE = "Choose Retry to continue, or talk to someone from our team."

PAYMENT_PENDING = "Your payment is still being processed. I will let you know as soon as it is confirmed."
PAYMENT_CANCELLED = "No problem, the previous payment was cancelled. " + ASK_PAYMENT_METHOD
PAYMENT_TIMED_OUT = "We did not receive a confirmation for your payment in time. " + ASK_PAYMENT_METHOD
CONNECTION_PROBLEM = "We have a connection problem with the payment service, please retry in a moment."

SESSION_EXPIRED = "Your session has expired. Please start again from the product page."
GENERIC_APOLOGY = "Sorry, something went wrong on our side. Please retry, or talk to someone from our team."
COLLABORATOR_PROBLEM = "Sorry, I could not complete that step right now. Please retry in a moment."
INVALID_TRANSITION = "This action is not possible at this stage of your order."


def greeting(product_name: str, unit_price: float, currency: str) -> str:
    return (
        f"Great choice! The {product_name} costs {format_amount(unit_price, currency)}. "
        f"{ASK_CONTACT}"
    )


def ask_city(first_name: str) -> str:
    return f"Thank you {first_name}! {ASK_CITY}"


def delivery_quote(city: str, fee: float, currency: str) -> str:
    if fee == 0:
        return f"Good news, delivery to {city} is free! {ASK_ADDRESS}"
    return f"Delivery to {city} costs {format_amount(fee, currency)}. {ASK_ADDRESS}"


def handoff(support_url: str = config.SUPPORT_URL) -> str:
    return f"Someone from our team will take over. You can reach us directly on WhatsApp: {support_url}"


def out_of_stock(product_name: Optional[str], quantity: int) -> str:
    name = product_name or "this product"
    return f"Sorry, {name} is not available in quantity {quantity} right now."


def ask_quantity(product_name: str, unit_price: float, currency: str) -> str:
    """Quantity question listing the bundle prices."""
    tiers = ", ".join(
        f"{q} for {format_amount(line_total(q, unit_price), currency)}" for q in (1, 2, 3)
    )
    discount = int(round(config.BULK_DISCOUNT_RATE * 100))
    return f"How many copies of {product_name} would you like? {tiers}, and {discount}% off from 4 copies."


# =============================================================================
# Order rendering
# =============================================================================

def order_summary_text(summary: OrderSummary) -> str:
    lines = ["Here is your order:", ""]
    for item in summary.items:
        lines.append(f"- {item.name} x{item.quantity}: {format_amount(item.line_total, summary.currency)}")
    lines.append("")
    lines.append(f"Subtotal: {format_amount(summary.subtotal, summary.currency)}")
    if summary.delivery_fee:
        lines.append(f"Delivery: {format_amount(summary.delivery_fee, summary.currency)}")
    else:
        lines.append("Delivery: free")
    lines.append(f"Total: {format_amount(summary.total, summary.currency)}")
    lines.append("")

    customer = summary.customer
    lines.append(f"Deliver to: {customer.full_name}")
    lines.append(f"{customer.address}, {customer.city}")
    lines.append(f"Phone: {customer.phone}")
    lines.append("")
    lines.append("Shall I confirm this order?")
    return "\n".join(lines)


def summary_choices(recommendations: List[Recommendation], removable: Sequence[str] = ()) -> List[str]:
    return (
        [CHOICE_CONFIRM, CHOICE_MODIFY, CHOICE_CHANGE_QUANTITY]
        + [add_choice(r.name) for r in recommendations]
        + [remove_choice(name) for name in removable]
    )


def payment_failed(reason: Optional[str]) -> str:
    detail = f" ({reason})" if reason else ""
    return f"Your payment did not go through{detail}. Would you like to retry or use another payment method?"


def payment_confirmed(order: OrderDraft, provider: PaymentProvider) -> str:
    customer = order.customer
    if provider is PaymentProvider.CASH:
        opening = "Your order is confirmed! You will pay the courier on delivery."
    else:
        opening = f"Payment received via {provider.label}, thank you! Your order is confirmed."
    return (
        f"{opening}\n"
        f"Order number: {order.order_id[:8].upper()}\n"
        f"Total: {format_amount(order.total, order.currency)}\n"
        f"We will deliver to {customer.address}, {customer.city}. "
        f"Our courier will call you on {customer.phone}."
    )


def post_purchase(order: OrderDraft) -> str:
    return (
        f"Your order {order.order_id[:8].upper()} is confirmed and being prepared. "
        "Can I help you with anything else?"
    )


def order_tracking(order: OrderDraft) -> str:
    return (
        f"Order {order.order_id[:8].upper()} is {order.status.value.replace('_', ' ')}. "
        f"It will be delivered to {order.customer.address}, {order.customer.city}."
    )
