"""
Pricing rules for order lines and delivery.

Bundle prices for two and three units are fixed amounts that do not depend
on the unit price; four units and more get a percentage discount instead.
"""

from chat_checkout import config


def line_total(quantity: int, unit_price: float) -> float:
    """Return the price of one order line after quantity discounts."""
    if quantity >= 4:
        return round(unit_price * quantity * (1 - config.BULK_DISCOUNT_RATE), 2)
    if quantity == 3:
        return config.TRIO_BUNDLE_PRICE
    if quantity == 2:
        return config.DUO_BUNDLE_PRICE
    return round(unit_price * quantity, 2)


def is_free_delivery_city(city: str) -> bool:
    return city.strip().lower() == config.FREE_DELIVERY_CITY.strip().lower()


def format_amount(amount: float, currency: str = config.DEFAULT_CURRENCY) -> str:
    """Format an amount the way the chat displays it, e.g. '28 200 FCFA'."""
    label = "FCFA" if currency == "XOF" else currency
    if float(amount).is_integer():
        digits = f"{int(amount):,}".replace(",", " ")
    else:
        digits = f"{amount:,.2f}".replace(",", " ")
    return f"{digits} {label}"
