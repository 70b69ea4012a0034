"""
Interfaces of the collaborators the checkout engine consumes, with the
default implementations used by the CLI and the tests.

Catalog storage, inventory atomicity and delivery pricing belong to other
systems; the engine only depends on these protocols.
"""

import logging
import threading
from typing import Callable, Dict, List, Optional, Protocol, Tuple

from chat_checkout import config
from chat_checkout.errors import CollaboratorError
from chat_checkout.models import (
    OrderDraft, PaymentAttempt, PaymentEvent, Product, StockCheck
)
from chat_checkout.pricing import is_free_delivery_city

logger = logging.getLogger(__name__)


class DeliveryPricing(Protocol):
    def get_cost(self, city: str) -> float:
        """Delivery fee for a city, in the order currency."""
        ...


class Inventory(Protocol):
    def check_availability(self, product_id: str, quantity: int) -> StockCheck:
        ...

    def reserve(self, product_id: str, quantity: int) -> None:
        """Decrement stock once an order is paid."""
        ...


class ProductCatalog(Protocol):
    def get(self, product_id: str) -> Optional[Product]:
        ...


class ProductSearch(Protocol):
    def search(self, query: str, n_results: int = 5, in_stock_only: bool = False) -> List[Tuple[Product, float]]:
        """(product, relevance) pairs, most relevant first."""
        ...


class OrderPersistence(Protocol):
    def save(self, order: OrderDraft, session_id: Optional[str] = None) -> str:
        ...

    def mark_paid(self, order_id: str) -> bool:
        ...

    def mark_failed(self, order_id: str, reason: str) -> bool:
        ...

    def record_attempt(self, order_id: str, attempt: PaymentAttempt) -> None:
        ...


PaymentEventHandler = Callable[[PaymentEvent], None]
TransportErrorHandler = Callable[[str, Exception], None]


class PaymentEventBus(Protocol):
    def subscribe(
        self,
        transaction_id: str,
        handler: PaymentEventHandler,
        on_error: Optional[TransportErrorHandler] = None,
    ) -> None:
        ...

    def unsubscribe(self, transaction_id: str) -> None:
        ...


class FixedRateDeliveryPricing:
    """Free delivery in one city, a flat fee everywhere else."""

    def __init__(self, fee: float = config.DELIVERY_FEE):
        if fee <= 0:
            raise ValueError("Delivery fee outside the free city must be positive")
        self.fee = fee

    def get_cost(self, city: str) -> float:
        if not city or not city.strip():
            raise CollaboratorError("City is required to price delivery")
        return 0 if is_free_delivery_city(city) else self.fee


class CatalogInventory:
    """
    Inventory backed by the stock quantities of a product catalog.

    Keeps its own running counts so that reservations are reflected in
    later availability checks.
    """

    def __init__(self, catalog: ProductCatalog):
        self.catalog = catalog
        self._reserved: Dict[str, int] = {}
        self._lock = threading.Lock()

    def _available_units(self, product_id: str) -> int:
        product = self.catalog.get(product_id)
        if product is None:
            raise CollaboratorError(f"Product {product_id} not found", payload={"product_id": product_id})
        return product.stock_quantity - self._reserved.get(product_id, 0)

    def check_availability(self, product_id: str, quantity: int) -> StockCheck:
        with self._lock:
            units = max(self._available_units(product_id), 0)
        return StockCheck(
            product_id=product_id,
            quantity=quantity,
            available=units >= quantity,
            in_stock=units,
        )

    def reserve(self, product_id: str, quantity: int) -> None:
        with self._lock:
            units = self._available_units(product_id)
            if units < quantity:
                # Already paid for; fulfilment has to sort out the shortfall.
                logger.warning("Reserving %s x %s with only %s left", quantity, product_id, units)
            self._reserved[product_id] = self._reserved.get(product_id, 0) + quantity
