"""
Order aggregate service.

OrderManager is the single writer for sessions: step handlers and the
payment reconciliation listener both change state through it, under a
per-session lock, so one session never sees two concurrent mutations.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, List, Optional, TypeVar

from pydantic import ValidationError as PydanticValidationError

from chat_checkout.collaborators import Inventory, ProductCatalog
from chat_checkout.errors import (
    CollaboratorError, OutOfStockError, SessionExpiredError, ValidationError
)
from chat_checkout.models import (
    CustomerInfo, OrderDraft, OrderItem, OrderStatus, OrderSummary, Session, utcnow
)
from chat_checkout.session_store import SessionStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

CUSTOMER_FIELDS = frozenset(CustomerInfo.model_fields)
ORDER_FIELDS = frozenset({"delivery_fee", "status"})


class _SessionLock:
    """Reentrant lock plus the number of callers holding or waiting on it."""

    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = threading.RLock()
        self.users = 0


class OrderManager:
    """Owns every write to sessions and their order drafts."""

    def __init__(self, store: SessionStore, catalog: ProductCatalog, inventory: Inventory):
        self.store = store
        self.catalog = catalog
        self.inventory = inventory
        self._locks: Dict[str, _SessionLock] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def session_lock(self, session_id: str) -> Iterator[None]:
        """
        Serialise work on one session.

        A lock only lives while someone holds or waits for it, so ids that
        never become sessions leave nothing behind.
        """
        with self._locks_guard:
            entry = self._locks.get(session_id)
            if entry is None:
                entry = self._locks[session_id] = _SessionLock()
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._locks_guard:
                entry.users -= 1
                if entry.users == 0:
                    del self._locks[session_id]

    def active_locks(self) -> int:
        with self._locks_guard:
            return len(self._locks)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def find(self, session_id: str) -> Optional[Session]:
        return self.store.get(session_id)

    def load(self, session_id: str) -> Session:
        session = self.store.get(session_id)
        if session is None:
            raise SessionExpiredError(session_id)
        return session

    def start_session(self, session_id: str, product_id: str, quantity: int = 1) -> Session:
        """Create a session whose order starts with the product of interest."""
        with self.session_lock(session_id):
            item = self._checked_item(product_id, quantity)
            now = self.store.clock()
            session = Session(
                session_id=session_id,
                product_id=product_id,
                order=OrderDraft(items=[item]),
                started_at=now,
                last_updated=now,
            )
            self.store.save(session)
            logger.info("Session %s started for product %s", session_id, product_id)
            return session

    def mutate(self, session_id: str, fn: Callable[[Session], T]) -> T:
        """
        Apply fn to the session and save it, holding the session lock.

        Nothing is saved when fn raises.
        """
        with self.session_lock(session_id):
            session = self.load(session_id)
            result = fn(session)
            session.touch(self.store.clock())
            self.store.save(session)
            return result

    def evict_expired(self) -> List[str]:
        """Drop expired sessions from the store; sessions with a live payment stay."""
        return self.store.evict_expired()

    # ------------------------------------------------------------------
    # Order data
    # ------------------------------------------------------------------

    def update_order_data(self, session_id: str, **fields) -> OrderDraft:
        """
        Merge customer fields, delivery fee or status into the order draft.

        Totals are recomputed on every call.

        Raises:
            ValidationError: If a field is unknown or its value is invalid
            InvalidTransitionError: If the status change is not allowed
        """
        unknown = set(fields) - CUSTOMER_FIELDS - ORDER_FIELDS
        if unknown:
            raise ValidationError(f"Unknown order fields: {', '.join(sorted(unknown))}")

        def apply(session: Session) -> OrderDraft:
            order = session.order
            customer_updates = {k: v for k, v in fields.items() if k in CUSTOMER_FIELDS}
            if customer_updates:
                merged = {**order.customer.model_dump(), **customer_updates}
                try:
                    order.customer = CustomerInfo(**merged)
                except PydanticValidationError as e:
                    raise ValidationError(
                        "Invalid customer information",
                        payload={"fields": sorted(customer_updates), "detail": e.errors()},
                    ) from e
            if "delivery_fee" in fields:
                fee = fields["delivery_fee"]
                if fee is not None and fee < 0:
                    raise ValidationError("Delivery fee cannot be negative")
                order.delivery_fee = fee
            if "status" in fields:
                order.transition_to(OrderStatus(fields["status"]))
            order.recalculate()
            order.updated_at = utcnow()
            return order.model_copy(deep=True)

        return self.mutate(session_id, apply)

    def add_item(self, session_id: str, product_id: str, quantity: int = 1) -> OrderDraft:
        """Add units of a product, merging with an existing line."""
        if quantity < 1:
            raise ValidationError("Quantity must be at least 1")

        def apply(session: Session) -> OrderDraft:
            order = session.order
            existing = order.find_item(product_id)
            if existing is not None:
                self._ensure_available(product_id, existing.quantity + quantity)
                self._replace_item(order, existing.with_quantity(existing.quantity + quantity))
            else:
                order.items.append(self._checked_item(product_id, quantity))
            order.recalculate()
            return order.model_copy(deep=True)

        return self.mutate(session_id, apply)

    def update_quantity(self, session_id: str, product_id: str, quantity: int) -> OrderDraft:
        if quantity < 1:
            raise ValidationError("Quantity must be at least 1")

        def apply(session: Session) -> OrderDraft:
            order = session.order
            existing = order.find_item(product_id)
            if existing is None:
                raise ValidationError(f"Product {product_id} is not in the order")
            self._ensure_available(product_id, quantity)
            self._replace_item(order, existing.with_quantity(quantity))
            order.recalculate()
            return order.model_copy(deep=True)

        return self.mutate(session_id, apply)

    def remove_item(self, session_id: str, product_id: str) -> OrderDraft:
        """Remove a line; the remaining lines are re-checked against stock."""

        def apply(session: Session) -> OrderDraft:
            order = session.order
            if order.find_item(product_id) is None:
                raise ValidationError(f"Product {product_id} is not in the order")
            remaining = [item for item in order.items if item.product_id != product_id]
            if not remaining:
                raise ValidationError("An order needs at least one item")
            for item in remaining:
                self._ensure_available(item.product_id, item.quantity)
            order.items = remaining
            order.recalculate()
            return order.model_copy(deep=True)

        return self.mutate(session_id, apply)

    def get_summary(self, session_id: str) -> OrderSummary:
        return OrderSummary.from_order(self.load(session_id).order)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _ensure_available(self, product_id: str, quantity: int) -> None:
        check = self.inventory.check_availability(product_id, quantity)
        if not check.available:
            product = self.catalog.get(product_id)
            raise OutOfStockError(product_id, quantity, product.name if product else None)

    def _checked_item(self, product_id: str, quantity: int) -> OrderItem:
        product = self.catalog.get(product_id)
        if product is None:
            raise CollaboratorError(f"Product {product_id} not found", payload={"product_id": product_id})
        self._ensure_available(product_id, quantity)
        return OrderItem(
            product_id=product.product_id,
            name=product.name,
            unit_price=product.price,
            quantity=quantity,
        )

    @staticmethod
    def _replace_item(order: OrderDraft, item: OrderItem) -> None:
        order.items = [item if line.product_id == item.product_id else line for line in order.items]
