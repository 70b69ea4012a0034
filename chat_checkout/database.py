"""
Database module for order persistence.

Provides the SQL schema, connection management and CRUD operations for
orders and their payment attempts using SQLite with parameterized queries.
"""

import logging
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import List, Optional
from contextlib import contextmanager

from chat_checkout import config
from chat_checkout.models import (
    CustomerInfo, OrderDraft, OrderItem, OrderStatus, PaymentAttempt,
    PaymentProvider, PaymentStatus, utcnow
)

logger = logging.getLogger(__name__)

# Default database path
DEFAULT_DB_PATH = Path(config.DB_PATH)


class OrderDatabase:
    """
    Manages SQLite database connections and operations for order persistence.

    Uses parameterized queries to prevent SQL injection and context managers
    for proper resource handling.
    """

    def __init__(self, db_path: Optional[str] = None):
        """
        Initialize database manager with optional custom path.

        Args:
            db_path: Path to SQLite database file. Uses default if not provided.
        """
        self.db_path = Path(db_path) if db_path else DEFAULT_DB_PATH
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialize_schema()

    @contextmanager
    def _get_connection(self):
        """Context manager for database connections."""
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _initialize_schema(self):
        """Create database tables if they don't exist."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.executescript(SQL_SCHEMA)

    def save(self, order: OrderDraft, session_id: Optional[str] = None) -> str:
        """
        Insert or replace an order and its items.

        Args:
            order: Order draft to persist
            session_id: Conversation the order came from

        Returns:
            The order_id of the saved order
        """
        customer = order.customer
        with self._get_connection() as conn:
            cursor = conn.cursor()

            cursor.execute("""
                INSERT INTO orders (
                    order_id, session_id, first_name, last_name, phone, city,
                    address, country, subtotal, delivery_fee, total_amount,
                    currency, status, failure_reason, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, NULL, ?, ?)
                ON CONFLICT(order_id) DO UPDATE SET
                    session_id = excluded.session_id,
                    first_name = excluded.first_name,
                    last_name = excluded.last_name,
                    phone = excluded.phone,
                    city = excluded.city,
                    address = excluded.address,
                    country = excluded.country,
                    subtotal = excluded.subtotal,
                    delivery_fee = excluded.delivery_fee,
                    total_amount = excluded.total_amount,
                    currency = excluded.currency,
                    status = excluded.status,
                    failure_reason = excluded.failure_reason,
                    updated_at = excluded.updated_at
            """, (
                order.order_id,
                session_id,
                customer.first_name,
                customer.last_name,
                customer.phone,
                customer.city,
                customer.address,
                customer.country,
                order.subtotal,
                order.delivery_fee or 0,
                order.total,
                order.currency,
                order.status.value,
                order.created_at.isoformat(),
                order.updated_at.isoformat()
            ))

            # Items are rewritten as a whole
            cursor.execute("DELETE FROM order_items WHERE order_id = ?", (order.order_id,))
            cursor.executemany("""
                INSERT INTO order_items (
                    order_id, product_id, product_name,
                    quantity, unit_price, line_total
                ) VALUES (?, ?, ?, ?, ?, ?)
            """, [
                (order.order_id, item.product_id, item.name, item.quantity, item.unit_price, item.line_total)
                for item in order.items
            ])

        return order.order_id

    def get_order_by_id(self, order_id: str) -> Optional[OrderDraft]:
        """
        Retrieve an order by its ID.

        Returns:
            OrderDraft if found, None otherwise
        """
        with self._get_connection() as conn:
            cursor = conn.cursor()

            cursor.execute("SELECT * FROM orders WHERE order_id = ?", (order_id,))
            row = cursor.fetchone()
            if not row:
                return None

            cursor.execute("SELECT * FROM order_items WHERE order_id = ? ORDER BY id", (order_id,))
            return self._row_to_order(row, cursor.fetchall())

    def get_orders_by_status(self, status: OrderStatus) -> List[OrderDraft]:
        with self._get_connection() as conn:
            cursor = conn.cursor()

            cursor.execute("""
                SELECT * FROM orders WHERE status = ? ORDER BY created_at DESC
            """, (status.value,))
            order_rows = cursor.fetchall()

            orders = []
            for order_row in order_rows:
                cursor.execute("""
                    SELECT * FROM order_items WHERE order_id = ? ORDER BY id
                """, (order_row['order_id'],))
                orders.append(self._row_to_order(order_row, cursor.fetchall()))

            return orders

    def get_all_orders(self, limit: int = 100) -> List[OrderDraft]:
        with self._get_connection() as conn:
            cursor = conn.cursor()

            cursor.execute("""
                SELECT * FROM orders ORDER BY created_at DESC LIMIT ?
            """, (limit,))
            order_rows = cursor.fetchall()

            orders = []
            for order_row in order_rows:
                cursor.execute("""
                    SELECT * FROM order_items WHERE order_id = ? ORDER BY id
                """, (order_row['order_id'],))
                orders.append(self._row_to_order(order_row, cursor.fetchall()))

            return orders

    def update_order_status(self, order_id: str, status: OrderStatus, reason: Optional[str] = None) -> bool:
        """
        Update the status of an existing order.

        Returns:
            True if order was updated, False if not found
        """
        with self._get_connection() as conn:
            cursor = conn.cursor()

            cursor.execute("""
                UPDATE orders
                SET status = ?, failure_reason = ?, updated_at = ?
                WHERE order_id = ?
            """, (status.value, reason, utcnow().isoformat(), order_id))

            return cursor.rowcount > 0

    def mark_paid(self, order_id: str) -> bool:
        updated = self.update_order_status(order_id, OrderStatus.PAID)
        if not updated:
            logger.warning("mark_paid: order %s not found", order_id)
        return updated

    def mark_failed(self, order_id: str, reason: str) -> bool:
        updated = self.update_order_status(order_id, OrderStatus.FAILED, reason)
        if not updated:
            logger.warning("mark_failed: order %s not found", order_id)
        return updated

    def record_attempt(self, order_id: str, attempt: PaymentAttempt) -> None:
        """Insert or update one payment attempt; attempts are never deleted."""
        with self._get_connection() as conn:
            conn.execute("""
                INSERT INTO payment_attempts (
                    transaction_id, order_id, provider, amount, currency,
                    status, checkout_url, failure_reason, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(transaction_id) DO UPDATE SET
                    status = excluded.status,
                    failure_reason = excluded.failure_reason,
                    checkout_url = excluded.checkout_url,
                    failure_reason = excluded.failure_reason,
                    updated_at = excluded.updated_at
            """, (
                attempt.transaction_id,
                order_id,
                attempt.provider.value,
                attempt.amount,
                attempt.currency,
                attempt.status.value,
                attempt.checkout_url,
                attempt.failure_reason,
                attempt.created_at.isoformat(),
                attempt.updated_at.isoformat()
            ))

    def get_attempts(self, order_id: str) -> List[PaymentAttempt]:
        with self._get_connection() as conn:
            rows = conn.execute("""
                SELECT * FROM payment_attempts WHERE order_id = ? ORDER BY created_at
            """, (order_id,)).fetchall()

        return [
            PaymentAttempt(
                transaction_id=row['transaction_id'],
                order_id=row['order_id'],
                provider=PaymentProvider(row['provider']),
                amount=row['amount'],
                currency=row['currency'],
                status=PaymentStatus(row['status']),
                checkout_url=row['checkout_url'],
                failure_reason=row['failure_reason'],
                created_at=datetime.fromisoformat(row['created_at']),
                updated_at=datetime.fromisoformat(row['updated_at'])
            )
            for row in rows
        ]

    def delete_order(self, order_id: str) -> bool:
        with self._get_connection() as conn:
            cursor = conn.cursor()

            cursor.execute("DELETE FROM payment_attempts WHERE order_id = ?", (order_id,))
            cursor.execute("DELETE FROM order_items WHERE order_id = ?", (order_id,))
            cursor.execute("DELETE FROM orders WHERE order_id = ?", (order_id,))

            return cursor.rowcount > 0

    def get_order_count(self) -> int:
        """Get total number of orders in database."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT COUNT(*) FROM orders")
            return cursor.fetchone()[0]

    def _row_to_order(self, order_row: sqlite3.Row, item_rows: List[sqlite3.Row]) -> OrderDraft:
        """Convert database rows to an OrderDraft."""
        items = [
            OrderItem(
                product_id=row['product_id'],
                name=row['product_name'],
                quantity=row['quantity'],
                unit_price=row['unit_price']
            )
            for row in item_rows
        ]

        customer = CustomerInfo(
            first_name=order_row['first_name'],
            last_name=order_row['last_name'],
            phone=order_row['phone'],
            city=order_row['city'],
            address=order_row['address'],
            country=order_row['country']
        )

        return OrderDraft(
            order_id=order_row['order_id'],
            items=items,
            customer=customer,
            delivery_fee=order_row['delivery_fee'],
            currency=order_row['currency'],
            status=OrderStatus(order_row['status']),
            created_at=datetime.fromisoformat(order_row['created_at']),
            updated_at=datetime.fromisoformat(order_row['updated_at'])
        )


SQL_SCHEMA = """
-- Order header, one row per order draft that reached the summary
CREATE TABLE IF NOT EXISTS orders (
    order_id TEXT PRIMARY KEY,              -- UUID string
    session_id TEXT,                        -- Conversation the order came from
    first_name TEXT,
    last_name TEXT,
    phone TEXT,                             -- Digits only
    city TEXT,
    address TEXT,
    country TEXT NOT NULL,
    subtotal REAL NOT NULL CHECK(subtotal >= 0),
    delivery_fee REAL NOT NULL CHECK(delivery_fee >= 0),
    total_amount REAL NOT NULL CHECK(total_amount >= 0),
    currency TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'draft',   -- draft/awaiting_payment/paid/failed/abandoned
    failure_reason TEXT,
    created_at TEXT NOT NULL,               -- ISO format timestamp
    updated_at TEXT NOT NULL
);

-- Order lines; line_total already includes bundle discounts
CREATE TABLE IF NOT EXISTS order_items (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    order_id TEXT NOT NULL,
    product_id TEXT NOT NULL,
    product_name TEXT NOT NULL,
    quantity INTEGER NOT NULL CHECK(quantity >= 1),
    unit_price REAL NOT NULL CHECK(unit_price > 0),
    line_total REAL NOT NULL CHECK(line_total >= 0),
    FOREIGN KEY (order_id) REFERENCES orders(order_id) ON DELETE CASCADE
);

-- Every payment attempt is kept for audit, including superseded ones
CREATE TABLE IF NOT EXISTS payment_attempts (
    transaction_id TEXT PRIMARY KEY,        -- Provider-issued id
    order_id TEXT NOT NULL,
    provider TEXT NOT NULL,                 -- wave/orange_money/card/cash
    amount REAL NOT NULL CHECK(amount > 0),
    currency TEXT NOT NULL,
    status TEXT NOT NULL,                   -- pending/processing/completed/failed/cancelled
    checkout_url TEXT,
    failure_reason TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_orders_status ON orders(status);
CREATE INDEX IF NOT EXISTS idx_order_items_order_id ON order_items(order_id);
CREATE INDEX IF NOT EXISTS idx_payment_attempts_order_id ON payment_attempts(order_id);
"""


def get_database() -> OrderDatabase:
    """Get the default database manager instance."""
    return OrderDatabase()
