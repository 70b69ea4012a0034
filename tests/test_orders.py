"""
Tests for the session stores and the OrderManager single writer.
"""

import threading

import pytest

from chat_checkout.errors import (
    CollaboratorError, InvalidTransitionError, OutOfStockError, SessionExpiredError, ValidationError
)
from chat_checkout.models import (
    OrderStatus, PaymentAttempt, PaymentProvider, PaymentStatus, Session
)
from chat_checkout.session_store import SqliteSessionStore


@pytest.fixture
def started(orders):
    orders.start_session("s1", "couples")
    return orders


# =============================================================================
# Session stores
# =============================================================================

class TestInMemorySessionStore:

    def test_unknown_session_is_none(self, store):
        assert store.get("missing") is None

    def test_round_trip_is_a_copy(self, store):
        session = Session(session_id="s1", product_id="couples")
        store.save(session)
        loaded = store.get("s1")
        loaded.current_step = "city"
        assert store.get("s1").current_step.value == "contact-info"

    def test_inactive_session_expires(self, store, clock):
        store.save(Session(session_id="s1", product_id="couples"))
        clock.advance(3601)
        with pytest.raises(SessionExpiredError):
            store.get("s1")
        # Stays expired on later reads
        with pytest.raises(SessionExpiredError):
            store.get("s1")

    def test_live_payment_keeps_session_alive(self, store, clock):
        session = Session(session_id="s1", product_id="couples")
        session.supersede_attempt(PaymentAttempt(
            transaction_id="tx-1", order_id=session.order.order_id,
            provider=PaymentProvider.WAVE, amount=14000
        ))
        store.save(session)
        clock.advance(7200)
        assert store.get("s1") is not None
        assert store.evict_expired() == []

    def test_evict_expired(self, store, clock):
        store.save(Session(session_id="old", product_id="couples"))
        clock.advance(3601)
        store.save(Session(session_id="new", product_id="amis", last_updated=clock.now))
        assert store.evict_expired() == ["old"]
        assert len(store) == 1

    def test_expired_ids_are_forgotten_after_another_ttl(self, store, clock):
        store.save(Session(session_id="old", product_id="couples"))
        clock.advance(3601)
        store.evict_expired()
        assert store.expired_count() == 1

        clock.advance(3601)
        store.evict_expired()

        assert store.expired_count() == 0
        assert store.get("old") is None


class TestSqliteSessionStore:

    @pytest.fixture
    def sqlite_store(self, tmp_path, clock):
        return SqliteSessionStore(str(tmp_path / "sessions.db"), clock=clock)

    def test_round_trip(self, sqlite_store):
        session = Session(session_id="s1", product_id="couples", intent_score=0.8)
        sqlite_store.save(session)
        loaded = sqlite_store.get("s1")
        assert loaded.session_id == "s1"
        assert loaded.intent_score == 0.8
        assert loaded.order.order_id == session.order.order_id

    def test_survives_a_new_store_instance(self, tmp_path, clock):
        path = str(tmp_path / "sessions.db")
        SqliteSessionStore(path, clock=clock).save(Session(session_id="s1", product_id="famille"))
        assert SqliteSessionStore(path, clock=clock).get("s1").product_id == "famille"

    def test_expiry(self, sqlite_store, clock):
        sqlite_store.save(Session(session_id="s1", product_id="couples"))
        clock.advance(3601)
        with pytest.raises(SessionExpiredError):
            sqlite_store.get("s1")
        with pytest.raises(SessionExpiredError):
            sqlite_store.get("s1")

    def test_delete(self, sqlite_store):
        sqlite_store.save(Session(session_id="s1", product_id="couples"))
        assert sqlite_store.delete("s1")
        assert sqlite_store.get("s1") is None
        assert not sqlite_store.delete("s1")

    def test_evict_expired(self, sqlite_store, clock):
        sqlite_store.save(Session(session_id="s1", product_id="couples"))
        clock.advance(3601)
        assert sqlite_store.evict_expired() == ["s1"]

    def test_expired_rows_are_deleted_after_another_ttl(self, sqlite_store, clock):
        sqlite_store.save(Session(session_id="s1", product_id="couples", last_updated=clock.now))
        clock.advance(3601)
        sqlite_store.evict_expired()
        with pytest.raises(SessionExpiredError):
            sqlite_store.get("s1")

        clock.advance(3600)
        sqlite_store.evict_expired()

        assert sqlite_store.get("s1") is None


# =============================================================================
# OrderManager
# =============================================================================

class TestStartSession:

    def test_session_starts_with_product(self, orders):
        session = orders.start_session("s1", "couples")
        assert session.order.items[0].product_id == "couples"
        assert session.order.items[0].unit_price == 14000
        assert session.order.subtotal == 14000
        assert orders.find("s1") is not None

    def test_out_of_stock_product_is_refused(self, orders):
        with pytest.raises(OutOfStockError):
            orders.start_session("s1", "stvalentin")
        assert orders.find("s1") is None

    def test_unknown_product(self, orders):
        with pytest.raises(CollaboratorError):
            orders.start_session("s1", "nope")

    def test_load_missing_session(self, orders):
        with pytest.raises(SessionExpiredError):
            orders.load("missing")


class TestUpdateOrderData:

    def test_customer_fields_are_merged(self, started):
        started.update_order_data("s1", first_name="Jean", last_name="Dupont")
        order = started.update_order_data("s1", city="Thiès")
        assert order.customer.first_name == "Jean"
        assert order.customer.city == "Thiès"

    def test_delivery_fee_updates_total(self, started):
        order = started.update_order_data("s1", city="Thiès", delivery_fee=3000)
        assert order.delivery_fee == 3000
        assert order.total == order.subtotal + 3000

    def test_invalid_value_is_a_validation_error(self, started):
        with pytest.raises(ValidationError):
            started.update_order_data("s1", phone="abc")
        assert started.load("s1").order.customer.phone is None

    def test_unknown_field(self, started):
        with pytest.raises(ValidationError):
            started.update_order_data("s1", email="jean@example.com")

    def test_negative_delivery_fee(self, started):
        with pytest.raises(ValidationError):
            started.update_order_data("s1", delivery_fee=-1)

    def test_status_transitions_are_enforced(self, started):
        started.update_order_data("s1", status=OrderStatus.AWAITING_PAYMENT)
        with pytest.raises(InvalidTransitionError):
            started.update_order_data("s1", status=OrderStatus.DRAFT)
        assert started.load("s1").order.status == OrderStatus.AWAITING_PAYMENT


class TestItems:

    def test_add_item_merges_lines(self, started):
        order = started.add_item("s1", "couples", 1)
        assert len(order.items) == 1
        assert order.items[0].quantity == 2
        assert order.subtotal == 25200

    def test_add_new_line(self, started):
        order = started.add_item("s1", "maries", 1)
        assert [i.product_id for i in order.items] == ["couples", "maries"]
        assert order.subtotal == 28000

    def test_add_more_than_stock_is_refused(self, started):
        with pytest.raises(OutOfStockError):
            started.add_item("s1", "collegues", 9)
        assert len(started.load("s1").order.items) == 1

    def test_update_quantity(self, started):
        order = started.update_quantity("s1", "couples", 4)
        assert order.items[0].line_total == 44800

    def test_update_quantity_checks_stock(self, started):
        with pytest.raises(OutOfStockError):
            started.update_quantity("s1", "couples", 500)
        assert started.load("s1").order.items[0].quantity == 1

    def test_update_quantity_of_missing_line(self, started):
        with pytest.raises(ValidationError):
            started.update_quantity("s1", "amis", 2)

    def test_remove_item(self, started):
        started.add_item("s1", "amis", 1)
        order = started.remove_item("s1", "couples")
        assert [i.product_id for i in order.items] == ["amis"]

    def test_cannot_remove_last_item(self, started):
        with pytest.raises(ValidationError):
            started.remove_item("s1", "couples")

    def test_summary_projection(self, started):
        started.update_order_data("s1", city="Dakar", delivery_fee=0)
        summary = started.get_summary("s1")
        assert summary.total == 14000
        assert summary.customer.city == "Dakar"


class TestMutate:

    def test_nothing_saved_when_function_raises(self, started):
        def broken(session):
            session.current_step = "city"
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            started.mutate("s1", broken)
        assert started.load("s1").current_step.value == "contact-info"

    def test_concurrent_mutations_are_serialised(self, started):
        def bump(session):
            session.intent_score = round(session.intent_score + 0.01, 2)

        threads = [threading.Thread(target=started.mutate, args=("s1", bump)) for _ in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert started.load("s1").intent_score == 0.2

    def test_reading_attempt_status(self, started):
        def attach(session):
            session.supersede_attempt(PaymentAttempt(
                transaction_id="tx-1", order_id=session.order.order_id,
                provider=PaymentProvider.CARD, amount=session.order.total
            ))

        started.mutate("s1", attach)
        assert started.load("s1").payment_attempt.status == PaymentStatus.PENDING

    def test_mutate_stamps_store_clock(self, started, clock):
        clock.advance(600)
        started.mutate("s1", lambda session: None)
        assert started.load("s1").last_updated == clock.now

    def test_session_starts_on_store_clock(self, orders, clock):
        clock.advance(60)
        session = orders.start_session("s2", "amis")
        assert session.started_at == clock.now
        assert session.last_updated == clock.now


# =============================================================================
# Housekeeping
# =============================================================================

class TestHousekeeping:

    def test_locks_are_released_after_use(self, started):
        for i in range(50):
            with started.session_lock(f"visitor-{i}"):
                started.find(f"visitor-{i}")
            started.mutate("s1", lambda session: None)
        assert started.active_locks() == 0

    def test_lock_survives_nested_use(self, started):
        with started.session_lock("s1"):
            started.mutate("s1", lambda session: None)
            assert started.active_locks() == 1
        assert started.active_locks() == 0

    def test_evict_expired_sessions(self, started, clock):
        clock.advance(3601)
        started.start_session("s2", "amis")

        assert started.evict_expired() == ["s1"]
        assert started.find("s2") is not None
        with pytest.raises(SessionExpiredError):
            started.find("s1")
