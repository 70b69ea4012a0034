"""
Payment reconciliation.

Applies asynchronous payment outcomes to the session that started the
payment, exactly once per transaction, and fails payments that stay
pending for too long.
"""

import logging
import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from chat_checkout import config, messages
from chat_checkout.collaborators import Inventory, OrderPersistence, PaymentEventBus
from chat_checkout.errors import SessionExpiredError
from chat_checkout.models import (
    AssistantMessage, ConversationStep, MessageMetadata, OrderStatus, PaymentAttempt,
    PaymentEvent, PaymentOutcome, PaymentStatus, Session, utcnow
)
from chat_checkout.orders import OrderManager

logger = logging.getLogger(__name__)

MessageNotifier = Callable[[str, AssistantMessage], None]

TIMEOUT_REASON = "timeout"


class ReconciliationListener:
    """
    Tracks live payment attempts and settles them.

    Every change goes through OrderManager.mutate, so an event and a user
    message for the same session never interleave.
    """

    def __init__(
        self,
        orders: OrderManager,
        bus: PaymentEventBus,
        persistence: OrderPersistence,
        inventory: Inventory,
        timeout_seconds: int = config.PAYMENT_TIMEOUT_SECONDS,
        on_message: Optional[MessageNotifier] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.orders = orders
        self.bus = bus
        self.persistence = persistence
        self.inventory = inventory
        self.timeout = timedelta(seconds=timeout_seconds)
        self.on_message = on_message
        self.clock = clock
        self._tracked: Dict[str, Tuple[str, datetime]] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def track(self, session_id: str, attempt: PaymentAttempt) -> None:
        """Start listening for the outcome of a freshly created attempt."""
        transaction_id = attempt.transaction_id
        with self._lock:
            self._tracked[transaction_id] = (session_id, self.clock())
        self.bus.subscribe(
            transaction_id,
            lambda event: self.handle_event(session_id, event),
            on_error=lambda tx, error: self.handle_transport_error(session_id, tx, error),
        )
        logger.info("Tracking transaction %s for session %s", transaction_id, session_id)

    def untrack(self, transaction_id: str) -> None:
        with self._lock:
            self._tracked.pop(transaction_id, None)
        self.bus.unsubscribe(transaction_id)

    def tracked(self) -> Dict[str, str]:
        """Session id of every tracked transaction."""
        with self._lock:
            return {tx: session_id for tx, (session_id, _) in self._tracked.items()}

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def handle_event(self, session_id: str, event: PaymentEvent) -> Optional[AssistantMessage]:
        """
        Apply a terminal payment event.

        Events for a transaction that is no longer the live attempt, or
        that is already settled, change nothing.
        """

        def apply(session: Session) -> Optional[AssistantMessage]:
            attempt = session.payment_attempt
            if attempt is None or attempt.transaction_id != event.transaction_id:
                logger.info(
                    "Ignoring %s event for transaction %s: not the live attempt of session %s",
                    event.outcome.value, event.transaction_id, session_id
                )
                return None
            if attempt.status.is_terminal:
                logger.info(
                    "Ignoring duplicate %s event for transaction %s (already %s)",
                    event.outcome.value, event.transaction_id, attempt.status.value
                )
                return None

            if event.outcome is PaymentOutcome.SUCCESS:
                message = self.settle_success(session)
            else:
                message = self.settle_failure(session, event.reason or "payment declined")
            session.outbox.append(message)
            return message

        try:
            message = self.orders.mutate(session_id, apply)
        except SessionExpiredError:
            logger.warning("Session %s is gone, dropping event for %s", session_id, event.transaction_id)
            self.untrack(event.transaction_id)
            return None

        self.untrack(event.transaction_id)
        if message is not None:
            self._notify(session_id, message)
        return message

    def handle_transport_error(self, session_id: str, transaction_id: str, error: Exception) -> None:
        """The event channel failed; payment state stays as it is."""
        logger.error("Transport error on transaction %s (session %s): %s", transaction_id, session_id, error)

        message = AssistantMessage(
            text=messages.CONNECTION_PROBLEM,
            choices=[messages.CHOICE_CHECK_STATUS, messages.CHOICE_HUMAN],
            metadata=MessageMetadata(
                next_step=ConversationStep.PAYMENT_PROCESSING,
                payment_status=PaymentStatus.PENDING,
                transaction_id=transaction_id,
            ),
        )

        def apply(session: Session) -> None:
            message.metadata.next_step = session.current_step
            session.outbox.append(message)

        try:
            self.orders.mutate(session_id, apply)
        except SessionExpiredError:
            logger.warning("Session %s is gone, transport error not delivered", session_id)
            return
        self._notify(session_id, message)

    # ------------------------------------------------------------------
    # Settlement, called with the session lock held
    # ------------------------------------------------------------------

    def settle_success(self, session: Session) -> AssistantMessage:
        """Mark the live attempt completed and the order paid."""
        attempt = session.payment_attempt
        order = session.order

        attempt.transition_to(PaymentStatus.COMPLETED)
        order.transition_to(OrderStatus.PAID)
        session.current_step = ConversationStep.PAYMENT_COMPLETED
        session.resume_step = None

        self.persistence.save(order, session.session_id)
        self.persistence.record_attempt(order.order_id, attempt)
        self.persistence.mark_paid(order.order_id)
        for item in order.items:
            self.inventory.reserve(item.product_id, item.quantity)

        logger.info("Order %s paid (transaction %s)", order.order_id, attempt.transaction_id)
        return AssistantMessage(
            text=messages.payment_confirmed(order, attempt.provider),
            choices=[messages.CHOICE_TRACK, messages.CHOICE_OTHER_PRODUCTS, messages.CHOICE_HUMAN],
            metadata=MessageMetadata(
                next_step=ConversationStep.PAYMENT_COMPLETED,
                payment_status=PaymentStatus.COMPLETED,
                transaction_id=attempt.transaction_id,
            ),
        )

    def settle_failure(
        self,
        session: Session,
        reason: str,
        next_step: ConversationStep = ConversationStep.PAYMENT_FAILED,
    ) -> AssistantMessage:
        """Mark the live attempt and the order failed."""
        attempt = session.payment_attempt
        order = session.order

        attempt.transition_to(PaymentStatus.FAILED, reason)
        order.transition_to(OrderStatus.FAILED)
        session.current_step = next_step

        self.persistence.record_attempt(order.order_id, attempt)
        self.persistence.mark_failed(order.order_id, reason)

        logger.info("Payment %s for order %s failed: %s", attempt.transaction_id, order.order_id, reason)
        if next_step is ConversationStep.PAYMENT_METHOD:
            text = messages.PAYMENT_TIMED_OUT if reason == TIMEOUT_REASON else messages.payment_failed(reason)
            choices = messages.PAYMENT_CHOICES + [messages.CHOICE_HUMAN]
        else:
            text = messages.payment_failed(reason)
            choices = [messages.CHOICE_RETRY, messages.CHOICE_CHANGE_METHOD, messages.CHOICE_HUMAN]

        return AssistantMessage(
            text=text,
            choices=choices,
            metadata=MessageMetadata(
                next_step=next_step,
                payment_status=PaymentStatus.FAILED,
                transaction_id=attempt.transaction_id,
                error_code="PAYMENT_FAILED",
            ),
        )

    # ------------------------------------------------------------------
    # Timeouts
    # ------------------------------------------------------------------

    def sweep_timeouts(self, now: Optional[datetime] = None, session_id: Optional[str] = None) -> List[str]:
        """
        Fail every tracked attempt pending for longer than the timeout.

        The deadline runs from the moment the attempt was tracked, on this
        listener's clock.

        Args:
            now: Reference time; the listener clock by default
            session_id: Only sweep the attempt of this session

        Returns:
            Transaction ids that were failed by this sweep
        """
        now = now or self.clock()
        with self._lock:
            due = [
                (transaction_id, owner)
                for transaction_id, (owner, tracked_at) in self._tracked.items()
                if now - tracked_at > self.timeout and (session_id is None or owner == session_id)
            ]

        timed_out = []
        for transaction_id, owner in due:

            def apply(session: Session, transaction_id=transaction_id) -> Optional[AssistantMessage]:
                attempt = session.payment_attempt
                if attempt is None or attempt.transaction_id != transaction_id or attempt.status.is_terminal:
                    return None
                message = self.settle_failure(session, TIMEOUT_REASON, next_step=ConversationStep.PAYMENT_METHOD)
                session.outbox.append(message)
                return message

            try:
                message = self.orders.mutate(owner, apply)
            except SessionExpiredError:
                self.untrack(transaction_id)
                continue

            self.untrack(transaction_id)
            if message is not None:
                timed_out.append(transaction_id)
                self._notify(owner, message)

        if timed_out:
            logger.info("Timed out %s pending payments", len(timed_out))
        return timed_out

    def _notify(self, session_id: str, message: AssistantMessage) -> None:
        if self.on_message is None:
            return
        try:
            self.on_message(session_id, message)
        except Exception:
            # The message stays in the outbox for the next poll.
            logger.exception("Message notifier failed for session %s", session_id)


class TimeoutWatcher:
    """
    Periodic housekeeping on a daemon thread.

    Fails payments that stayed pending too long, then evicts inactive
    sessions.
    """

    def __init__(self, listener: ReconciliationListener, interval_seconds: float = config.PAYMENT_SWEEP_INTERVAL_SECONDS):
        self.listener = listener
        self.interval = interval_seconds
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="payment-timeout-watcher", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self.listener.sweep_timeouts()
            except Exception:
                logger.exception("Payment timeout sweep failed")
            try:
                self.listener.orders.evict_expired()
            except Exception:
                logger.exception("Session eviction failed")
