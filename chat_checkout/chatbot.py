"""
Conversational Checkout Assistant - Main Application

Scripted purchase conversation:
1. Data collection: contact info, city (delivery fee), address, phone
2. Order summary with cross-sell suggestions
3. Payment: method selection, initiation, asynchronous confirmation

Each user message is validated against the current step. Accepted values
are written to the order draft through the OrderManager; rejected ones get
a re-prompt and leave the step unchanged. Payment outcomes arrive later
through the ReconciliationListener and land in the session outbox.
"""

import logging
import re
import uuid
from typing import Callable, Dict, List, Optional

from chat_checkout import config, messages
from chat_checkout.catalog import JsonProductCatalog, initialize_catalog
from chat_checkout.collaborators import (
    CatalogInventory, DeliveryPricing, FixedRateDeliveryPricing, OrderPersistence, ProductSearch
)
from chat_checkout.database import OrderDatabase
from chat_checkout.errors import PaymentProviderError, SessionExpiredError, ValidationError
from chat_checkout.events import InMemoryPaymentEventBus
from chat_checkout.gateway import (
    PaymentGateway, build_default_gateway, new_transaction_reference, payment_instructions
)
from chat_checkout.models import (
    AssistantMessage, ConversationStep, CustomerInfo, MessageMetadata, OrderItem, OrderStatus,
    OrderSummary, PaymentAttempt, PaymentEvent, PaymentInitResult, PaymentOutcome,
    PaymentProvider, PaymentStatus, Recommendation, Session, utcnow
)
from chat_checkout.orders import OrderManager
from chat_checkout.recommendations import RecommendationEngine, load_cross_selling, score_purchase_intent
from chat_checkout.reconciliation import MessageNotifier, ReconciliationListener, TimeoutWatcher
from chat_checkout.recovery import RecoveryPolicy
from chat_checkout.session_store import InMemorySessionStore

logger = logging.getLogger(__name__)

HANDOFF_PHRASES = ("talk to a human", "speak to a human", "parler à un humain", "human", "humain")
CONFIRM_WORDS = ("confirm", "confirmed", "yes", "oui", "ok", "valider")
MODIFY_WORDS = ("modify", "modifier", "edit")
RETRY_WORDS = ("retry", "réessayer", "try again")
QUANTITY_WORDS = ("change quantity", "quantity", "quantité")
MAX_QUANTITY = 99

PHONE_PATTERN = re.compile(r"[0-9]{9,}")
QUANTITY_PATTERN = re.compile(r"\d+")
# Whole words only: "Avenue de l'Humanité" or "Humani" are not handoff requests
HANDOFF_PATTERN = re.compile(r"\b(?:" + "|".join(re.escape(p) for p in HANDOFF_PHRASES) + r")\b")


def is_handoff_request(text: str) -> bool:
    return HANDOFF_PATTERN.search(" ".join(text.lower().split())) is not None


def parse_quantity(text: str) -> Optional[int]:
    """First number in the text, if it is a quantity we can sell."""
    match = QUANTITY_PATTERN.search(text)
    if match is None:
        return None
    quantity = int(match.group())
    return quantity if 1 <= quantity <= MAX_QUANTITY else None


def parse_provider(text: str) -> Optional[PaymentProvider]:
    """Map free text or a choice label to a payment provider."""
    lowered = text.lower()
    if "wave" in lowered:
        return PaymentProvider.WAVE
    if "orange" in lowered:
        return PaymentProvider.ORANGE_MONEY
    if "card" in lowered or "carte" in lowered:
        return PaymentProvider.CARD
    if "cash" in lowered or "delivery" in lowered or "livraison" in lowered:
        return PaymentProvider.CASH
    return None


def _matches(lowered: str, words) -> bool:
    return lowered in words or any(lowered.startswith(word + " ") for word in words)


# =============================================================================
# Conversational Checkout Assistant
# =============================================================================

class ConversationalCheckoutAssistant:
    """
    Drives one purchase conversation per session.

    Conversation progress (session.current_step) and the payment lifecycle
    (session.payment_attempt.status) are separate state machines; they
    meet only through the transaction id of the live attempt.
    """

    def __init__(
        self,
        orders: OrderManager,
        delivery: DeliveryPricing,
        gateway: PaymentGateway,
        listener: ReconciliationListener,
        recommender: RecommendationEngine,
        persistence: OrderPersistence,
        recovery: Optional[RecoveryPolicy] = None,
        product_search: Optional[ProductSearch] = None,
    ):
        self.orders = orders
        self.delivery = delivery
        self.gateway = gateway
        self.listener = listener
        self.recommender = recommender
        self.persistence = persistence
        self.recovery = recovery or RecoveryPolicy()
        self.product_search = product_search

        self._handlers: Dict[ConversationStep, Callable[[Session, str], AssistantMessage]] = {
            ConversationStep.CONTACT_INFO: self._handle_contact_info,
            ConversationStep.CITY: self._handle_city,
            ConversationStep.ADDRESS: self._handle_address,
            ConversationStep.PHONE: self._handle_phone,
            ConversationStep.SUMMARY: self._handle_summary,
            ConversationStep.QUANTITY: self._handle_quantity,
            ConversationStep.PAYMENT_METHOD: self._handle_payment_method,
            ConversationStep.PAYMENT_PROCESSING: self._handle_payment_processing,
            ConversationStep.PAYMENT_COMPLETED: self._handle_payment_completed,
            ConversationStep.PAYMENT_FAILED: self._handle_payment_failed,
            ConversationStep.ERROR_RECOVERY: self._handle_error_recovery,
        }

    def handle_user_input(self, session_id: str, text: str, product_id: Optional[str] = None) -> AssistantMessage:
        """
        Process one user message and return the assistant's answer.

        Args:
            session_id: Conversation identifier
            text: Raw user input
            product_id: Product of interest; starts a session when none exists.
                Without one, a new conversation is matched to a product by
                searching the catalog for the text.

        Returns:
            The next assistant message; errors come back as recovery messages
        """
        text = (text or "").strip()
        # Other sessions are left to the TimeoutWatcher
        self.listener.sweep_timeouts(session_id=session_id)

        with self.orders.session_lock(session_id):
            try:
                session = self.orders.find(session_id)
            except SessionExpiredError as e:
                if product_id is None:
                    return self.recovery.handle(e, session_id, ConversationStep.CONTACT_INFO, {"text": text})
                session = None

            if session is None:
                if product_id is None:
                    product_id = self._find_product(text)
                if product_id is None:
                    return self.recovery.handle(
                        SessionExpiredError(session_id), session_id, ConversationStep.CONTACT_INFO, {"text": text}
                    )
                return self._start(session_id, product_id, text)

            step = session.current_step
            if is_handoff_request(text):
                logger.info("Session %s asked for a human at %s", session_id, step.value)
                return self.recovery.handoff(step)

            try:
                session = self._record_intent(session, text)
                return self._handlers[step](session, text)
            except Exception as e:
                message = self.recovery.handle(e, session_id, step, {"text": text})
                self._apply_recovery(session_id, step, message)
                return message

    def pending_messages(self, session_id: str) -> List[AssistantMessage]:
        """Drain the messages produced out-of-band for a session."""

        def drain(session: Session) -> List[AssistantMessage]:
            pending = list(session.outbox)
            session.outbox.clear()
            return pending

        try:
            return self.orders.mutate(session_id, drain)
        except SessionExpiredError:
            return []

    # ------------------------------------------------------------------
    # Session start and bookkeeping
    # ------------------------------------------------------------------

    def _start(self, session_id: str, product_id: str, text: str) -> AssistantMessage:
        try:
            session = self.orders.start_session(session_id, product_id)
        except Exception as e:
            return self.recovery.handle(
                e, session_id, ConversationStep.CONTACT_INFO, {"text": text, "product_id": product_id}
            )

        session = self._record_intent(session, text)
        item = session.order.items[0]
        recommendations = self._recommendations(session)
        return AssistantMessage(
            text=messages.greeting(item.name, item.unit_price, session.order.currency),
            metadata=MessageMetadata(
                next_step=ConversationStep.CONTACT_INFO,
                recommendations=recommendations or None,
            ),
        )

    def _find_product(self, text: str) -> Optional[str]:
        """Best in-stock catalog match for the opening text, if relevant enough."""
        if self.product_search is None or not text:
            return None
        try:
            matches = self.product_search.search(text, n_results=1, in_stock_only=True)
        except Exception:
            logger.exception("Product search failed for %r", text)
            return None

        if not matches:
            return None
        product, relevance = matches[0]
        if relevance < config.SEARCH_MIN_RELEVANCE:
            logger.info("Best match %s for %r is not relevant enough (%.3f)", product.product_id, text, relevance)
            return None
        logger.info("Matched %r to product %s (%.3f)", text, product.product_id, relevance)
        return product.product_id

    def _record_intent(self, session: Session, text: str) -> Session:
        """Keep the strongest purchase intent seen in the conversation."""
        score = score_purchase_intent(text) if text else 0
        if score <= session.intent_score:
            return session

        def apply(s: Session) -> Session:
            s.intent_score = score
            return s.model_copy(deep=True)

        return self.orders.mutate(session.session_id, apply)

    def _go_to(self, session_id: str, step: ConversationStep) -> None:
        def apply(session: Session) -> None:
            session.current_step = step

        self.orders.mutate(session_id, apply)

    def _apply_recovery(self, session_id: str, step: ConversationStep, message: AssistantMessage) -> None:
        next_step = message.metadata.next_step
        if next_step == step or message.metadata.error_code == SessionExpiredError.code:
            return

        def apply(session: Session) -> None:
            session.current_step = next_step
            if next_step is ConversationStep.ERROR_RECOVERY:
                session.resume_step = step

        try:
            self.orders.mutate(session_id, apply)
        except SessionExpiredError:
            logger.info("Session %s expired during recovery", session_id)

    def _recommendations(self, session: Session) -> List[Recommendation]:
        """Cross-sell candidates that are not in the order and can be added."""
        in_order = [item.product_id for item in session.order.items]
        candidates = self.recommender.recommend(session.product_id, session.intent_score, exclude=in_order)
        return [
            r for r in candidates
            if self.orders.inventory.check_availability(r.product_id, 1).available
        ]

    @staticmethod
    def _reply(
        text: str,
        step: ConversationStep,
        choices: Optional[List[str]] = None,
        **metadata,
    ) -> AssistantMessage:
        return AssistantMessage(
            text=text,
            choices=choices or [],
            metadata=MessageMetadata(next_step=step, **metadata),
        )

    # ------------------------------------------------------------------
    # Data collection steps
    # ------------------------------------------------------------------

    def _handle_contact_info(self, session: Session, text: str) -> AssistantMessage:
        tokens = text.split()
        if len(tokens) < 2:
            raise ValidationError(messages.INVALID_NAME)

        first_name, last_name = tokens[0], " ".join(tokens[1:])
        self.orders.update_order_data(session.session_id, first_name=first_name, last_name=last_name)
        self._go_to(session.session_id, ConversationStep.CITY)
        return self._reply(messages.ask_city(first_name), ConversationStep.CITY)

    def _handle_city(self, session: Session, text: str) -> AssistantMessage:
        city = " ".join(text.split())
        if not city:
            raise ValidationError(messages.INVALID_CITY)

        fee = self.delivery.get_cost(city)
        order = self.orders.update_order_data(session.session_id, city=city, delivery_fee=fee)
        self._go_to(session.session_id, ConversationStep.ADDRESS)
        return self._reply(messages.delivery_quote(city, fee, order.currency), ConversationStep.ADDRESS)

    def _handle_address(self, session: Session, text: str) -> AssistantMessage:
        address = " ".join(text.split())
        if len(address) < 5:
            raise ValidationError(messages.INVALID_ADDRESS)

        self.orders.update_order_data(session.session_id, address=address)
        self._go_to(session.session_id, ConversationStep.PHONE)
        return self._reply(messages.ASK_PHONE, ConversationStep.PHONE)

    def _handle_phone(self, session: Session, text: str) -> AssistantMessage:
        digits = re.sub(r"\s+", "", text)
        if not PHONE_PATTERN.fullmatch(digits):
            raise ValidationError(messages.INVALID_PHONE)

        self.orders.update_order_data(session.session_id, phone=digits)
        self._go_to(session.session_id, ConversationStep.SUMMARY)
        return self._summary_message(session.session_id)

    # ------------------------------------------------------------------
    # Summary
    # ------------------------------------------------------------------

    def _summary_message(self, session_id: str) -> AssistantMessage:
        session = self.orders.load(session_id)
        self.persistence.save(session.order, session_id)

        summary = OrderSummary.from_order(session.order)
        recommendations = self._recommendations(session)
        return self._reply(
            messages.order_summary_text(summary),
            ConversationStep.SUMMARY,
            messages.summary_choices(recommendations, self._removable(session)),
            order_summary=summary,
            recommendations=recommendations or None,
        )

    @staticmethod
    def _removable(session: Session) -> List[str]:
        """Lines the customer may drop: everything but the product they came for."""
        return [item.name for item in session.order.items if item.product_id != session.product_id]

    @staticmethod
    def _main_item(session: Session) -> OrderItem:
        return session.order.find_item(session.product_id) or session.order.items[0]

    def _handle_summary(self, session: Session, text: str) -> AssistantMessage:
        lowered = text.lower()

        if lowered.startswith(messages.ADD_PREFIX.lower()):
            return self._add_recommended(session, text[len(messages.ADD_PREFIX):].strip())

        if lowered.startswith(messages.REMOVE_PREFIX.lower()):
            return self._remove_line(session, text[len(messages.REMOVE_PREFIX):].strip())

        if _matches(lowered, CONFIRM_WORDS):
            self._go_to(session.session_id, ConversationStep.PAYMENT_METHOD)
            return self._reply(messages.ASK_PAYMENT_METHOD, ConversationStep.PAYMENT_METHOD, messages.PAYMENT_CHOICES)

        if _matches(lowered, MODIFY_WORDS):
            return self._restart_collection(session.session_id)

        if _matches(lowered, QUANTITY_WORDS):
            quantity = parse_quantity(lowered)
            if quantity is not None:
                return self._set_quantity(session, quantity)
            self._go_to(session.session_id, ConversationStep.QUANTITY)
            return self._prompt_for(session.session_id, ConversationStep.QUANTITY)

        raise ValidationError(
            messages.INVALID_SUMMARY_CHOICE,
            payload={"choices": [messages.CHOICE_CONFIRM, messages.CHOICE_MODIFY, messages.CHOICE_CHANGE_QUANTITY]},
        )

    def _handle_quantity(self, session: Session, text: str) -> AssistantMessage:
        quantity = parse_quantity(text)
        if quantity is None:
            raise ValidationError(messages.INVALID_QUANTITY)
        return self._set_quantity(session, quantity)

    def _set_quantity(self, session: Session, quantity: int) -> AssistantMessage:
        """Apply a new quantity to the main line; stock refusal leaves the order as it was."""
        item = self._main_item(session)
        self.orders.update_quantity(session.session_id, item.product_id, quantity)
        logger.info("Session %s set %s to %s copies", session.session_id, item.product_id, quantity)
        self._go_to(session.session_id, ConversationStep.SUMMARY)
        return self._summary_message(session.session_id)

    def _add_recommended(self, session: Session, name: str) -> AssistantMessage:
        recommendations = self._recommendations(session)
        wanted = name.lower()
        match = next(
            (r for r in recommendations if r.name.lower() == wanted or r.product_id == wanted),
            None
        )
        if match is None:
            raise ValidationError(
                f"I could not find {name} among the suggestions.",
                payload={"choices": messages.summary_choices(recommendations, self._removable(session))},
            )

        self.orders.add_item(session.session_id, match.product_id, 1)
        logger.info("Session %s added cross-sell %s", session.session_id, match.product_id)
        return self._summary_message(session.session_id)

    def _remove_line(self, session: Session, name: str) -> AssistantMessage:
        wanted = name.lower()
        match = next(
            (
                item for item in session.order.items
                if item.product_id != session.product_id
                and (item.name.lower() == wanted or item.product_id == wanted)
            ),
            None
        )
        if match is None:
            raise ValidationError(
                f"{name} is not an item you can remove from this order.",
                payload={"choices": messages.summary_choices(self._recommendations(session), self._removable(session))},
            )

        self.orders.remove_item(session.session_id, match.product_id)
        logger.info("Session %s removed %s", session.session_id, match.product_id)
        return self._summary_message(session.session_id)

    def _restart_collection(self, session_id: str) -> AssistantMessage:
        """Clear the customer block, keep the items, drop the payment reference."""

        def apply(session: Session) -> Optional[str]:
            order = session.order
            order.customer = CustomerInfo()
            order.delivery_fee = None
            order.recalculate()
            order.updated_at = utcnow()

            live = session.payment_attempt.transaction_id if session.has_live_payment else None
            if session.payment_attempt is not None:
                session.supersede_attempt(None)
            session.current_step = ConversationStep.CONTACT_INFO
            session.resume_step = None
            return live

        discarded = self.orders.mutate(session_id, apply)
        if discarded:
            # The provider-side charge is left to the provider's reversal process.
            self.listener.untrack(discarded)
        return self._reply(messages.ASK_CONTACT, ConversationStep.CONTACT_INFO)

    # ------------------------------------------------------------------
    # Payment steps
    # ------------------------------------------------------------------

    def _handle_payment_method(self, session: Session, text: str) -> AssistantMessage:
        provider = parse_provider(text)
        if provider is None:
            raise ValidationError(
                messages.INVALID_PAYMENT_METHOD,
                payload={"choices": messages.PAYMENT_CHOICES + [messages.CHOICE_HUMAN]},
            )
        return self._start_payment(session.session_id, provider)

    def _start_payment(self, session_id: str, provider: PaymentProvider) -> AssistantMessage:
        session = self.orders.load(session_id)
        order = session.order
        self.persistence.save(order, session_id)

        result = self.gateway.initiate(order.total, order.currency, provider, order.customer, order.order_id)
        if not result.success:
            return self._record_failed_initiation(session, provider, result)

        attempt = PaymentAttempt(
            transaction_id=result.transaction_id,
            order_id=order.order_id,
            provider=provider,
            amount=order.total,
            currency=order.currency,
            checkout_url=result.checkout_url,
            created_at=self.listener.clock(),
        )

        if result.status is PaymentStatus.COMPLETED:
            # Cash on delivery: settled within this turn, never left pending.
            def settle(s: Session) -> AssistantMessage:
                s.order.transition_to(OrderStatus.AWAITING_PAYMENT)
                s.supersede_attempt(attempt)
                return self.listener.settle_success(s)

            return self.orders.mutate(session_id, settle)

        # Listen before the attempt becomes visible so no callback is missed.
        self.listener.track(session_id, attempt)

        def await_payment(s: Session) -> None:
            s.order.transition_to(OrderStatus.AWAITING_PAYMENT)
            s.supersede_attempt(attempt)
            s.current_step = ConversationStep.PAYMENT_PROCESSING
            # Under the session lock, so a settlement cannot be overwritten
            self.persistence.save(s.order, session_id)
            self.persistence.record_attempt(s.order.order_id, attempt)

        try:
            self.orders.mutate(session_id, await_payment)
        except Exception:
            self.listener.untrack(attempt.transaction_id)
            raise

        text = (
            payment_instructions(provider, attempt.transaction_id, attempt.checkout_url)
            + "\n\nI will confirm here as soon as the payment is received."
        )
        return self._reply(
            text,
            ConversationStep.PAYMENT_PROCESSING,
            [messages.CHOICE_CHECK_STATUS, messages.CHOICE_CHANGE_METHOD, messages.CHOICE_HUMAN],
            payment_status=PaymentStatus.PENDING,
            transaction_id=attempt.transaction_id,
            checkout_url=attempt.checkout_url,
        )

    def _record_failed_initiation(
        self,
        session: Session,
        provider: PaymentProvider,
        result: PaymentInitResult,
    ) -> AssistantMessage:
        order = session.order
        attempt = PaymentAttempt(
            transaction_id=result.transaction_id or new_transaction_reference("local"),
            order_id=order.order_id,
            provider=provider,
            amount=order.total,
            currency=order.currency,
            created_at=self.listener.clock(),
        )

        def fail(s: Session) -> AssistantMessage:
            s.order.transition_to(OrderStatus.AWAITING_PAYMENT)
            s.supersede_attempt(attempt)
            return self.listener.settle_failure(s, result.error or "payment could not be started")

        message = self.orders.mutate(session.session_id, fail)
        message.metadata.error_code = PaymentProviderError.code
        return message

    def _cancel_payment(self, session_id: str) -> AssistantMessage:
        def apply(session: Session) -> Optional[str]:
            attempt = session.payment_attempt
            session.current_step = ConversationStep.PAYMENT_METHOD
            if attempt is None or attempt.status.is_terminal:
                return None
            attempt.transition_to(PaymentStatus.CANCELLED, "changed payment method")
            session.order.transition_to(OrderStatus.FAILED)
            self.persistence.record_attempt(session.order.order_id, attempt)
            self.persistence.mark_failed(session.order.order_id, "cancelled")
            return attempt.transaction_id

        cancelled = self.orders.mutate(session_id, apply)
        if cancelled:
            self.listener.untrack(cancelled)
            logger.info("Session %s cancelled payment %s", session_id, cancelled)
        return self._reply(messages.PAYMENT_CANCELLED, ConversationStep.PAYMENT_METHOD, messages.PAYMENT_CHOICES)

    def _handle_payment_processing(self, session: Session, text: str) -> AssistantMessage:
        lowered = text.lower()
        if "change" in lowered or "cancel" in lowered:
            return self._cancel_payment(session.session_id)

        attempt = session.payment_attempt
        if attempt is None:
            self._go_to(session.session_id, ConversationStep.PAYMENT_METHOD)
            return self._reply(messages.ASK_PAYMENT_METHOD, ConversationStep.PAYMENT_METHOD, messages.PAYMENT_CHOICES)

        return self._reply(
            messages.PAYMENT_PENDING,
            ConversationStep.PAYMENT_PROCESSING,
            [messages.CHOICE_CHECK_STATUS, messages.CHOICE_CHANGE_METHOD, messages.CHOICE_HUMAN],
            payment_status=attempt.status,
            transaction_id=attempt.transaction_id,
            checkout_url=attempt.checkout_url,
        )

    def _handle_payment_failed(self, session: Session, text: str) -> AssistantMessage:
        lowered = text.lower()

        if _matches(lowered, RETRY_WORDS):
            attempt = session.payment_attempt
            if attempt is None:
                self._go_to(session.session_id, ConversationStep.PAYMENT_METHOD)
                return self._reply(
                    messages.ASK_PAYMENT_METHOD, ConversationStep.PAYMENT_METHOD, messages.PAYMENT_CHOICES
                )
            return self._start_payment(session.session_id, attempt.provider)

        if "change" in lowered:
            self._go_to(session.session_id, ConversationStep.PAYMENT_METHOD)
            return self._reply(messages.ASK_PAYMENT_METHOD, ConversationStep.PAYMENT_METHOD, messages.PAYMENT_CHOICES)

        provider = parse_provider(text)
        if provider is not None:
            return self._start_payment(session.session_id, provider)

        raise ValidationError(
            messages.INVALID_FAILED_CHOICE,
            payload={"choices": [messages.CHOICE_RETRY, messages.CHOICE_CHANGE_METHOD, messages.CHOICE_HUMAN]},
        )

    def _handle_payment_completed(self, session: Session, text: str) -> AssistantMessage:
        lowered = text.lower()
        choices = [messages.CHOICE_TRACK, messages.CHOICE_OTHER_PRODUCTS, messages.CHOICE_HUMAN]

        if "track" in lowered:
            return self._reply(messages.order_tracking(session.order), ConversationStep.PAYMENT_COMPLETED, choices)

        if "other" in lowered or "products" in lowered:
            recommendations = self._recommendations(session)
            if recommendations:
                names = ", ".join(r.name for r in recommendations)
                return self._reply(
                    f"You might also like: {names}.",
                    ConversationStep.PAYMENT_COMPLETED,
                    choices,
                    recommendations=recommendations,
                )

        return self._reply(messages.post_purchase(session.order), ConversationStep.PAYMENT_COMPLETED, choices)

    # ------------------------------------------------------------------
    # Error recovery
    # ------------------------------------------------------------------

    def _handle_error_recovery(self, session: Session, text: str) -> AssistantMessage:
        if not _matches(text.lower(), RETRY_WORDS):
            raise ValidationError(
                messages.INVALID_RECOVERY_CHOICE,
                payload={"choices": [messages.CHOICE_RETRY, messages.CHOICE_HUMAN]},
            )

        step = session.resume_step or ConversationStep.CONTACT_INFO

        def resume(s: Session) -> None:
            s.current_step = step
            s.resume_step = None

        self.orders.mutate(session.session_id, resume)
        return self._prompt_for(session.session_id, step)

    def _prompt_for(self, session_id: str, step: ConversationStep) -> AssistantMessage:
        """The question asked when a step is entered again."""
        prompts = {
            ConversationStep.CONTACT_INFO: messages.ASK_CONTACT,
            ConversationStep.CITY: messages.ASK_CITY,
            ConversationStep.ADDRESS: messages.ASK_ADDRESS,
            ConversationStep.PHONE: messages.ASK_PHONE,
        }
        if step in prompts:
            return self._reply(prompts[step], step)
        if step is ConversationStep.QUANTITY:
            session = self.orders.load(session_id)
            item = self._main_item(session)
            return self._reply(messages.ask_quantity(item.name, item.unit_price, session.order.currency), step)
        if step is ConversationStep.SUMMARY:
            return self._summary_message(session_id)
        if step is ConversationStep.PAYMENT_FAILED:
            return self._reply(
                messages.INVALID_FAILED_CHOICE,
                step,
                [messages.CHOICE_RETRY, messages.CHOICE_CHANGE_METHOD, messages.CHOICE_HUMAN],
            )
        if step is ConversationStep.PAYMENT_PROCESSING:
            return self._reply(
                messages.PAYMENT_PENDING,
                step,
                [messages.CHOICE_CHECK_STATUS, messages.CHOICE_CHANGE_METHOD, messages.CHOICE_HUMAN],
            )
        if step is ConversationStep.PAYMENT_COMPLETED:
            session = self.orders.load(session_id)
            return self._reply(messages.post_purchase(session.order), step, [messages.CHOICE_TRACK, messages.CHOICE_HUMAN])
        return self._reply(messages.ASK_PAYMENT_METHOD, ConversationStep.PAYMENT_METHOD, messages.PAYMENT_CHOICES)


def build_assistant(
    db_path: Optional[str] = None,
    products_path: Optional[str] = None,
    on_message: Optional[MessageNotifier] = None,
    semantic_search: Optional[bool] = None,
) -> ConversationalCheckoutAssistant:
    """
    Assistant wired with the default collaborators from the configuration.

    Free-text product search needs the embeddings API; it is on whenever
    OPENAI_API_KEY is set unless semantic_search says otherwise.
    """
    if semantic_search is None:
        semantic_search = bool(config.OPENAI_API_KEY)
    catalog = JsonProductCatalog(file_path=products_path)
    inventory = CatalogInventory(catalog)
    orders = OrderManager(InMemorySessionStore(), catalog, inventory)
    database = OrderDatabase(db_path)
    listener = ReconciliationListener(
        orders,
        InMemoryPaymentEventBus(),
        database,
        inventory,
        on_message=on_message,
    )
    return ConversationalCheckoutAssistant(
        orders=orders,
        delivery=FixedRateDeliveryPricing(),
        gateway=build_default_gateway(),
        listener=listener,
        recommender=RecommendationEngine(catalog, load_cross_selling(products_path)),
        persistence=database,
        product_search=initialize_catalog(products_path=products_path) if semantic_search else None,
    )


# =============================================================================
# CLI Interface
# =============================================================================

def _print_message(message: AssistantMessage) -> List[str]:
    print(f"\nAssistant: {message.text}")
    for i, choice in enumerate(message.choices, 1):
        print(f"  [{i}] {choice}")
    return message.choices


def run_cli():
    """Run the checkout assistant in command-line interface mode."""
    print("=" * 60)
    print("Welcome to the Conversational Checkout!")
    print("=" * 60)
    print("\nPick a product and I will take your order.")
    print("Type 'quit' or 'exit' to end the conversation.")
    print("Type 'reset' to start a new order.")
    print("Type 'orders' to view recent orders.")
    print("Type 'paid' or 'declined' to simulate the payment callback.")
    print("-" * 60)

    try:
        assistant = build_assistant()
    except Exception as e:
        print(f"\nError initializing assistant: {e}")
        print("Make sure you have set up your environment variables correctly.")
        print("See .env.example for required configuration.")
        return

    watcher = TimeoutWatcher(assistant.listener)
    watcher.start()

    products = assistant.orders.catalog.all()
    session_id = None
    choices: List[str] = []

    while True:
        try:
            if session_id is None:
                print("\nProducts:")
                for product in products:
                    print(f"  {product.product_id:<12} {product.name} ({product.stock_status.value})")
                wanted = input("\nProduct ID or what you are looking for: ").strip()
                if wanted.lower() in ['quit', 'exit']:
                    break
                session_id = str(uuid.uuid4())
                if assistant.orders.catalog.get(wanted) is not None:
                    message = assistant.handle_user_input(session_id, "I want to buy it", product_id=wanted)
                else:
                    message = assistant.handle_user_input(session_id, wanted)
                choices = _print_message(message)
                if assistant.orders.find(session_id) is None:
                    session_id = None
                continue

            user_input = input("\nYou: ").strip()

            if not user_input:
                continue

            if user_input.lower() in ['quit', 'exit']:
                print("\nThank you for shopping with us! Goodbye!")
                break

            if user_input.lower() == 'reset':
                session_id = None
                choices = []
                continue

            if user_input.lower() == 'orders':
                orders = assistant.persistence.get_all_orders(limit=5)
                if not orders:
                    print("\nNo orders found.")
                else:
                    print("\n--- Recent Orders ---")
                    for order in orders:
                        print(f"  Order ID: {order.order_id[:8]}...")
                        print(f"  Customer: {order.customer.full_name}")
                        print(f"  Total: {order.total:.0f} {order.currency}")
                        print(f"  Status: {order.status.value}")
                        print("-" * 30)
                continue

            if user_input.lower() in ['paid', 'declined']:
                session = assistant.orders.find(session_id)
                if session is None or not session.has_live_payment:
                    print("\nNo payment is waiting for confirmation.")
                    continue
                outcome = PaymentOutcome.SUCCESS if user_input.lower() == 'paid' else PaymentOutcome.FAILURE
                assistant.listener.bus.publish(PaymentEvent(
                    transaction_id=session.payment_attempt.transaction_id,
                    outcome=outcome,
                    reason=None if outcome is PaymentOutcome.SUCCESS else "declined",
                ))
            else:
                if user_input.isdigit() and 1 <= int(user_input) <= len(choices):
                    user_input = choices[int(user_input) - 1]
                choices = _print_message(assistant.handle_user_input(session_id, user_input))

            for pending in assistant.pending_messages(session_id):
                choices = _print_message(pending)

        except KeyboardInterrupt:
            print("\n\nThank you for shopping with us! Goodbye!")
            break
        except SessionExpiredError:
            print("\nYour session has expired, let's start again.")
            session_id = None
        except Exception as e:
            print(f"\nError: {e}")
            print("Please try again.")

    watcher.stop(timeout=1)


if __name__ == "__main__":
    logging.basicConfig(level=logging.WARNING, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    run_cli()
