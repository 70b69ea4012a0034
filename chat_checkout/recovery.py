"""
Error recovery policy.

Turns any exception raised while handling a step into a message the
customer can act on. Every message offers a way forward: a retry, an
alternate path or a human.
"""

import logging
from typing import Any, Dict, Optional

from chat_checkout import config, messages
from chat_checkout.errors import (
    CheckoutError, CollaboratorError, InvalidTransitionError, OutOfStockError,
    PaymentProviderError, ReconciliationTimeoutError, SessionExpiredError, ValidationError
)
from chat_checkout.models import AssistantMessage, ConversationStep, MessageMetadata, PaymentStatus

logger = logging.getLogger(__name__)


class RecoveryPolicy:
    """Maps the error taxonomy to choice-bearing assistant messages."""

    def __init__(self, support_url: str = config.SUPPORT_URL):
        self.support_url = support_url

    def handle(
        self,
        error: Exception,
        session_id: str,
        step: ConversationStep,
        payload: Optional[Dict[str, Any]] = None,
    ) -> AssistantMessage:
        context = {"session_id": session_id, "step": step.value, "payload": payload}

        if isinstance(error, ValidationError):
            logger.info("Validation failed at %s for session %s: %s", step.value, session_id, error.message)
            extra = error.payload or {}
            return self._message(
                error.message,
                list(extra.get("choices", [])),
                step,
                error,
            )

        if isinstance(error, OutOfStockError):
            logger.warning("Out of stock at %s: %s", step.value, {**context, **error.to_dict()})
            name = (error.payload or {}).get("product_name")
            return self._message(
                messages.out_of_stock(name, error.quantity),
                [messages.CHOICE_OTHER_PRODUCTS, messages.CHOICE_HUMAN],
                step,
                error,
            )

        if isinstance(error, CollaboratorError):
            logger.error("Collaborator failure at %s: %s", step.value, {**context, **error.to_dict()})
            return self._message(
                messages.COLLABORATOR_PROBLEM,
                [messages.CHOICE_RETRY, messages.CHOICE_HUMAN],
                ConversationStep.ERROR_RECOVERY,
                error,
            )

        if isinstance(error, PaymentProviderError):
            logger.error("Payment provider failure at %s: %s", step.value, {**context, **error.to_dict()})
            return self._message(
                messages.payment_failed(error.message),
                [messages.CHOICE_RETRY, messages.CHOICE_CHANGE_METHOD, messages.CHOICE_HUMAN],
                ConversationStep.PAYMENT_FAILED,
                error,
                payment_status=PaymentStatus.FAILED,
            )

        if isinstance(error, ReconciliationTimeoutError):
            logger.warning("Payment confirmation timed out: %s", {**context, **error.to_dict()})
            return self._message(
                messages.PAYMENT_TIMED_OUT,
                messages.PAYMENT_CHOICES + [messages.CHOICE_HUMAN],
                ConversationStep.PAYMENT_METHOD,
                error,
                payment_status=PaymentStatus.FAILED,
            )

        if isinstance(error, SessionExpiredError):
            logger.info("Session %s expired", session_id)
            return self._message(
                messages.SESSION_EXPIRED,
                [messages.CHOICE_START_OVER, messages.CHOICE_HUMAN],
                ConversationStep.CONTACT_INFO,
                error,
            )

        if isinstance(error, InvalidTransitionError):
            logger.warning("Invalid transition at %s: %s", step.value, {**context, **error.to_dict()})
            return self._message(
                messages.INVALID_TRANSITION,
                [messages.CHOICE_RETRY, messages.CHOICE_HUMAN],
                step,
                error,
            )

        if isinstance(error, CheckoutError):
            logger.error("Checkout error at %s: %s", step.value, {**context, **error.to_dict()})
        else:
            logger.exception("Unexpected error at step %s for session %s, payload=%s", step.value, session_id, payload)
        return self._message(messages.GENERIC_APOLOGY, [messages.CHOICE_RETRY, messages.CHOICE_HUMAN], step, error)

    def handoff(self, step: ConversationStep) -> AssistantMessage:
        return AssistantMessage(
            text=messages.handoff(self.support_url),
            choices=[],
            metadata=MessageMetadata(next_step=step),
        )

    @staticmethod
    def _message(
        text: str,
        choices,
        next_step: ConversationStep,
        error: Exception,
        payment_status: Optional[PaymentStatus] = None,
    ) -> AssistantMessage:
        code = error.code if isinstance(error, CheckoutError) else "INTERNAL_ERROR"
        return AssistantMessage(
            text=text,
            choices=choices,
            metadata=MessageMetadata(next_step=next_step, payment_status=payment_status, error_code=code),
        )
