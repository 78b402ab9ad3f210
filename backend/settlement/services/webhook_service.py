"""Stripe webhook processing: verify, claim, classify, dispatch"""
from typing import Any, Callable, Dict

import stripe
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.orm import Session

from settlement.core.config import settings
from settlement.core.logging import webhook_logger
from settlement.core.metrics import webhook_events_counter
from settlement.schemas.stripe_events import ClassifiedEvent, EventKind, StripeEventEnvelope, classify
from settlement.services import ledger_service
from settlement.services import settlement_service as handlers
from settlement.services.email_service import EmailSender
from settlement.services.settlement_service import SettlementContext
from settlement.services.stripe_service import PaymentGateway

logger = webhook_logger

TRANSIENT_INFRA_ERRORS = (
    OperationalError,
    InterfaceError,
    stripe.APIConnectionError,
    stripe.RateLimitError,
)


class WebhookRetryableError(Exception):
    """Processing hit a transient failure; the provider should redeliver"""

    def __init__(self, event_id: str, message: str):
        super().__init__(message)
        self.event_id = event_id


HANDLERS: Dict[EventKind, Callable[[SettlementContext, ClassifiedEvent], None]] = {
    EventKind.PAYMENT_INTENT_PROCESSING: handlers.handle_payment_intent_processing,
    EventKind.PAYMENT_INTENT_SUCCEEDED: handlers.handle_payment_intent_succeeded,
    EventKind.PAYMENT_INTENT_FAILED: handlers.handle_payment_intent_failed,
    EventKind.PAYMENT_INTENT_CANCELED: handlers.handle_payment_intent_canceled,
    EventKind.CHECKOUT_SESSION_COMPLETED: handlers.handle_checkout_session_completed,
    EventKind.CHECKOUT_ASYNC_PAYMENT_SUCCEEDED: handlers.handle_checkout_async_payment_succeeded,
    EventKind.CHECKOUT_ASYNC_PAYMENT_FAILED: handlers.handle_checkout_async_payment_failed,
    EventKind.CHARGE_REFUNDED: handlers.handle_charge_refunded,
    EventKind.INVOICE_PAYMENT_FAILED: handlers.handle_invoice_payment_failed,
    EventKind.SUBSCRIPTION_CREATED: handlers.handle_subscription_event,
    EventKind.SUBSCRIPTION_UPDATED: handlers.handle_subscription_event,
    EventKind.SUBSCRIPTION_DELETED: handlers.handle_subscription_event,
    EventKind.UNHANDLED: handlers.handle_unhandled,
}

_missing = set(EventKind) - set(HANDLERS)
if _missing:
    raise RuntimeError(f"No webhook handler registered for: {sorted(k.value for k in _missing)}")


def _count(event_type: str, outcome: str):
    webhook_events_counter.labels(event_type=event_type, outcome=outcome).inc()


def process_stripe_webhook(
    payload: bytes,
    sig_header: str,
    db: Session,
    gateway: PaymentGateway,
    mailer: EmailSender,
) -> Dict[str, Any]:
    """Process one Stripe webhook delivery

    Verifies the signature, claims the event in the ledger, and runs the
    handler for its kind. Processing errors are logged and acknowledged
    with a 2xx so that Stripe does not retry; only transient infrastructure
    failures release the claim and ask for a redelivery.

    Args:
        payload: Raw request body as bytes (must not be parsed by middleware)
        sig_header: Stripe signature header
        db: Database session
        gateway: Stripe gateway
        mailer: Transactional email sender

    Returns:
        Dict with status information

    Raises:
        ValueError: For invalid payload
        stripe.SignatureVerificationError: For invalid signature
        WebhookRetryableError: For transient failures when retries are enabled
    """
    try:
        raw_event = gateway.construct_event(payload, sig_header)
    except stripe.SignatureVerificationError as e:
        logger.error(f"Invalid webhook signature: {e}")
        _count("unknown", "invalid_signature")
        raise
    except ValueError as e:
        logger.error(f"Invalid webhook payload: {e}")
        raise ValueError("Invalid payload")

    # pydantic.ValidationError is a ValueError, so a malformed envelope is a 400
    event = StripeEventEnvelope.model_validate(raw_event)

    if event.livemode != settings.STRIPE_LIVE_MODE:
        note = f"livemode={event.livemode} does not match STRIPE_LIVE_MODE={settings.STRIPE_LIVE_MODE}"
        logger.warning(f"Ignoring webhook event {event.id}: {note}")
        ledger_service.record_ignored(event, note, db)
        _count(event.type, "ignored_livemode")
        return {"received": True, "status": "ignored"}

    if not ledger_service.mark_if_new(event, db):
        logger.info(f"Webhook event {event.id} already processed")
        _count(event.type, "duplicate")
        return {"received": True, "status": "already_processed"}

    ctx = SettlementContext(db=db, gateway=gateway, mailer=mailer)
    try:
        classified = classify(event)
        HANDLERS[classified.kind](ctx, classified)
    except TRANSIENT_INFRA_ERRORS as e:
        db.rollback()
        logger.error(f"Transient error processing webhook {event.id}: {e}", exc_info=True)
        ledger_service.mark_failed(event.id, str(e) or type(e).__name__, db)
        if settings.WEBHOOK_RETRY_ON_TRANSIENT_ERRORS:
            _count(event.type, "retry_requested")
            raise WebhookRetryableError(event.id, str(e))
        _count(event.type, "error")
        return {"received": True, "status": "error_logged"}
    except Exception as e:
        # Acknowledge anyway: Stripe retries every non-2xx response
        db.rollback()
        logger.error(f"Error processing webhook {event.id}: {e}", exc_info=True)
        ledger_service.mark_errored(event.id, str(e) or type(e).__name__, db)
        _count(event.type, "error")
        return {"received": True, "status": "error_logged"}

    ledger_service.mark_handled(event.id, db)
    outcome = "unhandled" if classified.kind == EventKind.UNHANDLED else "processed"
    _count(event.type, outcome)
    logger.info(f"Successfully processed webhook event {event.id} of type {event.type}")
    return {"received": True, "status": "success"}
