"""Stripe gateway - the only code that talks to the Stripe SDK"""
import json
import logging
from typing import Any, Dict, Optional

import stripe

from settlement.core.config import settings

logger = logging.getLogger(__name__)


def _get_stripe_value(obj: Any, key: str, default=None):
    """Safely extract value from Stripe object (supports both dict and attribute access)."""
    if obj is None:
        return default
    # Try attribute access first (Stripe objects)
    if hasattr(obj, key):
        value = getattr(obj, key, default)
        if value is not None:
            return value
    # Fall back to dict access
    if isinstance(obj, dict):
        return obj.get(key, default)
    return default


class PaymentGateway:
    """Thin wrapper over the Stripe SDK.

    Constructed per request with explicit credentials so tests can
    substitute a fake through FastAPI dependency overrides.
    """

    def __init__(self, api_key: str, webhook_secret: str):
        self.api_key = api_key
        self.webhook_secret = webhook_secret

    def construct_event(self, payload: bytes, sig_header: str) -> Dict[str, Any]:
        """Verify the signature over the raw body and return the decoded event.

        Raises:
            ValueError: secret not configured or body is not valid JSON
            stripe.SignatureVerificationError: signature mismatch or stale timestamp
        """
        if not self.webhook_secret:
            logger.error("Webhook secret not configured")
            raise ValueError("Webhook secret not configured")

        # Must run on the exact bytes received, before any parsing
        stripe.WebhookSignature.verify_header(
            payload.decode("utf-8"), sig_header, self.webhook_secret
        )
        event = json.loads(payload)
        if not isinstance(event, dict):
            raise ValueError("Invalid payload")
        return event

    def cancel_subscription(self, subscription_id: str):
        logger.info(f"Canceling Stripe subscription {subscription_id}")
        return stripe.Subscription.cancel(subscription_id, api_key=self.api_key)

    def retrieve_card(self, payment_method_id: str) -> Optional[Dict[str, str]]:
        """Return brand/last4 for a card payment method, None for other types."""
        pm = stripe.PaymentMethod.retrieve(payment_method_id, api_key=self.api_key)
        card = _get_stripe_value(pm, "card")
        if not card:
            return None
        return {
            "brand": _get_stripe_value(card, "brand"),
            "last4": _get_stripe_value(card, "last4"),
        }


def get_payment_gateway() -> PaymentGateway:
    """Dependency for FastAPI endpoints"""
    return PaymentGateway(settings.STRIPE_SECRET_KEY, settings.STRIPE_WEBHOOK_SECRET)
