"""Pydantic schemas for inbound Stripe webhook events

Every event type the pipeline settles has its own payload model. `classify`
turns a verified envelope into a `ClassifiedEvent` whose `kind` selects
exactly one handler; types we do not settle classify as `EventKind.UNHANDLED`.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class EventKind(str, Enum):
    PAYMENT_INTENT_PROCESSING = "payment_intent.processing"
    PAYMENT_INTENT_SUCCEEDED = "payment_intent.succeeded"
    PAYMENT_INTENT_FAILED = "payment_intent.payment_failed"
    PAYMENT_INTENT_CANCELED = "payment_intent.canceled"
    CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
    CHECKOUT_ASYNC_PAYMENT_SUCCEEDED = "checkout.session.async_payment_succeeded"
    CHECKOUT_ASYNC_PAYMENT_FAILED = "checkout.session.async_payment_failed"
    CHARGE_REFUNDED = "charge.refunded"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    UNHANDLED = "unhandled"


def _expandable_id(value: Any) -> Optional[str]:
    """Stripe fields may arrive as an ID string or as an expanded object"""
    if isinstance(value, dict):
        return value.get("id")
    return value


class _StripeObject(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("metadata", mode="before")
    @classmethod
    def _metadata_or_empty(cls, v):
        return v or {}


class PaymentIntentPayload(_StripeObject):
    last_payment_error: Optional[Dict[str, Any]] = None
    cancellation_reason: Optional[str] = None

    @property
    def uid(self) -> Optional[str]:
        return self.metadata.get("uid")

    @property
    def failure_message(self) -> str:
        return (self.last_payment_error or {}).get("message") or "Unknown error"


class CheckoutSessionPayload(_StripeObject):
    payment_method_types: List[str] = Field(default_factory=list)
    url: Optional[str] = None
    next_action: Optional[Dict[str, Any]] = None

    @field_validator("payment_method_types", mode="before")
    @classmethod
    def _types_or_empty(cls, v):
        return v or []

    @property
    def is_bank_transfer(self) -> bool:
        return "customer_balance" in self.payment_method_types

    @property
    def hosted_instructions_url(self) -> Optional[str]:
        if self.url:
            return self.url
        instructions = (self.next_action or {}).get("display_bank_transfer_instructions") or {}
        return instructions.get("hosted_instructions_url")


class ChargePayload(_StripeObject):
    payment_intent: Optional[str] = None
    charge: Optional[Any] = None

    @field_validator("payment_intent", mode="before")
    @classmethod
    def _payment_intent_id(cls, v):
        return _expandable_id(v)

    @property
    def payment_intent_id(self) -> Optional[str]:
        # Refund-shaped objects carry the intent on the nested charge
        if self.payment_intent:
            return self.payment_intent
        if isinstance(self.charge, dict):
            return _expandable_id(self.charge.get("payment_intent"))
        return None


class InvoicePayload(_StripeObject):
    customer: Optional[str] = None
    subscription: Optional[str] = None
    attempt_count: Optional[int] = None
    parent: Optional[Dict[str, Any]] = None

    @field_validator("customer", "subscription", mode="before")
    @classmethod
    def _ids(cls, v):
        return _expandable_id(v)

    @property
    def subscription_id(self) -> Optional[str]:
        # Newer API versions moved the subscription under parent.subscription_details
        if self.subscription:
            return self.subscription
        details = (self.parent or {}).get("subscription_details") or {}
        return _expandable_id(details.get("subscription"))


class SubscriptionPayload(_StripeObject):
    customer: Optional[str] = None
    status: str = "incomplete"
    current_period_end: Optional[int] = None
    cancel_at_period_end: bool = False
    default_payment_method: Optional[str] = None
    items: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("customer", "default_payment_method", mode="before")
    @classmethod
    def _ids(cls, v):
        return _expandable_id(v)

    @field_validator("cancel_at_period_end", mode="before")
    @classmethod
    def _false_if_null(cls, v):
        return bool(v)

    @property
    def group_id(self) -> str:
        return self.metadata.get("groupId") or ""

    @property
    def first_item(self) -> Dict[str, Any]:
        data = self.items.get("data") or []
        return data[0] if data else {}

    @property
    def plan_type(self) -> str:
        interval = (self.first_item.get("plan") or {}).get("interval")
        return "monthly" if interval == "month" else "yearly"

    @property
    def unit_amount(self) -> int:
        return (self.first_item.get("price") or {}).get("unit_amount") or 0

    @property
    def period_end(self) -> Optional[datetime]:
        ts = self.current_period_end or self.first_item.get("current_period_end")
        return datetime.fromtimestamp(ts, tz=timezone.utc) if ts else None


class EventData(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    object: Dict[str, Any]
    previous_attributes: Optional[Dict[str, Any]] = None


class StripeEventEnvelope(BaseModel):
    """Verified event as delivered by Stripe"""
    model_config = ConfigDict(extra="ignore")

    id: str
    type: str
    livemode: bool = False
    created: Optional[int] = None
    data: EventData

    @property
    def created_at(self) -> Optional[datetime]:
        return datetime.fromtimestamp(self.created, tz=timezone.utc) if self.created else None


Payload = Union[
    PaymentIntentPayload,
    CheckoutSessionPayload,
    ChargePayload,
    InvoicePayload,
    SubscriptionPayload,
    None,
]


class ClassifiedEvent(BaseModel):
    kind: EventKind
    event: StripeEventEnvelope
    payload: Payload = None

    @property
    def previous_attributes(self) -> Dict[str, Any]:
        return self.event.data.previous_attributes or {}


PAYLOAD_MODELS = {
    EventKind.PAYMENT_INTENT_PROCESSING: PaymentIntentPayload,
    EventKind.PAYMENT_INTENT_SUCCEEDED: PaymentIntentPayload,
    EventKind.PAYMENT_INTENT_FAILED: PaymentIntentPayload,
    EventKind.PAYMENT_INTENT_CANCELED: PaymentIntentPayload,
    EventKind.CHECKOUT_SESSION_COMPLETED: CheckoutSessionPayload,
    EventKind.CHECKOUT_ASYNC_PAYMENT_SUCCEEDED: CheckoutSessionPayload,
    EventKind.CHECKOUT_ASYNC_PAYMENT_FAILED: CheckoutSessionPayload,
    EventKind.CHARGE_REFUNDED: ChargePayload,
    EventKind.INVOICE_PAYMENT_FAILED: InvoicePayload,
    EventKind.SUBSCRIPTION_CREATED: SubscriptionPayload,
    EventKind.SUBSCRIPTION_UPDATED: SubscriptionPayload,
    EventKind.SUBSCRIPTION_DELETED: SubscriptionPayload,
}


def classify(event: StripeEventEnvelope) -> ClassifiedEvent:
    """Route an event to its kind and parse the object it carries.

    Raises pydantic.ValidationError (a ValueError) when a settled event
    type carries an object of the wrong shape.
    """
    try:
        kind = EventKind(event.type)
    except ValueError:
        return ClassifiedEvent(kind=EventKind.UNHANDLED, event=event)

    model = PAYLOAD_MODELS.get(kind)
    if model is None:
        return ClassifiedEvent(kind=EventKind.UNHANDLED, event=event)
    return ClassifiedEvent(kind=kind, event=event, payload=model.model_validate(event.data.object))
