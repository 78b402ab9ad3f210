"""StripeEvent model"""
from sqlalchemy import Column, Integer, String, Boolean, Text, JSON, DateTime
from datetime import datetime, timezone
from settlement.models.base import Base


class StripeEventStatus:
    PROCESSING = "processing"
    HANDLED = "handled"
    FAILED = "failed"
    IGNORED = "ignored"
    ERRORED = "errored"  # handler raised; acknowledged, never re-claimed


class StripeEvent(Base):
    """Stripe webhook event ledger for idempotency"""
    __tablename__ = "stripe_webhook_events"
    
    id = Column(Integer, primary_key=True, index=True)
    event_id = Column(String(255), unique=True, nullable=False, index=True)
    event_type = Column(String(100), nullable=False, index=True)
    livemode = Column(Boolean, default=False, nullable=False)
    created = Column(DateTime(timezone=True), nullable=True)  # provider-side creation time
    status = Column(String(20), nullable=False, default=StripeEventStatus.PROCESSING)
    handled = Column(Boolean, default=False, nullable=False)
    handled_at = Column(DateTime(timezone=True), nullable=True)
    note = Column(String(255), nullable=True)
    payload = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)
    received_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
