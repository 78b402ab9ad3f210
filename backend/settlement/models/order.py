"""Order model"""
from sqlalchemy import Column, Integer, String, DateTime, Text, JSON
from datetime import datetime, timezone
from settlement.models.base import Base


class OrderStatus:
    PENDING = "pending"
    PENDING_BANK_TRANSFER = "pending_bank_transfer"
    PROCESSING = "processing"
    PAID = "paid"
    FAILED = "failed"
    CANCELED = "canceled"
    REFUNDED = "refunded"


class Order(Base):
    """Storefront order, keyed by the PaymentIntent or Checkout Session ID"""
    __tablename__ = "orders"
    
    id = Column(String(255), primary_key=True)
    user_id = Column(String(128), nullable=True, index=True)
    status = Column(String(50), nullable=True, index=True)
    payment_status = Column(String(50), nullable=True)  # mirrors Stripe vocabulary
    payment_type = Column(String(50), nullable=True)
    items = Column(JSON, nullable=True)  # list of line item dicts
    total = Column(Integer, nullable=True)
    shipping_fee = Column(Integer, nullable=True)
    shipping_info = Column(JSON, nullable=True)
    failure_reason = Column(Text, nullable=True)
    cancel_reason = Column(String(100), nullable=True)
    hosted_instructions_url = Column(Text, nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    canceled_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    def __repr__(self):
        return f"<Order(id={self.id}, status={self.status}, payment_status={self.payment_status})>"
