"""Subscription model"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from settlement.models.base import Base


class Subscription(Base):
    """Read-optimized mirror of a member's Stripe subscription to one group"""
    __tablename__ = "subscriptions"
    __table_args__ = (
        UniqueConstraint("user_id", "group_id", name="uq_subscriptions_user_group"),
    )
    
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(128), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    group_id = Column(String(128), nullable=False, index=True)
    stripe_subscription_id = Column(String(255), nullable=False, index=True)
    status = Column(String(50), nullable=False)  # 'active', 'canceled', 'past_due', 'unpaid', 'trialing', ...
    plan_type = Column(String(50), nullable=True)  # 'monthly', 'yearly'
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    cancel_at_period_end = Column(Boolean, default=False, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)
    
    # Relationship
    user = relationship("User", back_populates="subscriptions")
