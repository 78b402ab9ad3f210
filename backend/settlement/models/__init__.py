"""SQLAlchemy models package - imports all models so they register with Base.metadata"""
from settlement.models.base import Base
from settlement.models.user import User
from settlement.models.group import Group
from settlement.models.order import Order, OrderStatus
from settlement.models.subscription import Subscription
from settlement.models.post import Post, PostSpecialCheer
from settlement.models.notification import Notification
from settlement.models.email_log import EmailLog
from settlement.models.stripe_event import StripeEvent, StripeEventStatus

# Export all for convenience
__all__ = [
    "Base", "User", "Group", "Order", "OrderStatus", "Subscription",
    "Post", "PostSpecialCheer", "Notification", "EmailLog",
    "StripeEvent", "StripeEventStatus"
]
