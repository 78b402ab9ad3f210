"""User model"""
from sqlalchemy import Column, String, DateTime
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from settlement.models.base import Base


class User(Base):
    """Member accounts (keyed by the auth provider's uid)"""
    __tablename__ = "users"
    
    id = Column(String(128), primary_key=True)
    email = Column(String(255), nullable=True, index=True)
    display_name = Column(String(255), nullable=True)
    stripe_customer_id = Column(String(255), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    
    # Relationships
    subscriptions = relationship("Subscription", back_populates="user", cascade="all, delete-orphan")

    @property
    def mail_name(self) -> str:
        """Name used to greet the user in emails"""
        if self.display_name:
            return self.display_name
        if self.email:
            return self.email.split("@")[0]
        return "Member"
