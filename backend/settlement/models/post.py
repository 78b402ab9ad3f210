"""Post and Special Cheer models"""
from sqlalchemy import Column, Integer, String, DateTime, Text, ForeignKey
from datetime import datetime, timezone
from settlement.models.base import Base


class Post(Base):
    """Creator content item with embedded Special Cheer statistics"""
    __tablename__ = "posts"
    
    id = Column(String(128), primary_key=True)
    user_id = Column(String(128), nullable=True, index=True)
    created_by = Column(String(128), nullable=True)
    title = Column(String(255), nullable=True)
    
    # Stats - only ever mutated with in-database increments
    super_thanks = Column(Integer, default=0, nullable=False)
    super_thanks_count = Column(Integer, default=0, nullable=False)
    
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    @property
    def creator_id(self):
        return self.user_id or self.created_by


class PostSpecialCheer(Base):
    """Immutable Special Cheer history entry, one per settled order"""
    __tablename__ = "post_special_cheers"
    
    id = Column(Integer, primary_key=True, index=True)
    post_id = Column(String(128), ForeignKey("posts.id", ondelete="CASCADE"), nullable=False, index=True)
    order_id = Column(String(255), unique=True, nullable=False)
    user_id = Column(String(128), nullable=True)
    amount = Column(Integer, nullable=False)
    message = Column(Text, nullable=True)
    payment_status = Column(String(50), nullable=False, default="succeeded")
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
