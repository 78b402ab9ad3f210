"""EmailLog model"""
from sqlalchemy import Column, Integer, String, Text, JSON, DateTime, Index
from datetime import datetime, timezone
from settlement.models.base import Base


class EmailLog(Base):
    """One row per transactional email attempt (sent, failed or skipped)"""
    __tablename__ = "email_logs"
    __table_args__ = (
        Index("ix_email_logs_source_event_type", "source", "event_id", "type"),
    )
    
    id = Column(Integer, primary_key=True, index=True)
    source = Column(String(50), nullable=False)
    event_id = Column(String(255), nullable=False)
    type = Column(String(100), nullable=False)
    status = Column(String(20), nullable=False)  # 'sent', 'failed', 'skipped'
    user_id = Column(String(128), nullable=True)
    order_id = Column(String(255), nullable=True)
    subscription_id = Column(String(255), nullable=True)
    recipient = Column(String(255), nullable=True)
    reason = Column(String(100), nullable=True)
    error = Column(Text, nullable=True)
    details = Column(JSON, nullable=True)
    sent_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
