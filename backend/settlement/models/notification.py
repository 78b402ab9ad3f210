"""Notification model"""
from sqlalchemy import Column, Integer, String, Boolean, Text, JSON, DateTime
from datetime import datetime, timezone
from settlement.models.base import Base


class Notification(Base):
    """In-app notification shown to a user"""
    __tablename__ = "notifications"
    
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(128), nullable=False, index=True)
    type = Column(String(50), nullable=False)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    link = Column(String(255), nullable=True)
    data = Column(JSON, nullable=True)
    read = Column(Boolean, default=False, nullable=False)
    dedupe_key = Column(String(255), unique=True, nullable=True)  # "<event_id>:<type>" for webhook-created rows
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
