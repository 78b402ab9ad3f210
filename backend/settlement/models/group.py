"""Group model"""
from sqlalchemy import Column, String
from settlement.models.base import Base


class Group(Base):
    """Fan-club group (tenant) that members subscribe to"""
    __tablename__ = "groups"
    
    id = Column(String(128), primary_key=True)
    name = Column(String(255), nullable=False)
