"""User model."""

from sqlalchemy import Column, String, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


class User(Base):
    """Marketplace user; a customer, a provider, or both."""

    __tablename__ = "users"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String, unique=True, nullable=False, index=True)
    name = Column(String, nullable=True)
    wallet_address = Column(String, nullable=True, index=True)
    smart_wallet_address = Column(String, nullable=True)
    referred_by = Column(String, ForeignKey("users.id"), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    points_account = relationship("UserPoints", back_populates="user", uselist=False)
    point_transactions = relationship("PointTransaction", back_populates="user", cascade="all, delete-orphan")
    funding_records = relationship("FundingRecord", back_populates="user", cascade="all, delete-orphan")
    services = relationship("Service", back_populates="provider", cascade="all, delete-orphan")
