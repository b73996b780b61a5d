"""Issued escrow authorizations; the nonce column enforces single use."""

import uuid

from sqlalchemy import BigInteger, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class BookingAuthorization(Base):
    """Signed booking or cancellation authorization handed to a client."""

    __tablename__ = "booking_authorizations"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    booking_id = Column(String, ForeignKey("bookings.id"), nullable=False, index=True)
    kind = Column(String, nullable=False, default="booking")
    nonce = Column(String, nullable=False, unique=True)
    signature = Column(String, nullable=False)
    amount_units = Column(BigInteger, nullable=False)
    original_amount_units = Column(BigInteger, nullable=False)
    platform_fee_rate = Column(Integer, nullable=False, default=0)
    inviter_fee_rate = Column(Integer, nullable=False, default=0)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    consumed_at = Column(DateTime(timezone=True), nullable=True)
    consumed_tx_hash = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    booking = relationship("Booking", back_populates="authorizations")
