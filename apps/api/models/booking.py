"""Booking model with its immutable settlement snapshot."""

from sqlalchemy import BigInteger, Column, DateTime, ForeignKey, Integer, Numeric, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


BOOKING_STATUSES = ("pending", "pending_payment", "paid", "completed", "cancelled", "refunded")


class Booking(Base):
    """Booking of a service.

    ``original_amount``, ``points_used``, ``points_value`` and ``usdc_paid`` are
    written once when the settlement is created and never change afterwards.
    Payout columns hold token base units as reported by the escrow contract.
    """

    __tablename__ = "bookings"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    service_id = Column(String, ForeignKey("services.id"), nullable=False, index=True)
    customer_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    provider_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    inviter_id = Column(String, ForeignKey("users.id"), nullable=True)
    status = Column(String, nullable=False, default="pending", index=True)
    scheduled_at = Column(DateTime(timezone=True), nullable=True)

    original_amount = Column(Numeric(10, 2), nullable=False)
    points_used = Column(Integer, nullable=False, default=0)
    points_value = Column(Numeric(10, 2), nullable=False, default=0)
    usdc_paid = Column(Numeric(10, 2), nullable=False)
    platform_fee_rate = Column(Integer, nullable=False)
    inviter_fee_rate = Column(Integer, nullable=False, default=0)

    blockchain_booking_id = Column(String, nullable=True, index=True)
    blockchain_tx_hash = Column(String, nullable=True)
    provider_payout = Column(BigInteger, nullable=True)
    inviter_payout = Column(BigInteger, nullable=True)
    platform_payout = Column(BigInteger, nullable=True)
    refund_amount = Column(BigInteger, nullable=True)
    cancellation_reason = Column(String, nullable=True)
    cancelled_by = Column(String, nullable=True)

    paid_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    service = relationship("Service")
    customer = relationship("User", foreign_keys=[customer_id])
    provider = relationship("User", foreign_keys=[provider_id])
    inviter = relationship("User", foreign_keys=[inviter_id])
    authorizations = relationship("BookingAuthorization", back_populates="booking", cascade="all, delete-orphan")
