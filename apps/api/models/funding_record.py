"""FundingRecord model for card/fiat-to-USDC top-ups."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, Numeric, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class FundingRecord(Base):
    """One funding event; the fee withheld by the on-ramp becomes points."""

    __tablename__ = "funding_records"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    requested_amount = Column(Numeric(10, 2), nullable=False)
    received_amount = Column(Numeric(10, 2), nullable=False)
    fee_amount = Column(Numeric(10, 2), nullable=False)
    points_credited = Column(Integer, nullable=False, default=0)
    payment_method = Column(String, nullable=True, default="credit_card")
    payment_provider = Column(String, nullable=True)
    transaction_hash = Column(String, nullable=True, unique=True, index=True)
    external_reference = Column(String, nullable=True)
    status = Column(String, nullable=False, default="pending", index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    completed_at = Column(DateTime(timezone=True), nullable=True)

    user = relationship("User", back_populates="funding_records")
