"""PointTransaction model: append-only points audit log."""

import uuid

from sqlalchemy import JSON, CheckConstraint, Column, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


CREDIT_TYPES = ("funding_credit", "refund_credit", "admin_credit")
DEBIT_TYPES = ("booking_debit", "admin_debit", "expiry_debit")
TRANSACTION_TYPES = CREDIT_TYPES + DEBIT_TYPES
REFERENCE_TYPES = ("funding", "booking", "admin")


class PointTransaction(Base):
    """Immutable points ledger entry."""

    __tablename__ = "point_transactions"
    __table_args__ = (
        UniqueConstraint("type", "reference_type", "reference_id", name="uq_point_transactions_reference"),
        CheckConstraint("amount > 0", name="ck_point_transactions_amount_positive"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    type = Column(String, nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)
    reference_type = Column(String, nullable=True)
    reference_id = Column(String, nullable=True)
    description = Column(String, nullable=True)
    metadata_json = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    user = relationship("User", back_populates="point_transactions")
