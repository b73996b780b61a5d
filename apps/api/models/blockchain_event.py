"""Observed escrow contract events."""

import uuid

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.sql import func

from database import Base


class BlockchainEvent(Base):
    """One processed (or failed) contract event, unique per tx hash and type."""

    __tablename__ = "blockchain_events"
    __table_args__ = (
        UniqueConstraint("transaction_hash", "event_type", name="uq_blockchain_events_tx_type"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    booking_id = Column(String, ForeignKey("bookings.id"), nullable=True, index=True)
    event_type = Column(String, nullable=False)
    transaction_hash = Column(String, nullable=False)
    log_index = Column(Integer, nullable=True)
    event_data = Column(JSON, nullable=True)
    processing_status = Column(String, nullable=False, default="PROCESSED")
    error_message = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
