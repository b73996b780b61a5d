"""Cached points balance per user."""

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


class UserPoints(Base):
    """Current points balance; derived from ``point_transactions``.

    ``version`` is an optimistic-concurrency counter: a flush that races with a
    concurrent writer raises ``StaleDataError`` instead of overwriting it.
    """

    __tablename__ = "user_points"
    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_user_points_balance_non_negative"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, unique=True, index=True)
    balance = Column(Integer, nullable=False, default=0)
    lifetime_earned = Column(Integer, nullable=False, default=0)
    lifetime_spent = Column(Integer, nullable=False, default=0)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    __mapper_args__ = {"version_id_col": version}

    user = relationship("User", back_populates="points_account")
