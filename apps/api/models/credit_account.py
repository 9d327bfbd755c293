"""CreditAccount model holding a user's spendable credit balance."""

import uuid

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class CreditAccount(Base):
    """Single shared credit counter per user. Zeroed, never deleted."""

    __tablename__ = "credit_accounts"
    __table_args__ = (
        CheckConstraint("current_balance >= 0", name="ck_credit_accounts_balance_non_negative"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, unique=True, index=True)
    current_balance = Column(Integer, nullable=False, default=0)
    earned_credits = Column(Integer, nullable=False, default=0)
    paid_credits = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="credit_account")
