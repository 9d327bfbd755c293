"""User model."""

from sqlalchemy import Column, String, DateTime
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


class User(Base):
    """Marketplace member: a vendor searching for field reps, or a field rep."""

    __tablename__ = "users"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String, unique=True, nullable=False, index=True)
    role = Column(String, nullable=False, default="vendor")
    display_name = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    credit_account = relationship("CreditAccount", back_populates="user", uselist=False)
    credit_transactions = relationship("CreditTransaction", back_populates="user")
    search_sessions = relationship("SearchSession", back_populates="user", cascade="all, delete-orphan")
    field_rep_profile = relationship("FieldRepProfile", back_populates="user", uselist=False)
