"""SearchSession model persisting paid premium filters per metered session."""

import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class SearchSession(Base):
    """Entitlement flags for one metered search session."""

    __tablename__ = "search_sessions"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    platforms_paid = Column(Boolean, nullable=False, default=False)
    abc_required_paid = Column(Boolean, nullable=False, default=False)
    hud_key_required_paid = Column(Boolean, nullable=False, default=False)
    inspection_types_paid = Column(Boolean, nullable=False, default=False)
    reset_count = Column(Integer, nullable=False, default=0)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    user = relationship("User", back_populates="search_sessions")
