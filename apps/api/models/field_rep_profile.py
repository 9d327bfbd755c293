"""FieldRepProfile model: the directory vendors search."""

import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, JSON, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class FieldRepProfile(Base):
    """Searchable field representative profile."""

    __tablename__ = "field_rep_profiles"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, unique=True, index=True)
    display_name = Column(String, nullable=False)
    zip_code = Column(String, nullable=False, index=True)
    coverage_zip_codes = Column(JSON, nullable=True)
    platforms = Column(JSON, nullable=True)
    inspection_types = Column(JSON, nullable=True)
    abc_certified = Column(Boolean, nullable=False, default=False)
    hud_key = Column(Boolean, nullable=False, default=False)
    hud_key_codes = Column(JSON, nullable=True)
    years_experience = Column(String, nullable=True)
    availability_status = Column(String, nullable=True)
    certifications = Column(JSON, nullable=True)
    trust_score = Column(Integer, nullable=False, default=0)
    community_score = Column(Integer, nullable=False, default=0)
    last_active_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    user = relationship("User", back_populates="field_rep_profile")
