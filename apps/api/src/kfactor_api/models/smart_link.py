"""Signed smart links issued by inviters."""

from __future__ import annotations

from sqlalchemy import JSON, Column, DateTime, String, func
from sqlalchemy.dialects.postgresql import UUID

from kfactor_api.db.base import Base


class SmartLink(Base):
    """Immutable share link; only its expiry retires it."""

    __tablename__ = "smart_links"

    code = Column(String(12), primary_key=True)
    inviter_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    loop = Column(String(24), nullable=False)
    params = Column(JSON, nullable=True)
    sig = Column(String(128), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
