"""Sink table for fire-and-forget product analytics."""

from __future__ import annotations

from sqlalchemy import JSON, BigInteger, Column, DateTime, Integer, String, func

from kfactor_api.db.base import Base


class AnalyticsEvent(Base):
    __tablename__ = "analytics_events"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    ts = Column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)
    name = Column(String(64), nullable=False, index=True)
    user_id = Column(String(36), nullable=True, index=True)
    anon_id = Column(String(64), nullable=True)
    loop = Column(String(24), nullable=True)
    props = Column(JSON, nullable=False, default=dict)
