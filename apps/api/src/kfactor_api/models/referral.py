"""Referral links between inviters and invitees, plus pre-signup guest completions."""

from __future__ import annotations

from uuid import uuid4

from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, String, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import UUID

from kfactor_api.db.base import Base


class Referral(Base):
    """An invitee that signed up through an inviter's loop."""

    __tablename__ = "referrals"
    __table_args__ = (
        UniqueConstraint("inviter_id", "invitee_id", "loop", name="uq_referrals_inviter_invitee_loop"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    inviter_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    invitee_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    smart_link_code = Column(String(12), nullable=True, index=True)
    loop = Column(String(24), nullable=False, index=True)
    invitee_completed_action = Column(Boolean, nullable=False, default=False, server_default="false")
    inviter_rewarded = Column(Boolean, nullable=False, default=False, server_default="false")
    invitee_rewarded = Column(Boolean, nullable=False, default=False, server_default="false")
    metadata_json = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    rewarded_at = Column(DateTime(timezone=True), nullable=True)


class GuestChallengeCompletion(Base):
    """Challenge finished before registration, keyed by a client-generated guest session id."""

    __tablename__ = "guest_challenge_completions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    challenge_id = Column(String(36), nullable=False, index=True)
    guest_session_id = Column(String(64), nullable=False, index=True)
    score = Column(Integer, nullable=False)
    answers = Column(JSON, nullable=False, default=dict)
    smart_link_code = Column(String(12), nullable=True)
    inviter_id = Column(UUID(as_uuid=True), nullable=True, index=True)
    converted = Column(Boolean, nullable=False, default=False, server_default="false", index=True)
    converted_user_id = Column(UUID(as_uuid=True), nullable=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    converted_at = Column(DateTime(timezone=True), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)
