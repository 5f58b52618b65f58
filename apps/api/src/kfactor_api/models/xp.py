"""Immutable XP event log; totals are always derived from it."""

from __future__ import annotations

from enum import Enum

from sqlalchemy import JSON, BigInteger, CheckConstraint, Column, DateTime, Index, Integer, String, Text, func
from sqlalchemy.dialects.postgresql import UUID

from kfactor_api.db.base import Base


class XpEventType(str, Enum):
    """Closed set of XP-earning actions (v1)."""

    CHALLENGE_COMPLETED = "challenge.completed"
    CHALLENGE_PERFECT = "challenge.perfect"
    CHALLENGE_STREAK_KEPT = "challenge.streak_kept"
    INVITE_SENT = "invite.sent"
    INVITE_ACCEPTED = "invite.accepted"
    INVITEE_FVM_REACHED = "invitee.fvm_reached"
    RESULTS_VIEWED = "results.viewed"
    PRESENCE_SESSION_MINUTE = "presence.session_minute"
    COHORT_LEADERBOARD_TOP3 = "cohort.leaderboard_top3"
    REWARD_CLAIMED = "reward.claimed"
    SESSION_TUTOR_5STAR = "session.tutor_5star"
    PARENT_RECAP_SHARED = "parent.recap_shared"
    AGENT_NUDGE_ACCEPTED = "agent.nudge_accepted"


class XpEvent(Base):
    __tablename__ = "xp_events"
    __table_args__ = (
        CheckConstraint("raw_xp >= 0", name="ck_xp_events_raw_xp_non_negative"),
        Index("idx_xp_events_user_created", "user_id", "created_at"),
    )

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    user_id = Column(UUID(as_uuid=True), nullable=False)
    persona_type = Column(String(12), nullable=False, index=True)
    event_type = Column(Text, nullable=False)
    reference_id = Column(Text, nullable=True, index=True)
    metadata_json = Column("metadata", JSON, nullable=False, default=dict)
    raw_xp = Column(Integer, nullable=False, default=1, server_default="1")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
