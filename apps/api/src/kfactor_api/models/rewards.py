"""Reward grants and the cost ledger that audits every grant attempt."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import UUID

from kfactor_api.db.base import Base


def _enum_values(enum_cls: type[Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class RewardType(str, Enum):
    """Reward currencies a policy can pay out."""

    STREAK_SHIELD = "streak_shield"
    AI_MINUTES = "ai_minutes"
    BADGE = "badge"
    CREDITS = "credits"


class RewardStatus(str, Enum):
    """Lifecycle of a reward grant; granted and denied are terminal."""

    PENDING = "pending"
    GRANTED = "granted"
    DENIED = "denied"


class LedgerEntryType(str, Enum):
    REWARD_GRANT = "reward_grant"
    REWARD_DENIED = "reward_denied"


class RewardGrant(Base):
    """One row per dedupe key; the unique key is the idempotency boundary."""

    __tablename__ = "rewards"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    type = Column(
        SqlEnum(RewardType, name="reward_type", values_callable=_enum_values),
        nullable=False,
    )
    amount = Column(Integer, nullable=True)
    loop = Column(String(24), nullable=True)
    dedupe_key = Column(String(255), nullable=False, unique=True, index=True)
    status = Column(
        SqlEnum(RewardStatus, name="reward_status", values_callable=_enum_values),
        nullable=False,
        default=RewardStatus.PENDING,
        server_default=RewardStatus.PENDING.value,
        index=True,
    )
    denied_reason = Column(Text, nullable=True)
    granted_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class LedgerEntry(Base):
    """Append-only cost audit row written once per terminal grant outcome."""

    __tablename__ = "ledger_entries"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    user_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    reward_id = Column(UUID(as_uuid=True), ForeignKey("rewards.id"), nullable=True, index=True)
    type = Column(
        SqlEnum(LedgerEntryType, name="ledger_entry_type", values_callable=_enum_values),
        nullable=False,
        index=True,
    )
    unit_cost_cents = Column(Integer, nullable=False)
    quantity = Column(Integer, nullable=False)
    total_cost_cents = Column(Integer, nullable=False)
    loop = Column(String(24), nullable=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)
