"""Growth loop core tables.

Revision ID: 20261019_01
Revises: 
Create Date: 2026-10-19
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "20261019_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


reward_type = sa.Enum("streak_shield", "ai_minutes", "badge", "credits", name="reward_type")
reward_status = sa.Enum("pending", "granted", "denied", name="reward_status")
ledger_entry_type = sa.Enum("reward_grant", "reward_denied", name="ledger_entry_type")


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("display_name", sa.String(), nullable=True),
        sa.Column("persona", sa.String(length=12), nullable=False, server_default="student"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.CheckConstraint("persona IN ('student','parent','tutor')", name="ck_users_persona_valid"),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "smart_links",
        sa.Column("code", sa.String(length=12), primary_key=True),
        sa.Column("inviter_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("loop", sa.String(length=24), nullable=False),
        sa.Column("params", sa.JSON(), nullable=True),
        sa.Column("sig", sa.String(length=128), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    )
    op.create_index("ix_smart_links_inviter_id", "smart_links", ["inviter_id"])

    op.create_table(
        "rewards",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("type", reward_type, nullable=False),
        sa.Column("amount", sa.Integer(), nullable=True),
        sa.Column("loop", sa.String(length=24), nullable=True),
        sa.Column("dedupe_key", sa.String(length=255), nullable=False),
        sa.Column("status", reward_status, nullable=False, server_default="pending"),
        sa.Column("denied_reason", sa.Text(), nullable=True),
        sa.Column("granted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    )
    op.create_index("ix_rewards_user_id", "rewards", ["user_id"])
    op.create_index("ix_rewards_dedupe_key", "rewards", ["dedupe_key"], unique=True)
    op.create_index("ix_rewards_status", "rewards", ["status"])

    op.create_table(
        "ledger_entries",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("reward_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("rewards.id"), nullable=True),
        sa.Column("type", ledger_entry_type, nullable=False),
        sa.Column("unit_cost_cents", sa.Integer(), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("total_cost_cents", sa.Integer(), nullable=False),
        sa.Column("loop", sa.String(length=24), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    )
    op.create_index("ix_ledger_entries_user_id", "ledger_entries", ["user_id"])
    op.create_index("ix_ledger_entries_reward_id", "ledger_entries", ["reward_id"])
    op.create_index("ix_ledger_entries_type", "ledger_entries", ["type"])
    op.create_index("ix_ledger_entries_created_at", "ledger_entries", ["created_at"])

    op.create_table(
        "xp_events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("persona_type", sa.String(length=12), nullable=False),
        sa.Column("event_type", sa.Text(), nullable=False),
        sa.Column("reference_id", sa.Text(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.Column("raw_xp", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.CheckConstraint("raw_xp >= 0", name="ck_xp_events_raw_xp_non_negative"),
    )
    op.create_index("idx_xp_events_user_created", "xp_events", ["user_id", "created_at"])
    op.create_index("ix_xp_events_persona_type", "xp_events", ["persona_type"])
    op.create_index("ix_xp_events_reference_id", "xp_events", ["reference_id"])

    op.create_table(
        "referrals",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("inviter_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("invitee_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("smart_link_code", sa.String(length=12), nullable=True),
        sa.Column("loop", sa.String(length=24), nullable=False),
        sa.Column("invitee_completed_action", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("inviter_rewarded", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("invitee_rewarded", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rewarded_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("inviter_id", "invitee_id", "loop", name="uq_referrals_inviter_invitee_loop"),
    )
    op.create_index("ix_referrals_inviter_id", "referrals", ["inviter_id"])
    op.create_index("ix_referrals_invitee_id", "referrals", ["invitee_id"])
    op.create_index("ix_referrals_smart_link_code", "referrals", ["smart_link_code"])
    op.create_index("ix_referrals_loop", "referrals", ["loop"])

    op.create_table(
        "guest_challenge_completions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("challenge_id", sa.String(length=36), nullable=False),
        sa.Column("guest_session_id", sa.String(length=64), nullable=False),
        sa.Column("score", sa.Integer(), nullable=False),
        sa.Column("answers", sa.JSON(), nullable=False),
        sa.Column("smart_link_code", sa.String(length=12), nullable=True),
        sa.Column("inviter_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("converted", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("converted_user_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("converted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("score >= 0 AND score <= 100", name="ck_guest_completions_score_range"),
    )
    op.create_index("ix_guest_challenge_completions_challenge_id", "guest_challenge_completions", ["challenge_id"])
    op.create_index(
        "ix_guest_challenge_completions_guest_session_id", "guest_challenge_completions", ["guest_session_id"]
    )
    op.create_index("ix_guest_challenge_completions_inviter_id", "guest_challenge_completions", ["inviter_id"])
    op.create_index("ix_guest_challenge_completions_converted", "guest_challenge_completions", ["converted"])

    op.create_table(
        "analytics_events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("ts", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("name", sa.String(length=64), nullable=False),
        sa.Column("user_id", sa.String(length=36), nullable=True),
        sa.Column("anon_id", sa.String(length=64), nullable=True),
        sa.Column("loop", sa.String(length=24), nullable=True),
        sa.Column("props", sa.JSON(), nullable=False),
    )
    op.create_index("ix_analytics_events_ts", "analytics_events", ["ts"])
    op.create_index("ix_analytics_events_name", "analytics_events", ["name"])
    op.create_index("ix_analytics_events_user_id", "analytics_events", ["user_id"])


def downgrade() -> None:
    op.drop_table("analytics_events")
    op.drop_table("guest_challenge_completions")
    op.drop_table("referrals")
    op.drop_table("xp_events")
    op.drop_table("ledger_entries")
    op.drop_table("rewards")
    op.drop_table("smart_links")
    op.drop_table("users")
    ledger_entry_type.drop(op.get_bind(), checkfirst=True)
    reward_status.drop(op.get_bind(), checkfirst=True)
    reward_type.drop(op.get_bind(), checkfirst=True)
