"""Idempotent reward settlement with a cost ledger."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Mapping
from uuid import UUID, uuid4

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from kfactor_api.models import (
    LedgerEntry,
    LedgerEntryType,
    RewardGrant,
    RewardStatus,
    RewardType,
    User,
)
from kfactor_api.services.analytics import AnalyticsDispatcher
from kfactor_api.services.rewards.errors import RewardPolicyError, UserNotFoundError
from kfactor_api.services.rewards.policies import (
    RewardTrigger,
    get_reward_policy,
    total_cost_cents,
    unit_cost_cents,
)
from kfactor_api.services.rewards.safety import AllowAllSafetyCheck, SafetyCheck


DEFAULT_DENIED_REASON = "Safety check failed"
TERMINAL_STATUSES = frozenset({RewardStatus.GRANTED, RewardStatus.DENIED})


@dataclass(frozen=True)
class GrantRequest:
    user_id: UUID
    reward_type: RewardType
    dedupe_key: str
    amount: int | None = None
    loop: str | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class GrantOutcome:
    reward_id: UUID
    status: RewardStatus
    reward_type: RewardType
    amount: int
    unit_cost_cents: int
    total_cost_cents: int
    denied_reason: str | None = None
    replayed: bool = False

    @property
    def granted(self) -> bool:
        return self.status is RewardStatus.GRANTED


@dataclass(frozen=True)
class LedgerPage:
    entries: list[LedgerEntry]
    limit: int
    offset: int
    total: int

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.entries) < self.total


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RewardGrantEngine:
    """Settles rewards exactly once per dedupe key.

    The single ``INSERT ... ON CONFLICT (dedupe_key) DO UPDATE ... WHERE
    status = 'pending'`` statement is the only concurrency control. Its
    ``RETURNING`` clause yields a row only to the caller that performed the
    terminal transition, and only that caller writes the ledger entry and the
    analytics event. Everyone else replays the stored outcome.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        safety_check: SafetyCheck | None = None,
        analytics: AnalyticsDispatcher | None = None,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._db = session
        self._safety_check = safety_check or AllowAllSafetyCheck()
        self._analytics = analytics
        self._now = now

    async def grant(self, request: GrantRequest) -> GrantOutcome:
        existing = await self._find_by_dedupe_key(request.dedupe_key)
        if existing is not None and existing.status in TERMINAL_STATUSES:
            logger.info(
                "Reward grant replayed",
                dedupe_key=request.dedupe_key,
                status=existing.status.value,
            )
            return self._outcome_from_row(existing, replayed=True)

        user = await self._db.get(User, request.user_id)
        if user is None:
            raise UserNotFoundError(request.user_id)

        policy = get_reward_policy(user.persona or "student", RewardTrigger.ON_FVM_COMPLETE)
        if policy is None:
            raise RewardPolicyError("policy_missing", "No reward policy found for this persona")
        if policy.type != request.reward_type:
            raise RewardPolicyError(
                "type_mismatch",
                f"Reward type mismatch: expected {policy.type.value}, got {RewardType(request.reward_type).value}",
            )

        amount = request.amount if request.amount is not None else policy.default_quantity
        decision = await self._safety_check(
            request.user_id,
            {
                "loop": request.loop,
                "reward_type": policy.type.value,
                "amount": amount,
                "metadata": dict(request.metadata),
            },
        )

        now = self._now()
        if decision.allowed:
            status = RewardStatus.GRANTED
            denied_reason = None
            granted_at: datetime | None = now
        else:
            status = RewardStatus.DENIED
            denied_reason = decision.reason or DEFAULT_DENIED_REASON
            granted_at = None

        reward_id = await self._upsert_terminal(
            reward_id=existing.id if existing is not None else uuid4(),
            request=request,
            amount=amount,
            status=status,
            denied_reason=denied_reason,
            granted_at=granted_at,
            created_at=now,
        )
        if reward_id is None:
            # Another request settled this key between our lookup and the upsert.
            stored = await self._find_by_dedupe_key(request.dedupe_key, refresh=True)
            if stored is None:  # pragma: no cover - the conflicting row cannot vanish
                raise RuntimeError(f"Reward {request.dedupe_key} disappeared during settlement")
            logger.info("Reward grant lost settlement race", dedupe_key=request.dedupe_key)
            return self._outcome_from_row(stored, replayed=True)

        unit_cost = policy.unit_cost_cents
        total_cost = unit_cost * amount
        ledger_metadata: dict[str, Any] = {**dict(request.metadata), "reward_type": policy.type.value}
        if denied_reason is not None:
            ledger_metadata["reason"] = denied_reason

        self._db.add(
            LedgerEntry(
                user_id=request.user_id,
                reward_id=reward_id,
                type=LedgerEntryType.REWARD_GRANT if decision.allowed else LedgerEntryType.REWARD_DENIED,
                unit_cost_cents=unit_cost,
                quantity=amount,
                total_cost_cents=total_cost,
                loop=request.loop,
                metadata_json=ledger_metadata,
                created_at=now,
            )
        )
        await self._db.flush()

        if decision.allowed:
            if self._analytics is not None:
                self._analytics.dispatch(
                    "reward.granted",
                    {
                        "user_id": str(request.user_id),
                        "reward_type": policy.type.value,
                        "amount": amount,
                        "loop": request.loop,
                    },
                    user_id=str(request.user_id),
                    loop=request.loop,
                )
            logger.info(
                "Granted reward",
                user_id=str(request.user_id),
                dedupe_key=request.dedupe_key,
                reward_type=policy.type.value,
                amount=amount,
                total_cost_cents=total_cost,
            )
        else:
            logger.info(
                "Denied reward",
                user_id=str(request.user_id),
                dedupe_key=request.dedupe_key,
                reason=denied_reason,
            )

        return GrantOutcome(
            reward_id=reward_id,
            status=status,
            reward_type=policy.type,
            amount=amount,
            unit_cost_cents=unit_cost,
            total_cost_cents=total_cost,
            denied_reason=denied_reason,
        )

    async def _find_by_dedupe_key(self, dedupe_key: str, *, refresh: bool = False) -> RewardGrant | None:
        stmt = select(RewardGrant).where(RewardGrant.dedupe_key == dedupe_key)
        if refresh:
            stmt = stmt.execution_options(populate_existing=True)
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

    def _insert(self):
        dialect = self._db.get_bind().dialect.name
        if dialect == "postgresql":
            return pg_insert(RewardGrant.__table__)
        if dialect == "sqlite":
            return sqlite_insert(RewardGrant.__table__)
        raise RuntimeError(f"Unsupported database dialect for reward upsert: {dialect}")

    async def _upsert_terminal(
        self,
        *,
        reward_id: UUID,
        request: GrantRequest,
        amount: int,
        status: RewardStatus,
        denied_reason: str | None,
        granted_at: datetime | None,
        created_at: datetime,
    ) -> UUID | None:
        table = RewardGrant.__table__
        stmt = self._insert().values(
            id=reward_id,
            user_id=request.user_id,
            type=RewardType(request.reward_type),
            amount=amount,
            loop=request.loop,
            dedupe_key=request.dedupe_key,
            status=status,
            denied_reason=denied_reason,
            granted_at=granted_at,
            created_at=created_at,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.dedupe_key],
            set_={
                "status": status,
                "denied_reason": denied_reason,
                "granted_at": granted_at,
                "amount": amount,
            },
            where=table.c.status == RewardStatus.PENDING,
        ).returning(table.c.id)
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    def _outcome_from_row(row: RewardGrant, *, replayed: bool) -> GrantOutcome:
        reward_type = RewardType(row.type)
        amount = row.amount if row.amount is not None else 1
        return GrantOutcome(
            reward_id=row.id,
            status=RewardStatus(row.status),
            reward_type=reward_type,
            amount=amount,
            unit_cost_cents=unit_cost_cents(reward_type),
            total_cost_cents=total_cost_cents(reward_type, amount),
            denied_reason=row.denied_reason,
            replayed=replayed,
        )

    async def list_ledger(
        self,
        user_id: UUID,
        *,
        limit: int = 50,
        offset: int = 0,
        entry_type: LedgerEntryType | None = None,
    ) -> LedgerPage:
        bounded_limit = max(1, min(limit, 100))
        bounded_offset = max(0, offset)

        filters = [LedgerEntry.user_id == user_id]
        if entry_type is not None:
            filters.append(LedgerEntry.type == entry_type)

        stmt = (
            select(LedgerEntry)
            .where(*filters)
            .order_by(LedgerEntry.created_at.desc(), LedgerEntry.id.desc())
            .limit(bounded_limit)
            .offset(bounded_offset)
        )
        result = await self._db.execute(stmt)
        entries = list(result.scalars().all())

        total_result = await self._db.execute(select(func.count(LedgerEntry.id)).where(*filters))
        total = int(total_result.scalar_one() or 0)
        return LedgerPage(entries=entries, limit=bounded_limit, offset=bounded_offset, total=total)

    async def balances(self, user_id: UUID) -> dict[str, int]:
        """Granted totals per reward type, including zeroes."""

        stmt = (
            select(RewardGrant.type, func.coalesce(func.sum(RewardGrant.amount), 0))
            .where(RewardGrant.user_id == user_id, RewardGrant.status == RewardStatus.GRANTED)
            .group_by(RewardGrant.type)
        )
        result = await self._db.execute(stmt)
        balances = {reward_type.value: 0 for reward_type in RewardType}
        for reward_type, total in result.all():
            balances[RewardType(reward_type).value] = int(total or 0)
        return balances


__all__ = [
    "GrantOutcome",
    "GrantRequest",
    "LedgerPage",
    "RewardGrantEngine",
]
