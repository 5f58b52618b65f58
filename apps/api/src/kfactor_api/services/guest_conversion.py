"""Bridges challenges finished as a guest into the registered account."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Mapping
from uuid import UUID, uuid4

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from kfactor_api.models import (
    GuestChallengeCompletion,
    PersonaEnum,
    Referral,
    RewardStatus,
    User,
    XpEventType,
)
from kfactor_api.services.analytics import AnalyticsDispatcher
from kfactor_api.services.rewards import (
    GrantRequest,
    RewardError,
    RewardGrantEngine,
    RewardTrigger,
    get_reward_policy,
)
from kfactor_api.services.xp import XpLedger


GUEST_COMPLETION_TTL = timedelta(days=7)
GUEST_LOOP = "buddy_challenge"
PERFECT_SCORE = 100
PERFECT_XP = 50
MIN_COMPLETION_XP = 10
INVITE_ACCEPTED_XP = 25


def completion_xp(score: int) -> tuple[XpEventType, int]:
    if score == PERFECT_SCORE:
        return XpEventType.CHALLENGE_PERFECT, PERFECT_XP
    return XpEventType.CHALLENGE_COMPLETED, max(MIN_COMPLETION_XP, score // 10)


@dataclass(frozen=True)
class ConvertedCompletion:
    challenge_id: str
    score: int
    xp_earned: int
    referral_created: bool = False
    inviter_reward_status: RewardStatus | None = None


@dataclass
class ConversionSummary:
    xp_earned: int = 0
    conversions: list[ConvertedCompletion] = field(default_factory=list)
    failed: int = 0

    @property
    def completions_converted(self) -> int:
        return len(self.conversions)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


class GuestConversionService:
    """Stores guest completions and converts them once the guest registers.

    Completions are converted one at a time inside their own SAVEPOINT so a
    failing item is rolled back and skipped without aborting the rest.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        xp_ledger: XpLedger | None = None,
        reward_engine: RewardGrantEngine | None = None,
        analytics: AnalyticsDispatcher | None = None,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._db = session
        self._xp = xp_ledger or XpLedger(session)
        self._rewards = reward_engine or RewardGrantEngine(session, analytics=analytics)
        self._now = now

    async def record_completion(
        self,
        *,
        challenge_id: str,
        guest_session_id: str,
        score: int,
        answers: Mapping[str, Any] | None = None,
        smart_link_code: str | None = None,
        inviter_id: UUID | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> GuestChallengeCompletion:
        if not 0 <= score <= 100:
            raise ValueError("score must be between 0 and 100")

        now = self._now()
        completion = GuestChallengeCompletion(
            challenge_id=challenge_id,
            guest_session_id=guest_session_id,
            score=score,
            answers=dict(answers or {}),
            smart_link_code=smart_link_code,
            inviter_id=inviter_id,
            converted=False,
            metadata_json={"completedAt": now.isoformat(), **dict(metadata or {})},
            created_at=now,
            expires_at=now + GUEST_COMPLETION_TTL,
        )
        self._db.add(completion)
        await self._db.flush()
        logger.info(
            "Stored guest completion",
            guest_session_id=guest_session_id,
            challenge_id=challenge_id,
            score=score,
        )
        return completion

    async def convert(
        self,
        guest_session_id: str,
        *,
        user_id: UUID,
        persona: PersonaEnum | str = PersonaEnum.STUDENT,
    ) -> ConversionSummary:
        summary = ConversionSummary()
        stmt = (
            select(GuestChallengeCompletion)
            .where(
                GuestChallengeCompletion.guest_session_id == guest_session_id,
                GuestChallengeCompletion.converted.is_(False),
                GuestChallengeCompletion.expires_at > self._now(),
            )
            .order_by(GuestChallengeCompletion.created_at.asc())
        )
        result = await self._db.execute(stmt)
        completions = list(result.scalars().all())

        for completion in completions:
            completion_id = str(completion.id)
            try:
                async with self._db.begin_nested():
                    converted = await self._convert_one(completion, user_id=user_id, persona=persona)
            except Exception:  # noqa: BLE001 - one bad completion must not block the others
                summary.failed += 1
                logger.exception(
                    "Failed to convert guest completion",
                    completion_id=completion_id,
                    guest_session_id=guest_session_id,
                )
                continue
            if converted is None:
                continue
            summary.conversions.append(converted)
            summary.xp_earned += converted.xp_earned

        logger.info(
            "Converted guest completions",
            guest_session_id=guest_session_id,
            user_id=str(user_id),
            converted=summary.completions_converted,
            failed=summary.failed,
        )
        return summary

    async def _convert_one(
        self,
        completion: GuestChallengeCompletion,
        *,
        user_id: UUID,
        persona: PersonaEnum | str,
    ) -> ConvertedCompletion | None:
        converted_at = await self._claim(completion, user_id=user_id)
        if converted_at is None:
            logger.info(
                "Guest completion already converted",
                completion_id=str(completion.id),
                guest_session_id=completion.guest_session_id,
            )
            return None

        metadata = completion.metadata_json or {}
        subject = metadata.get("subject") if isinstance(metadata, dict) else None
        event_type, raw_xp = completion_xp(completion.score)

        await self._xp.record_event(
            user_id=user_id,
            persona_type=persona,
            event_type=event_type,
            reference_id=completion.challenge_id,
            metadata={"subject": subject, "score": completion.score},
            raw_xp=raw_xp,
        )

        referral_created = False
        reward_status: RewardStatus | None = None
        inviter_id = completion.inviter_id
        if inviter_id is not None and inviter_id != user_id:
            referral_id, referral_created = await self._ensure_referral(completion, invitee_id=user_id)
            if referral_created:
                await self._xp.record_event(
                    user_id=inviter_id,
                    persona_type=PersonaEnum.STUDENT,
                    event_type=XpEventType.INVITE_ACCEPTED,
                    reference_id=str(referral_id),
                    metadata={"inviteId": str(referral_id), "subject": subject},
                    raw_xp=INVITE_ACCEPTED_XP,
                )
                referral = await self._db.get(Referral, referral_id)
                if referral is not None:
                    referral.inviter_rewarded = True
                    referral.rewarded_at = self._now()
            reward_status = await self._attempt_inviter_reward(completion, invitee_id=user_id)

        await self._db.flush()
        set_committed_value(completion, "converted", True)
        set_committed_value(completion, "converted_user_id", user_id)
        set_committed_value(completion, "converted_at", converted_at)

        return ConvertedCompletion(
            challenge_id=completion.challenge_id,
            score=completion.score,
            xp_earned=raw_xp,
            referral_created=referral_created,
            inviter_reward_status=reward_status,
        )

    async def _claim(self, completion: GuestChallengeCompletion, *, user_id: UUID) -> datetime | None:
        """Flip ``converted`` in the database unless another request got there first."""

        table = GuestChallengeCompletion.__table__
        converted_at = self._now()
        result = await self._db.execute(
            update(table)
            .where(table.c.id == completion.id, table.c.converted.is_(False))
            .values(converted=True, converted_user_id=user_id, converted_at=converted_at)
            .returning(table.c.id)
        )
        if result.scalar_one_or_none() is None:
            return None
        return converted_at

    def _insert(self):
        dialect = self._db.get_bind().dialect.name
        if dialect == "postgresql":
            return pg_insert(Referral.__table__)
        return sqlite_insert(Referral.__table__)

    async def _ensure_referral(
        self,
        completion: GuestChallengeCompletion,
        *,
        invitee_id: UUID,
    ) -> tuple[UUID, bool]:
        """Insert-or-ignore the referral; returns its id and whether this call created it."""

        table = Referral.__table__
        now = self._now()
        created_at = _as_utc(completion.created_at) if completion.created_at else now
        stmt = (
            self._insert()
            .values(
                {
                    "id": uuid4(),
                    "inviter_id": completion.inviter_id,
                    "invitee_id": invitee_id,
                    "smart_link_code": completion.smart_link_code,
                    "loop": GUEST_LOOP,
                    "invitee_completed_action": True,
                    "inviter_rewarded": False,
                    "invitee_rewarded": True,
                    "metadata": {
                        "challengeId": completion.challenge_id,
                        "inviteeScore": completion.score,
                        "conversionTimeMs": int((now - created_at).total_seconds() * 1000),
                    },
                    "created_at": created_at,
                    "completed_at": now,
                }
            )
            .on_conflict_do_nothing(index_elements=[table.c.inviter_id, table.c.invitee_id, table.c.loop])
            .returning(table.c.id)
        )
        result = await self._db.execute(stmt)
        inserted = result.scalar_one_or_none()
        if inserted is not None:
            return inserted, True

        existing = await self._db.execute(
            select(Referral.id).where(
                Referral.inviter_id == completion.inviter_id,
                Referral.invitee_id == invitee_id,
                Referral.loop == GUEST_LOOP,
            )
        )
        return existing.scalar_one(), False

    async def _attempt_inviter_reward(
        self,
        completion: GuestChallengeCompletion,
        *,
        invitee_id: UUID,
    ) -> RewardStatus | None:
        inviter_id = completion.inviter_id
        inviter = await self._db.get(User, inviter_id)
        if inviter is None:
            logger.warning("Skipping inviter reward; inviter not found", inviter_id=str(inviter_id))
            return None
        policy = get_reward_policy(inviter.persona or PersonaEnum.STUDENT.value, RewardTrigger.ON_FVM_COMPLETE)
        if policy is None:
            logger.info("No reward policy for inviter persona", inviter_id=str(inviter_id), persona=inviter.persona)
            return None

        request = GrantRequest(
            user_id=inviter_id,
            reward_type=policy.type,
            dedupe_key=f"referral:{inviter_id}:{invitee_id}:{completion.challenge_id}",
            loop=GUEST_LOOP,
            metadata={
                "invitee_id": str(invitee_id),
                "challenge_id": completion.challenge_id,
                "smart_link_code": completion.smart_link_code,
            },
        )
        try:
            async with self._db.begin_nested():
                outcome = await self._rewards.grant(request)
        except RewardError as exc:
            logger.warning("Inviter reward rejected", inviter_id=str(inviter_id), error=str(exc))
            return None
        return outcome.status


__all__ = [
    "ConversionSummary",
    "ConvertedCompletion",
    "GUEST_COMPLETION_TTL",
    "GuestConversionService",
    "completion_xp",
]
