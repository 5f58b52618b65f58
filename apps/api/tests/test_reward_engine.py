import asyncio
from uuid import uuid4

import pytest
from sqlalchemy import func, select

from kfactor_api.models import (
    LedgerEntry,
    LedgerEntryType,
    PersonaEnum,
    RewardGrant,
    RewardStatus,
    RewardType,
    User,
)
from kfactor_api.services.analytics import AnalyticsDispatcher
from kfactor_api.services.rewards import (
    GrantRequest,
    RewardGrantEngine,
    RewardPolicyError,
    SafetyDecision,
    UserNotFoundError,
)


class DenyingSafetyCheck:
    def __init__(self, reason: str | None = "velocity_exceeded") -> None:
        self.reason = reason
        self.calls = 0

    async def __call__(self, user_id, context) -> SafetyDecision:
        self.calls += 1
        return SafetyDecision(allowed=False, reason=self.reason)


class GatedSafetyCheck:
    """Parks the grant between the dedupe lookup and the upsert until ``release`` is set."""

    def __init__(self, release: asyncio.Event) -> None:
        self.arrived = asyncio.Event()
        self._release = release

    async def __call__(self, user_id, context) -> SafetyDecision:
        self.arrived.set()
        await self._release.wait()
        return SafetyDecision(allowed=True)


def _request(user_id, **overrides) -> GrantRequest:
    values = {
        "user_id": user_id,
        "reward_type": RewardType.AI_MINUTES,
        "dedupe_key": "k1",
        "amount": 15,
        "loop": "buddy_challenge",
    }
    values.update(overrides)
    return GrantRequest(**values)


async def _ledger_rows(session_factory) -> list[LedgerEntry]:
    async with session_factory() as session:
        return list((await session.execute(select(LedgerEntry))).scalars().all())


async def _reward_rows(session_factory) -> list[RewardGrant]:
    async with session_factory() as session:
        return list((await session.execute(select(RewardGrant))).scalars().all())


@pytest.mark.asyncio
async def test_grant_writes_reward_ledger_and_event(session_factory, make_user) -> None:
    user = await make_user("student@example.com")
    analytics = AnalyticsDispatcher(session_factory)

    async with session_factory() as session:
        outcome = await RewardGrantEngine(session, analytics=analytics).grant(_request(user.id))
        await session.commit()

    assert outcome.granted
    assert not outcome.replayed
    assert outcome.unit_cost_cents == 10
    assert outcome.total_cost_cents == 150

    rewards = await _reward_rows(session_factory)
    assert [(row.status, row.amount) for row in rewards] == [(RewardStatus.GRANTED, 15)]
    assert rewards[0].granted_at is not None

    ledger = await _ledger_rows(session_factory)
    assert len(ledger) == 1
    assert ledger[0].type == LedgerEntryType.REWARD_GRANT
    assert ledger[0].total_cost_cents == 150
    assert ledger[0].reward_id == outcome.reward_id
    assert ledger[0].metadata_json["reward_type"] == "ai_minutes"

    assert analytics.pending == 1


@pytest.mark.asyncio
async def test_repeat_grant_replays_without_new_ledger_entry(session_factory, make_user) -> None:
    user = await make_user("repeat@example.com")
    analytics = AnalyticsDispatcher(session_factory)

    async with session_factory() as session:
        engine = RewardGrantEngine(session, analytics=analytics)
        first = await engine.grant(_request(user.id))
        await session.commit()
        second = await engine.grant(_request(user.id, amount=99))
        await session.commit()

    assert second.replayed
    assert second.reward_id == first.reward_id
    assert second.amount == 15
    assert len(await _ledger_rows(session_factory)) == 1
    assert analytics.pending == 1


@pytest.mark.asyncio
async def test_concurrent_grants_settle_exactly_once(file_session_factory) -> None:
    async with file_session_factory() as session:
        user = User(email="race@example.com", persona=PersonaEnum.STUDENT.value)
        session.add(user)
        await session.commit()

    release_first = asyncio.Event()
    first_committed = asyncio.Event()
    first_check = GatedSafetyCheck(release_first)
    second_check = GatedSafetyCheck(first_committed)

    async def settle(check: GatedSafetyCheck, done: asyncio.Event | None = None):
        async with file_session_factory() as session:
            outcome = await RewardGrantEngine(session, safety_check=check).grant(_request(user.id))
            await session.commit()
        if done is not None:
            done.set()
        return outcome

    first_task = asyncio.create_task(settle(first_check, first_committed))
    second_task = asyncio.create_task(settle(second_check))

    # both callers have looked up the key and found nothing before either writes
    await asyncio.wait_for(first_check.arrived.wait(), timeout=5)
    await asyncio.wait_for(second_check.arrived.wait(), timeout=5)
    release_first.set()

    first, second = await asyncio.wait_for(asyncio.gather(first_task, second_task), timeout=10)

    assert first.granted and not first.replayed
    assert second.granted and second.replayed
    assert first.reward_id == second.reward_id

    rewards = await _reward_rows(file_session_factory)
    assert len(rewards) == 1
    assert rewards[0].status == RewardStatus.GRANTED

    ledger = await _ledger_rows(file_session_factory)
    assert len(ledger) == 1
    assert ledger[0].type == LedgerEntryType.REWARD_GRANT
    assert ledger[0].total_cost_cents == 15 * 10


@pytest.mark.asyncio
async def test_denied_grant_is_terminal(session_factory, make_user) -> None:
    user = await make_user("denied@example.com")
    denying = DenyingSafetyCheck()

    async with session_factory() as session:
        denied = await RewardGrantEngine(session, safety_check=denying).grant(_request(user.id))
        await session.commit()

    assert denied.status is RewardStatus.DENIED
    assert denied.denied_reason == "velocity_exceeded"

    async with session_factory() as session:
        replay = await RewardGrantEngine(session).grant(_request(user.id))

    assert replay.replayed
    assert replay.status is RewardStatus.DENIED

    ledger = await _ledger_rows(session_factory)
    assert [entry.type for entry in ledger] == [LedgerEntryType.REWARD_DENIED]
    assert ledger[0].metadata_json["reason"] == "velocity_exceeded"


@pytest.mark.asyncio
async def test_denial_without_reason_uses_default(session_factory, make_user) -> None:
    user = await make_user("denied-default@example.com")

    async with session_factory() as session:
        outcome = await RewardGrantEngine(session, safety_check=DenyingSafetyCheck(reason=None)).grant(
            _request(user.id)
        )

    assert outcome.denied_reason == "Safety check failed"


@pytest.mark.asyncio
async def test_pending_row_is_settled_in_place(session_factory, make_user) -> None:
    user = await make_user("pending@example.com")
    pending_id = uuid4()
    async with session_factory() as session:
        session.add(
            RewardGrant(
                id=pending_id,
                user_id=user.id,
                type=RewardType.AI_MINUTES,
                amount=15,
                dedupe_key="k1",
                status=RewardStatus.PENDING,
            )
        )
        await session.commit()

    async with session_factory() as session:
        outcome = await RewardGrantEngine(session).grant(_request(user.id))
        await session.commit()

    assert outcome.reward_id == pending_id
    assert not outcome.replayed
    rewards = await _reward_rows(session_factory)
    assert [(row.id, row.status) for row in rewards] == [(pending_id, RewardStatus.GRANTED)]
    assert len(await _ledger_rows(session_factory)) == 1


@pytest.mark.asyncio
async def test_default_amount_comes_from_policy(session_factory, make_user) -> None:
    user = await make_user("tutor@example.com", PersonaEnum.TUTOR)

    async with session_factory() as session:
        outcome = await RewardGrantEngine(session).grant(
            _request(user.id, reward_type=RewardType.CREDITS, amount=None)
        )

    assert outcome.amount == 50
    assert outcome.total_cost_cents == 50


@pytest.mark.asyncio
async def test_type_mismatch_is_rejected_without_writes(session_factory, make_user) -> None:
    user = await make_user("mismatch@example.com")
    safety = DenyingSafetyCheck()

    async with session_factory() as session:
        with pytest.raises(RewardPolicyError) as excinfo:
            await RewardGrantEngine(session, safety_check=safety).grant(
                _request(user.id, reward_type=RewardType.BADGE)
            )

    assert excinfo.value.kind == "type_mismatch"
    assert safety.calls == 0
    assert await _reward_rows(session_factory) == []


@pytest.mark.asyncio
async def test_unknown_persona_has_no_policy(session_factory) -> None:
    async with session_factory() as session:
        user = User(email="guest@example.com", persona="observer")
        session.add(user)
        await session.commit()

        with pytest.raises(RewardPolicyError) as excinfo:
            await RewardGrantEngine(session).grant(_request(user.id))

    assert excinfo.value.kind == "policy_missing"


@pytest.mark.asyncio
async def test_unknown_user_is_rejected(session_factory) -> None:
    async with session_factory() as session:
        with pytest.raises(UserNotFoundError):
            await RewardGrantEngine(session).grant(_request(uuid4()))


@pytest.mark.asyncio
async def test_ledger_pagination_and_balances(session_factory, make_user) -> None:
    user = await make_user("history@example.com")

    async with session_factory() as session:
        engine = RewardGrantEngine(session)
        for index in range(3):
            await engine.grant(_request(user.id, dedupe_key=f"k{index}", amount=5))
        denying = RewardGrantEngine(session, safety_check=DenyingSafetyCheck())
        await denying.grant(_request(user.id, dedupe_key="k-denied"))
        await session.commit()

    async with session_factory() as session:
        engine = RewardGrantEngine(session)
        page = await engine.list_ledger(user.id, limit=2, offset=0)
        grants_only = await engine.list_ledger(user.id, entry_type=LedgerEntryType.REWARD_GRANT)
        balances = await engine.balances(user.id)
        total = (await session.execute(select(func.count(LedgerEntry.id)))).scalar_one()

    assert total == 4
    assert page.total == 4
    assert len(page.entries) == 2
    assert page.has_more
    assert grants_only.total == 3
    assert balances == {"streak_shield": 0, "ai_minutes": 15, "badge": 0, "credits": 0}
