import asyncio

import pytest
from loguru import logger
from sqlalchemy import select

from kfactor_api.models import AnalyticsEvent
from kfactor_api.services.analytics import AnalyticsDispatcher


async def _stored(session_factory) -> list[AnalyticsEvent]:
    async with session_factory() as session:
        return list((await session.execute(select(AnalyticsEvent).order_by(AnalyticsEvent.id))).scalars().all())


@pytest.mark.asyncio
async def test_drain_persists_queued_events(session_factory) -> None:
    dispatcher = AnalyticsDispatcher(session_factory)

    assert dispatcher.dispatch("invite.opened", {"loop": "buddy_challenge", "inviter_id": "u1"}, anon_id="v1")
    assert dispatcher.dispatch("reward.granted", {"amount": 15}, user_id="u2", loop="results_rally")
    assert await dispatcher.drain() == 2

    events = await _stored(session_factory)
    assert [(event.name, event.loop) for event in events] == [
        ("invite.opened", "buddy_challenge"),
        ("reward.granted", "results_rally"),
    ]
    assert events[0].anon_id == "v1"
    assert events[1].user_id == "u2"
    assert events[1].props == {"amount": 15}


@pytest.mark.asyncio
async def test_full_queue_drops_and_logs_once(session_factory) -> None:
    records = []
    handler_id = logger.add(lambda message: records.append(message.record), level="WARNING")
    dispatcher = AnalyticsDispatcher(session_factory, maxsize=2, drop_log_interval=60)

    try:
        results = [dispatcher.dispatch("presence.ping", {"n": index}) for index in range(5)]
    finally:
        logger.remove(handler_id)

    assert results == [True, True, False, False, False]
    assert dispatcher.dropped == 3
    assert dispatcher.pending == 2
    assert len([record for record in records if "Analytics queue full" in record["message"]]) == 1


@pytest.mark.asyncio
async def test_disabled_dispatcher_ignores_events(session_factory) -> None:
    dispatcher = AnalyticsDispatcher(session_factory, enabled=False)

    assert dispatcher.dispatch("invite.opened") is False
    assert dispatcher.pending == 0


@pytest.mark.asyncio
async def test_worker_persists_in_background_and_stop_flushes(file_session_factory) -> None:
    session_factory = file_session_factory
    dispatcher = AnalyticsDispatcher(session_factory)
    await dispatcher.start()

    dispatcher.dispatch("invite.joined", {"invitee_id": "u3"})
    for _ in range(50):
        if await _stored(session_factory):
            break
        await asyncio.sleep(0.01)

    dispatcher.dispatch("guest.converted", {"xp_earned": 50})
    await dispatcher.stop()

    names = [event.name for event in await _stored(session_factory)]
    assert names == ["invite.joined", "guest.converted"]


@pytest.mark.asyncio
async def test_sink_failure_is_swallowed() -> None:
    def broken_factory():
        raise RuntimeError("database down")

    dispatcher = AnalyticsDispatcher(broken_factory)
    dispatcher.dispatch("invite.opened")

    assert await dispatcher.drain() == 1
    assert dispatcher.pending == 0
