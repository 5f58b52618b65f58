import asyncio
import json

import pytest

from kfactor_api.services.ephemeral import EphemeralStore
from kfactor_api.services.presence import InvalidSubjectError, PresenceService, validate_subject
from kfactor_api.services.smart_links import VISITOR_ID_COOKIE


@pytest.mark.parametrize("subject", ["algebra", "Algebra 1", "pre-calc", "a" * 64])
def test_valid_subjects(subject) -> None:
    assert validate_subject(subject) == subject.strip()


@pytest.mark.parametrize("subject", ["", "   ", "a" * 65, "math!", "calc/2", None, 42])
def test_invalid_subjects(subject) -> None:
    with pytest.raises(InvalidSubjectError):
        validate_subject(subject)


@pytest.mark.asyncio
async def test_ping_counts_distinct_members(fake_redis) -> None:
    presence = PresenceService(EphemeralStore(fake_redis), ttl_seconds=30)

    assert await presence.ping("algebra", "u1")
    assert await presence.ping("algebra", "u1")
    assert await presence.ping("algebra", "u2")
    assert await presence.ping("geometry", "u3")

    assert await presence.count("algebra") == 2
    assert await presence.counts(["algebra", "geometry", "algebra", "biology"]) == {
        "algebra": 2,
        "geometry": 1,
        "biology": 0,
    }
    assert fake_redis.expiries["presence:subject:algebra"] == 30


@pytest.mark.asyncio
async def test_degraded_store_reports_zero(unavailable_redis) -> None:
    presence = PresenceService(EphemeralStore(unavailable_redis))

    assert await presence.ping("algebra", "u1") is False
    assert await presence.count("algebra") == 0
    assert not presence.is_healthy()


@pytest.mark.asyncio
async def test_stream_emits_changes_and_keepalives(fake_redis) -> None:
    presence = PresenceService(EphemeralStore(fake_redis))
    await presence.ping("algebra", "u1")

    stream = presence.stream(
        "algebra",
        poll_interval=0.01,
        keepalive_interval=0.05,
        disconnect_check_interval=0.01,
    )
    frames = [await stream.__anext__()]
    frames.append(await stream.__anext__())
    frames.append(await stream.__anext__())

    await presence.ping("algebra", "u2")
    seen = []
    for _ in range(50):
        frame = await asyncio.wait_for(stream.__anext__(), timeout=1.0)
        seen.append(frame)
        if frame == 'data: {"count": 2}\n\n':
            break
    await stream.aclose()

    assert frames[0] == ": connected\n\n"
    data = [json.loads(frame[5:]) for frame in frames[1:]]
    assert {"count": 1} in data
    assert {"health": "ok"} in data
    assert seen[-1] == 'data: {"count": 2}\n\n'
    assert all(frame == ": keepalive\n\n" for frame in seen[:-1])


@pytest.mark.asyncio
async def test_stream_stops_when_client_disconnects(fake_redis) -> None:
    presence = PresenceService(EphemeralStore(fake_redis))

    async def disconnected() -> bool:
        return True

    frames = [
        frame
        async for frame in presence.stream(
            "algebra",
            poll_interval=0.01,
            is_disconnected=disconnected,
        )
    ]

    assert frames == [": connected\n\n"]


@pytest.mark.asyncio
async def test_ping_endpoint_assigns_visitor_cookie(client, fake_redis) -> None:
    response = await client.post("/api/v1/presence/ping", json={"subject": "algebra"})

    assert response.status_code == 200
    assert response.json() == {"success": True}
    visitor_id = response.cookies.get(VISITOR_ID_COOKIE)
    assert visitor_id
    assert fake_redis.sets["presence:subject:algebra"] == {visitor_id}


@pytest.mark.asyncio
async def test_ping_endpoint_uses_session_user(client, make_user, fake_redis) -> None:
    user = await make_user("viewer@example.com")

    response = await client.post(
        "/api/v1/presence/ping",
        json={"subject": "geometry"},
        headers={"X-Session-User": str(user.id)},
    )

    assert response.status_code == 200
    assert VISITOR_ID_COOKIE not in response.cookies
    assert fake_redis.sets["presence:subject:geometry"] == {str(user.id)}


@pytest.mark.asyncio
async def test_ping_endpoint_rejects_invalid_subject(client) -> None:
    response = await client.post("/api/v1/presence/ping", json={"subject": "drop table;"})

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_ping_endpoint_succeeds_when_store_is_down(client, app_with_db, unavailable_redis) -> None:
    app, _ = app_with_db
    app.state.ephemeral_store = EphemeralStore(unavailable_redis)

    response = await client.post("/api/v1/presence/ping", json={"subject": "algebra"})

    assert response.status_code == 200
    assert unavailable_redis.calls == 1


@pytest.mark.asyncio
async def test_counts_endpoint(client, fake_redis) -> None:
    fake_redis.sets["presence:subject:algebra"] = {"a", "b"}

    response = await client.post("/api/v1/presence/counts", json={"subjects": ["algebra", "geometry"]})

    assert response.status_code == 200
    assert response.json() == {"counts": {"algebra": 2, "geometry": 0}, "healthy": True}


@pytest.mark.asyncio
async def test_stream_endpoint_rejects_invalid_subject(client) -> None:
    response = await client.get("/api/v1/presence/stream", params={"subject": "bad/subject"})

    assert response.status_code == 400
