import json
import base64

import pytest

from kfactor_api.services.analytics import AnalyticsDispatcher
from kfactor_api.services.smart_links import (
    ATTRIBUTION_COOKIE,
    PROCESSED_COOKIE,
    VISITOR_ID_COOKIE,
    AttributionPropagator,
    AttributionRecord,
    SignatureCodec,
    encode_attribution_cookie,
    parse_attribution_cookie,
)


RECORD = AttributionRecord(
    inviter_id="6f1c1f8e-0000-4000-8000-000000000001",
    loop="buddy_challenge",
    smart_link_code="abcdefghijkl",
    utm={"utm_source": "sms"},
)


def test_cookie_round_trip(codec: SignatureCodec) -> None:
    raw = encode_attribution_cookie(RECORD, codec)

    assert "=" not in raw
    assert parse_attribution_cookie(raw, codec) == RECORD


def test_tampered_cookie_is_rejected(codec: SignatureCodec) -> None:
    raw = encode_attribution_cookie(RECORD, codec)
    decoded = json.loads(base64.urlsafe_b64decode(raw + "=" * (-len(raw) % 4)))
    decoded["inviter_id"] = "6f1c1f8e-0000-4000-8000-000000000002"
    forged = base64.urlsafe_b64encode(json.dumps(decoded).encode("utf-8")).decode("ascii").rstrip("=")

    assert parse_attribution_cookie(forged, codec) is None


@pytest.mark.parametrize("raw", [None, "", "%%%", "bm90LWpzb24", base64.urlsafe_b64encode(b"[1,2]").decode()])
def test_malformed_cookie_is_ignored(codec: SignatureCodec, raw) -> None:
    assert parse_attribution_cookie(raw, codec) is None


def test_cookie_signed_with_other_secret_is_rejected(codec: SignatureCodec) -> None:
    raw = encode_attribution_cookie(RECORD, SignatureCodec("someone-else"))

    assert parse_attribution_cookie(raw, codec) is None


@pytest.mark.asyncio
async def test_track_opened_emits_once_per_marker(session_factory, codec) -> None:
    dispatcher = AnalyticsDispatcher(session_factory)
    propagator = AttributionPropagator(codec, dispatcher)
    cookies = {ATTRIBUTION_COOKIE: encode_attribution_cookie(RECORD, codec), VISITOR_ID_COOKIE: "visitor-1"}

    assert propagator.track_opened(cookies) is True
    assert propagator.track_opened({**cookies, PROCESSED_COOKIE: "1"}) is False
    assert propagator.track_opened({}) is False
    assert dispatcher.pending == 1


@pytest.mark.asyncio
async def test_middleware_tracks_opened_on_app_routes(client, app_with_db, codec) -> None:
    app, _ = app_with_db
    client.cookies.set(ATTRIBUTION_COOKIE, encode_attribution_cookie(RECORD, codec))

    first = await client.get("/results/R1")
    assert first.cookies.get(PROCESSED_COOKIE) == "1"
    assert app.state.analytics.pending == 1

    client.cookies.set(PROCESSED_COOKIE, "1")
    await client.get("/results/R1")
    assert app.state.analytics.pending == 1


@pytest.mark.asyncio
async def test_middleware_ignores_untracked_paths(client, app_with_db, codec) -> None:
    app, _ = app_with_db
    client.cookies.set(ATTRIBUTION_COOKIE, encode_attribution_cookie(RECORD, codec))

    response = await client.get("/healthz")

    assert response.status_code == 200
    assert PROCESSED_COOKIE not in response.cookies
    assert app.state.analytics.pending == 0


@pytest.mark.asyncio
async def test_track_joined_endpoint(client, app_with_db, make_user, codec) -> None:
    app, session_factory = app_with_db
    user = await make_user("joiner@example.com")
    client.cookies.set(ATTRIBUTION_COOKIE, encode_attribution_cookie(RECORD, codec))

    response = await client.post("/api/v1/attribution/track-joined", headers={"X-Session-User": str(user.id)})

    assert response.status_code == 200
    payload = response.json()
    assert payload["tracked"] is True
    assert payload["inviterId"] == RECORD.inviter_id
    assert payload["smartLinkCode"] == RECORD.smart_link_code

    assert await app.state.analytics.drain() == 1


@pytest.mark.asyncio
async def test_track_joined_without_cookie(client, make_user) -> None:
    user = await make_user("organic@example.com")

    response = await client.post("/api/v1/attribution/track-joined", headers={"X-Session-User": str(user.id)})

    assert response.json() == {
        "tracked": False,
        "reason": "no_attribution",
        "inviterId": None,
        "loop": None,
        "smartLinkCode": None,
    }
