from uuid import uuid4

import pytest

from kfactor_api.core.settings import settings
from kfactor_api.models import PersonaEnum
from kfactor_api.services.rewards import SafetyDecision


class DenyAll:
    async def __call__(self, user_id, context) -> SafetyDecision:
        return SafetyDecision(allowed=False, reason="fraud_suspected")


def _grant_body(user_id, **overrides) -> dict:
    body = {
        "userId": str(user_id),
        "rewardType": "ai_minutes",
        "amount": 15,
        "loop": "buddy_challenge",
        "dedupeKey": "grant-1",
    }
    body.update(overrides)
    return body


@pytest.mark.asyncio
async def test_grant_then_replay(client, make_user) -> None:
    user = await make_user("reward@example.com")

    created = await client.post("/api/v1/rewards/grant", json=_grant_body(user.id))
    replayed = await client.post("/api/v1/rewards/grant", json=_grant_body(user.id))

    assert created.status_code == 201
    payload = created.json()
    assert payload["success"] is True
    assert payload["totalCostCents"] == 150
    assert payload["message"] is None

    assert replayed.status_code == 200
    assert replayed.json()["rewardId"] == payload["rewardId"]
    assert replayed.json()["message"] == "Reward already granted"

    ledger = await client.get("/api/v1/rewards/ledger", headers={"X-Session-User": str(user.id)})
    assert ledger.status_code == 200
    body = ledger.json()
    assert body["pagination"] == {"limit": 50, "offset": 0, "total": 1, "hasMore": False}
    assert body["entries"][0]["type"] == "reward_grant"
    assert body["entries"][0]["totalCostCents"] == 150


@pytest.mark.asyncio
async def test_denied_grant_returns_403(client, app_with_db, make_user) -> None:
    app, _ = app_with_db
    app.state.safety_check = DenyAll()
    user = await make_user("blocked@example.com")

    response = await client.post("/api/v1/rewards/grant", json=_grant_body(user.id))

    assert response.status_code == 403
    payload = response.json()
    assert payload["success"] is False
    assert payload["error"] == "Reward denied"
    assert payload["reason"] == "fraud_suspected"

    ledger = await client.get(
        "/api/v1/rewards/ledger",
        params={"type": "reward_denied"},
        headers={"X-Session-User": str(user.id)},
    )
    assert ledger.json()["pagination"]["total"] == 1


@pytest.mark.asyncio
async def test_grant_rejects_type_mismatch(client, make_user) -> None:
    user = await make_user("parent@example.com", PersonaEnum.PARENT)

    response = await client.post("/api/v1/rewards/grant", json=_grant_body(user.id))

    assert response.status_code == 400
    assert "expected badge" in response.json()["detail"]


@pytest.mark.asyncio
async def test_grant_unknown_user(client) -> None:
    response = await client.post("/api/v1/rewards/grant", json=_grant_body(uuid4()))

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_grant_validates_body(client, make_user) -> None:
    user = await make_user("invalid@example.com")

    bad_type = await client.post("/api/v1/rewards/grant", json=_grant_body(user.id, rewardType="gold"))
    bad_amount = await client.post("/api/v1/rewards/grant", json=_grant_body(user.id, amount=0))
    missing_key = await client.post("/api/v1/rewards/grant", json=_grant_body(user.id, dedupeKey=""))

    assert bad_type.status_code == 422
    assert bad_amount.status_code == 422
    assert missing_key.status_code == 422


@pytest.mark.asyncio
async def test_grant_requires_internal_key_when_configured(client, make_user, monkeypatch) -> None:
    monkeypatch.setattr(settings, "internal_api_key", "s3cret")
    user = await make_user("keyed@example.com")

    rejected = await client.post("/api/v1/rewards/grant", json=_grant_body(user.id))
    accepted = await client.post(
        "/api/v1/rewards/grant",
        json=_grant_body(user.id),
        headers={"X-API-Key": "s3cret"},
    )

    assert rejected.status_code == 401
    assert accepted.status_code == 201


@pytest.mark.asyncio
async def test_balances_and_ledger_bounds(client, make_user) -> None:
    user = await make_user("balances@example.com")
    headers = {"X-Session-User": str(user.id)}
    await client.post("/api/v1/rewards/grant", json=_grant_body(user.id, dedupeKey="a"))
    await client.post("/api/v1/rewards/grant", json=_grant_body(user.id, dedupeKey="b", amount=5))

    balances = await client.get("/api/v1/rewards/balances", headers=headers)
    too_large = await client.get("/api/v1/rewards/ledger", params={"limit": 500}, headers=headers)

    assert balances.json() == {"balances": {"streak_shield": 0, "ai_minutes": 20, "badge": 0, "credits": 0}}
    assert too_large.status_code == 422
