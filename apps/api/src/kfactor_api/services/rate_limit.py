"""Daily invite quota per user, counted in Redis and failing open."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Callable

from kfactor_api.services.ephemeral import EphemeralStore


@dataclass(frozen=True)
class InviteRateLimitState:
    allowed: bool
    remaining: int
    limit: int
    reset_at: datetime


class InviteRateLimitExceeded(Exception):
    """Raised by callers that refuse to issue another invite today."""

    def __init__(self, state: InviteRateLimitState) -> None:
        super().__init__("Daily invite limit reached")
        self.state = state


def next_utc_midnight(day: date) -> datetime:
    return datetime.combine(day + timedelta(days=1), time.min, tzinfo=timezone.utc)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InviteRateLimiter:
    """Counter keyed by ``rate:invite:{user}:{YYYY-MM-DD}`` that expires at the next UTC midnight."""

    def __init__(
        self,
        store: EphemeralStore,
        *,
        daily_limit: int = 20,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._limit = daily_limit
        self._now = now

    @property
    def limit(self) -> int:
        return self._limit

    @staticmethod
    def _key(user_id: str, day: date) -> str:
        return f"rate:invite:{user_id}:{day.isoformat()}"

    def _resolve_day(self, day: date | None) -> date:
        if day is None:
            return self._now().astimezone(timezone.utc).date()
        if isinstance(day, datetime):
            return day.astimezone(timezone.utc).date() if day.tzinfo else day.date()
        return day

    async def check(self, user_id: str, day: date | None = None) -> InviteRateLimitState:
        resolved = self._resolve_day(day)
        reset_at = next_utc_midnight(resolved)
        key = self._key(user_id, resolved)

        async def _read(client) -> int | None:
            raw = await client.get(key)
            return int(raw) if raw is not None else 0

        count = await self._store.run("rate_limit.check", _read, None)
        if count is None:
            return InviteRateLimitState(allowed=True, remaining=self._limit, limit=self._limit, reset_at=reset_at)

        return InviteRateLimitState(
            allowed=count < self._limit,
            remaining=max(0, self._limit - count),
            limit=self._limit,
            reset_at=reset_at,
        )

    async def increment(self, user_id: str, day: date | None = None) -> int | None:
        """Bump today's counter; returns the new count or ``None`` when the store is unavailable."""

        resolved = self._resolve_day(day)
        key = self._key(user_id, resolved)
        ttl_seconds = int((next_utc_midnight(resolved) - self._now()).total_seconds())

        async def _incr(client) -> int:
            value = int(await client.incr(key))
            # a counter for a day that already ended still gets bounded
            await client.expire(key, max(ttl_seconds, 1))
            return value

        return await self._store.run("rate_limit.increment", _incr, None)


__all__ = [
    "InviteRateLimitExceeded",
    "InviteRateLimitState",
    "InviteRateLimiter",
    "next_utc_midnight",
]
