"""Per-subject presence counts on Redis sets, plus the SSE channel that streams them."""

from __future__ import annotations

import asyncio
import json
import re
from typing import Any, AsyncIterator, Awaitable, Callable, Iterable

from loguru import logger

from kfactor_api.services.ephemeral import EphemeralStore


_SUBJECT_PATTERN = re.compile(r"^[A-Za-z0-9\- ]{1,64}$")


class InvalidSubjectError(ValueError):
    """Subject must be 1-64 characters of letters, digits, hyphens or spaces."""


def validate_subject(subject: object) -> str:
    if not isinstance(subject, str) or not _SUBJECT_PATTERN.fullmatch(subject):
        raise InvalidSubjectError("Invalid subject. Must be a string (1-64 chars, alphanumeric + hyphens/spaces)")
    trimmed = subject.strip()
    if not trimmed:
        raise InvalidSubjectError("Subject must not be blank")
    return trimmed


def _format_sse(payload: dict[str, Any]) -> str:
    return f"data: {json.dumps(payload)}\n\n"


class PresenceService:
    """Active-viewer counting; every operation degrades instead of raising."""

    def __init__(self, store: EphemeralStore, *, ttl_seconds: int = 30) -> None:
        self._store = store
        self._ttl_seconds = ttl_seconds

    @staticmethod
    def _key(subject: str) -> str:
        return f"presence:subject:{subject}"

    def is_healthy(self) -> bool:
        return self._store.is_healthy()

    async def ping(self, subject: str, user_id: str) -> bool:
        key = self._key(subject)

        async def _ping(client) -> bool:
            await client.sadd(key, user_id)
            await client.expire(key, self._ttl_seconds)
            return True

        return await self._store.run("presence.ping", _ping, False)

    async def count(self, subject: str) -> int:
        key = self._key(subject)

        async def _count(client) -> int:
            return int(await client.scard(key) or 0)

        return await self._store.run("presence.count", _count, 0)

    async def counts(self, subjects: Iterable[str]) -> dict[str, int]:
        ordered = list(dict.fromkeys(subjects))
        results = await asyncio.gather(*(self.count(subject) for subject in ordered))
        return dict(zip(ordered, results))

    async def stream(
        self,
        subject: str,
        *,
        poll_interval: float = 2.5,
        keepalive_interval: float = 15.0,
        is_disconnected: Callable[[], Awaitable[bool]] | None = None,
        disconnect_check_interval: float = 1.0,
    ) -> AsyncIterator[str]:
        """Yield SSE frames until the consumer disconnects or the generator is closed.

        A poller forwards ``{"count": n}`` and ``{"health": ...}`` only when they
        change; a second task emits keep-alive comments. Both feed one queue and
        are cancelled together when the stream ends.
        """

        frames: asyncio.Queue[str] = asyncio.Queue()

        async def poll() -> None:
            last_count: int | None = None
            last_health: str | None = None
            while True:
                current = await self.count(subject)
                health = "ok" if self._store.is_healthy() else "degraded"
                if current != last_count:
                    last_count = current
                    frames.put_nowait(_format_sse({"count": current}))
                if health != last_health:
                    last_health = health
                    frames.put_nowait(_format_sse({"health": health}))
                await asyncio.sleep(poll_interval)

        async def keepalive() -> None:
            while True:
                await asyncio.sleep(keepalive_interval)
                frames.put_nowait(": keepalive\n\n")

        yield ": connected\n\n"

        tasks = [
            asyncio.create_task(poll(), name=f"presence-poll:{subject}"),
            asyncio.create_task(keepalive(), name=f"presence-keepalive:{subject}"),
        ]
        try:
            while True:
                if is_disconnected is not None and await is_disconnected():
                    logger.debug("Presence stream client disconnected", subject=subject)
                    break
                try:
                    frame = await asyncio.wait_for(frames.get(), timeout=disconnect_check_interval)
                except asyncio.TimeoutError:
                    continue
                yield frame
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)


__all__ = ["InvalidSubjectError", "PresenceService", "validate_subject"]
