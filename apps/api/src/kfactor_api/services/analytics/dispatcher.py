"""Best-effort analytics dispatch through a bounded in-memory queue."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from kfactor_api.models import AnalyticsEvent


@dataclass(slots=True)
class QueuedEvent:
    name: str
    props: dict[str, Any]
    user_id: str | None = None
    anon_id: str | None = None
    loop: str | None = None
    ts: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class AnalyticsDispatcher:
    """Fire-and-forget sink writer.

    ``dispatch`` never blocks and never raises. When the queue is full the
    event is dropped and a warning is logged at most once per
    ``drop_log_interval`` seconds. A single worker task persists queued events
    into ``analytics_events``; ``drain`` flushes synchronously for tests and
    shutdown.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        maxsize: int = 1000,
        enabled: bool = True,
        drop_log_interval: float = 60.0,
    ) -> None:
        self._session_factory = session_factory
        self._queue: asyncio.Queue[QueuedEvent] = asyncio.Queue(maxsize=maxsize)
        self._enabled = enabled
        self._drop_log_interval = drop_log_interval
        self._last_drop_log: float | None = None
        self._dropped = 0
        self._worker: asyncio.Task[None] | None = None

    @property
    def dropped(self) -> int:
        return self._dropped

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def dispatch(
        self,
        name: str,
        props: Mapping[str, Any] | None = None,
        *,
        user_id: str | None = None,
        anon_id: str | None = None,
        loop: str | None = None,
    ) -> bool:
        if not self._enabled:
            return False

        payload = dict(props or {})
        if loop is None and isinstance(payload.get("loop"), str):
            loop = payload["loop"]
        event = QueuedEvent(
            name=name,
            props=payload,
            user_id=str(user_id) if user_id is not None else None,
            anon_id=anon_id,
            loop=loop,
        )
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self._dropped += 1
            now = time.monotonic()
            if self._last_drop_log is None or now - self._last_drop_log >= self._drop_log_interval:
                self._last_drop_log = now
                logger.warning("Analytics queue full; dropping event", event_name=name, dropped=self._dropped)
            return False
        return True

    async def start(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run(), name="analytics-dispatcher")

    async def stop(self) -> None:
        worker, self._worker = self._worker, None
        if worker is not None:
            worker.cancel()
            try:
                await worker
            except asyncio.CancelledError:
                pass
        await self.drain()

    async def drain(self) -> int:
        """Persist everything currently queued and return the number of rows written."""

        batch: list[QueuedEvent] = []
        while True:
            try:
                batch.append(self._queue.get_nowait())
            except asyncio.QueueEmpty:
                break
        if not batch:
            return 0
        try:
            await self._persist(batch)
        finally:
            for _ in batch:
                self._queue.task_done()
        return len(batch)

    async def _run(self) -> None:
        while True:
            event = await self._queue.get()
            batch = [event]
            while len(batch) < 100:
                try:
                    batch.append(self._queue.get_nowait())
                except asyncio.QueueEmpty:
                    break
            try:
                await self._persist(batch)
            finally:
                for _ in batch:
                    self._queue.task_done()

    async def _persist(self, batch: list[QueuedEvent]) -> None:
        try:
            async with self._session_factory() as session:
                session.add_all(
                    [
                        AnalyticsEvent(
                            ts=event.ts,
                            name=event.name,
                            user_id=event.user_id,
                            anon_id=event.anon_id,
                            loop=event.loop,
                            props=event.props,
                        )
                        for event in batch
                    ]
                )
                await session.commit()
        except Exception as exc:  # pragma: no cover - sink failures must not break callers
            logger.warning("Failed to persist analytics events", count=len(batch), error=str(exc))


__all__ = ["AnalyticsDispatcher", "QueuedEvent"]
