"""Append-only XP ledger and the level curve derived from it."""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Mapping
from uuid import UUID

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from kfactor_api.models import PersonaEnum, XpEvent, XpEventType


LEVEL_BASE = 40
LEVEL_STEP = 60
DEFAULT_RAW_XP = 1


@dataclass(frozen=True)
class LevelInfo:
    level: int
    progress: float
    next_needed: int
    current_level_xp: int
    next_level_xp: int


@dataclass(frozen=True)
class XpTotals:
    xp: int
    level: int
    progress: float
    next_needed: int
    current_level_xp: int
    next_level_xp: int

    @classmethod
    def from_xp(cls, xp: int) -> "XpTotals":
        info = level_from_xp(xp)
        return cls(
            xp=xp,
            level=info.level,
            progress=info.progress,
            next_needed=info.next_needed,
            current_level_xp=info.current_level_xp,
            next_level_xp=info.next_level_xp,
        )


def xp_for_level(level: int, base: int = LEVEL_BASE, step: int = LEVEL_STEP) -> int:
    """Cumulative XP required to reach ``level``."""

    return math.floor(base * level * level + step * level)


def level_from_xp(xp: int, base: int = LEVEL_BASE, step: int = LEVEL_STEP) -> LevelInfo:
    xp = max(0, int(xp))
    level = 0
    while xp >= xp_for_level(level + 1, base, step):
        level += 1

    current_level_xp = xp_for_level(level, base, step)
    next_level_xp = xp_for_level(level + 1, base, step)
    span = next_level_xp - current_level_xp
    # xp < next_level_xp after the loop, so progress stays below 1
    progress = (xp - current_level_xp) / span if span > 0 else 0.0
    return LevelInfo(
        level=level,
        progress=progress,
        next_needed=span,
        current_level_xp=current_level_xp,
        next_level_xp=next_level_xp,
    )


def totals_from_events(raw_xp_values: Iterable[int]) -> XpTotals:
    """Pure replay of an event log; insertion order does not matter."""

    return XpTotals.from_xp(sum(int(value) for value in raw_xp_values))


class XpLedger:
    def __init__(
        self,
        session: AsyncSession,
        *,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._db = session
        self._now = now

    async def record_event(
        self,
        *,
        user_id: UUID,
        persona_type: PersonaEnum | str,
        event_type: XpEventType | str,
        reference_id: str | None = None,
        metadata: Mapping[str, Any] | None = None,
        raw_xp: int | None = None,
    ) -> XpEvent:
        """Append one event; unknown event types or negative XP raise ``ValueError``."""

        event_kind = XpEventType(event_type)
        persona = PersonaEnum(persona_type)
        amount = DEFAULT_RAW_XP if raw_xp is None else int(raw_xp)
        if amount < 0:
            raise ValueError("raw_xp must be non-negative")

        event = XpEvent(
            user_id=user_id,
            persona_type=persona.value,
            event_type=event_kind.value,
            reference_id=reference_id,
            metadata_json=dict(metadata or {}),
            raw_xp=amount,
            created_at=self._now(),
        )
        self._db.add(event)
        await self._db.flush()
        logger.info(
            "Recorded XP event",
            user_id=str(user_id),
            event_type=event_kind.value,
            raw_xp=amount,
        )
        return event

    async def totals(self, user_id: UUID, persona_type: PersonaEnum | str | None = None) -> XpTotals:
        stmt = select(func.coalesce(func.sum(XpEvent.raw_xp), 0)).where(XpEvent.user_id == user_id)
        if persona_type is not None:
            stmt = stmt.where(XpEvent.persona_type == PersonaEnum(persona_type).value)
        result = await self._db.execute(stmt)
        return XpTotals.from_xp(int(result.scalar_one() or 0))

    async def recent_events(self, user_id: UUID, limit: int = 20) -> list[XpEvent]:
        stmt = (
            select(XpEvent)
            .where(XpEvent.user_id == user_id)
            .order_by(XpEvent.created_at.desc(), XpEvent.id.desc())
            .limit(max(1, min(limit, 100)))
        )
        result = await self._db.execute(stmt)
        return list(result.scalars().all())


__all__ = [
    "LevelInfo",
    "XpLedger",
    "XpTotals",
    "level_from_xp",
    "totals_from_events",
    "xp_for_level",
]
