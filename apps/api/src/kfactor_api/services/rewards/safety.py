"""Decision point consulted before any reward is paid out."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Protocol
from uuid import UUID


@dataclass(frozen=True)
class SafetyDecision:
    allowed: bool
    reason: str | None = None


class SafetyCheck(Protocol):
    async def __call__(self, user_id: UUID, context: Mapping[str, Any]) -> SafetyDecision:
        ...


class AllowAllSafetyCheck:
    """Default policy until fraud and velocity rules exist."""

    async def __call__(self, user_id: UUID, context: Mapping[str, Any]) -> SafetyDecision:
        return SafetyDecision(allowed=True)


__all__ = ["AllowAllSafetyCheck", "SafetyCheck", "SafetyDecision"]
