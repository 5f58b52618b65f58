"""Reward policy table keyed by persona and trigger."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from kfactor_api.models import PersonaEnum, RewardType


class RewardTrigger(str, Enum):
    ON_SEND = "on_send"
    ON_FVM_COMPLETE = "on_fvm_complete"


UNIT_COSTS_CENTS: dict[RewardType, int] = {
    RewardType.STREAK_SHIELD: 50,
    RewardType.AI_MINUTES: 10,
    RewardType.BADGE: 100,
    RewardType.CREDITS: 1,
}


@dataclass(frozen=True)
class RewardPolicy:
    type: RewardType
    unit_cost_cents: int
    description: str
    amount: int | None = None

    @property
    def default_quantity(self) -> int:
        return self.amount if self.amount is not None else 1


POLICIES: dict[PersonaEnum, dict[RewardTrigger, RewardPolicy]] = {
    PersonaEnum.STUDENT: {
        RewardTrigger.ON_SEND: RewardPolicy(
            type=RewardType.STREAK_SHIELD,
            amount=1,
            unit_cost_cents=UNIT_COSTS_CENTS[RewardType.STREAK_SHIELD],
            description="Streak shield preview (granted on FVM completion)",
        ),
        RewardTrigger.ON_FVM_COMPLETE: RewardPolicy(
            type=RewardType.AI_MINUTES,
            amount=15,
            unit_cost_cents=UNIT_COSTS_CENTS[RewardType.AI_MINUTES],
            description="+15 AI minutes when a friend completes FVM within 48h",
        ),
    },
    PersonaEnum.PARENT: {
        RewardTrigger.ON_FVM_COMPLETE: RewardPolicy(
            type=RewardType.BADGE,
            unit_cost_cents=UNIT_COSTS_CENTS[RewardType.BADGE],
            description="Parent badge when the child's friend completes FVM",
        ),
    },
    PersonaEnum.TUTOR: {
        RewardTrigger.ON_FVM_COMPLETE: RewardPolicy(
            type=RewardType.CREDITS,
            amount=50,
            unit_cost_cents=UNIT_COSTS_CENTS[RewardType.CREDITS],
            description="50 credits when a student completes FVM",
        ),
    },
}


def get_reward_policy(persona: PersonaEnum | str, trigger: RewardTrigger) -> RewardPolicy | None:
    try:
        persona_key = PersonaEnum(persona)
    except ValueError:
        return None
    return POLICIES.get(persona_key, {}).get(trigger)


def unit_cost_cents(reward_type: RewardType) -> int:
    return UNIT_COSTS_CENTS.get(RewardType(reward_type), 0)


def total_cost_cents(reward_type: RewardType, quantity: int) -> int:
    return unit_cost_cents(reward_type) * int(quantity)


__all__ = [
    "POLICIES",
    "RewardPolicy",
    "RewardTrigger",
    "UNIT_COSTS_CENTS",
    "get_reward_policy",
    "total_cost_cents",
    "unit_cost_cents",
]
