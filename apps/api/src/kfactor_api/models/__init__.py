"""SQLAlchemy models package."""

from .analytics import AnalyticsEvent  # noqa: F401
from .referral import GuestChallengeCompletion, Referral  # noqa: F401
from .rewards import (  # noqa: F401
    LedgerEntry,
    LedgerEntryType,
    RewardGrant,
    RewardStatus,
    RewardType,
)
from .smart_link import SmartLink  # noqa: F401
from .user import PersonaEnum, User  # noqa: F401
from .xp import XpEvent, XpEventType  # noqa: F401
