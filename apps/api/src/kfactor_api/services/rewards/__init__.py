from .engine import GrantOutcome, GrantRequest, LedgerPage, RewardGrantEngine
from .errors import RewardError, RewardPolicyError, UserNotFoundError
from .policies import RewardPolicy, RewardTrigger, get_reward_policy
from .safety import AllowAllSafetyCheck, SafetyCheck, SafetyDecision

__all__ = [
    "AllowAllSafetyCheck",
    "GrantOutcome",
    "GrantRequest",
    "LedgerPage",
    "RewardError",
    "RewardGrantEngine",
    "RewardPolicy",
    "RewardPolicyError",
    "RewardTrigger",
    "SafetyCheck",
    "SafetyDecision",
    "UserNotFoundError",
    "get_reward_policy",
]
