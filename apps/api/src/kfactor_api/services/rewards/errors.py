from __future__ import annotations

from typing import Literal


class RewardError(Exception):
    """Base class for reward grant failures raised before any mutation."""


class UserNotFoundError(RewardError):
    def __init__(self, user_id: object) -> None:
        super().__init__("User not found")
        self.user_id = user_id


class RewardPolicyError(RewardError):
    """No applicable policy, or the requested reward type disagrees with it."""

    def __init__(self, kind: Literal["policy_missing", "type_mismatch"], message: str) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
