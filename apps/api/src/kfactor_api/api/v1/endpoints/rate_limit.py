from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from kfactor_api.api.dependencies.services import get_rate_limiter
from kfactor_api.api.dependencies.session import require_member_session
from kfactor_api.models.user import User
from kfactor_api.services.rate_limit import InviteRateLimiter


router = APIRouter(prefix="/rate-limit", tags=["rate-limit"])


class InviteRateLimitResponse(BaseModel):
    allowed: bool
    remaining: int
    limit: int
    resetAt: datetime


@router.get("/invite", response_model=InviteRateLimitResponse)
async def invite_rate_limit(
    current_user: User = Depends(require_member_session),
    limiter: InviteRateLimiter = Depends(get_rate_limiter),
) -> InviteRateLimitResponse:
    state = await limiter.check(str(current_user.id))
    return InviteRateLimitResponse(
        allowed=state.allowed,
        remaining=state.remaining,
        limit=state.limit,
        resetAt=state.reset_at,
    )
