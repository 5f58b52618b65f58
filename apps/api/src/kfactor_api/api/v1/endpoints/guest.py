"""Guest challenge capture and post-signup conversion."""

from __future__ import annotations

from typing import Any, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from kfactor_api.api.dependencies.services import get_analytics, get_attribution_propagator, get_safety_check
from kfactor_api.api.dependencies.session import require_member_session
from kfactor_api.db.session import get_session
from kfactor_api.models.user import User
from kfactor_api.services.analytics import AnalyticsDispatcher
from kfactor_api.services.guest_conversion import GuestConversionService
from kfactor_api.services.rewards import RewardGrantEngine, SafetyCheck
from kfactor_api.services.smart_links import AttributionPropagator


challenges_router = APIRouter(prefix="/challenges", tags=["guest"])
auth_router = APIRouter(prefix="/auth", tags=["guest"])


class GuestCompletionRequest(BaseModel):
    challengeId: str = Field(min_length=1, max_length=36)
    guestSessionId: str = Field(min_length=10, max_length=64)
    score: int = Field(ge=0, le=100)
    answers: dict[str, Any] = Field(default_factory=dict)
    smartLinkCode: Optional[str] = Field(default=None, max_length=12)
    inviterId: Optional[UUID] = None
    subject: Optional[str] = Field(default=None, max_length=64)


class GuestCompletionResponse(BaseModel):
    completionId: UUID
    score: int


class ConvertGuestRequest(BaseModel):
    guestSessionId: str = Field(min_length=10, max_length=64)


class ConversionItemResponse(BaseModel):
    challengeId: str
    score: int
    xpEarned: int
    referralCreated: bool
    inviterRewardStatus: Optional[str] = None


class ConvertGuestResponse(BaseModel):
    success: bool
    xpEarned: int
    completionsConverted: int
    conversions: list[ConversionItemResponse]


def _inviter_from_cookie(raw: str | None) -> UUID | None:
    if not raw:
        return None
    try:
        return UUID(raw)
    except ValueError:
        return None


@challenges_router.post(
    "/guest/complete",
    response_model=GuestCompletionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def complete_guest_challenge(
    payload: GuestCompletionRequest,
    request: Request,
    db: AsyncSession = Depends(get_session),
    propagator: AttributionPropagator = Depends(get_attribution_propagator),
) -> GuestCompletionResponse:
    inviter_id = payload.inviterId
    smart_link_code = payload.smartLinkCode
    if inviter_id is None or smart_link_code is None:
        attribution = propagator.read(request.cookies)
        if attribution is not None:
            inviter_id = inviter_id or _inviter_from_cookie(attribution.inviter_id)
            smart_link_code = smart_link_code or attribution.smart_link_code

    service = GuestConversionService(db)
    try:
        completion = await service.record_completion(
            challenge_id=payload.challengeId,
            guest_session_id=payload.guestSessionId,
            score=payload.score,
            answers=payload.answers,
            smart_link_code=smart_link_code,
            inviter_id=inviter_id,
            metadata={"subject": payload.subject} if payload.subject else None,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    await db.commit()
    return GuestCompletionResponse(completionId=completion.id, score=completion.score)


@auth_router.post("/convert-guest", response_model=ConvertGuestResponse)
async def convert_guest(
    payload: ConvertGuestRequest,
    current_user: User = Depends(require_member_session),
    db: AsyncSession = Depends(get_session),
    analytics: AnalyticsDispatcher = Depends(get_analytics),
    safety_check: SafetyCheck = Depends(get_safety_check),
) -> ConvertGuestResponse:
    service = GuestConversionService(
        db,
        reward_engine=RewardGrantEngine(db, safety_check=safety_check, analytics=analytics),
        analytics=analytics,
    )
    summary = await service.convert(
        payload.guestSessionId,
        user_id=current_user.id,
        persona=current_user.persona,
    )
    await db.commit()

    if summary.completions_converted:
        analytics.dispatch(
            "guest.converted",
            {
                "guest_session_id": payload.guestSessionId,
                "completions_converted": summary.completions_converted,
                "xp_earned": summary.xp_earned,
            },
            user_id=str(current_user.id),
        )

    return ConvertGuestResponse(
        success=True,
        xpEarned=summary.xp_earned,
        completionsConverted=summary.completions_converted,
        conversions=[
            ConversionItemResponse(
                challengeId=item.challenge_id,
                score=item.score,
                xpEarned=item.xp_earned,
                referralCreated=item.referral_created,
                inviterRewardStatus=item.inviter_reward_status.value if item.inviter_reward_status else None,
            )
            for item in summary.conversions
        ],
    )
