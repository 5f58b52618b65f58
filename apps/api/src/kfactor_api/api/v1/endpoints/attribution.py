from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from kfactor_api.api.dependencies.services import get_attribution_propagator
from kfactor_api.api.dependencies.session import require_member_session
from kfactor_api.models.user import User
from kfactor_api.services.smart_links import AttributionPropagator


router = APIRouter(prefix="/attribution", tags=["attribution"])


class TrackJoinedResponse(BaseModel):
    tracked: bool
    reason: str | None = None
    inviterId: str | None = None
    loop: str | None = None
    smartLinkCode: str | None = None


@router.post("/track-joined", response_model=TrackJoinedResponse)
async def track_joined(
    request: Request,
    current_user: User = Depends(require_member_session),
    propagator: AttributionPropagator = Depends(get_attribution_propagator),
) -> TrackJoinedResponse:
    """Record ``invite.joined`` for the signed-in user when an attribution cookie is present."""

    attribution = propagator.track_joined(request.cookies, user_id=str(current_user.id))
    if attribution is None:
        return TrackJoinedResponse(tracked=False, reason="no_attribution")
    return TrackJoinedResponse(
        tracked=True,
        inviterId=attribution.inviter_id,
        loop=attribution.loop,
        smartLinkCode=attribution.smart_link_code,
    )
