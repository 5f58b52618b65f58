"""Smart link issuance and the anonymous ``/sl/{code}`` redirect."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from kfactor_api.api.dependencies.services import (
    get_orchestrator,
    get_rate_limiter,
    get_signature_codec,
)
from kfactor_api.api.dependencies.session import require_member_session
from kfactor_api.core.settings import settings
from kfactor_api.db.session import get_session
from kfactor_api.models.user import User
from kfactor_api.services.orchestrator import LoopOrchestratorClient
from kfactor_api.services.rate_limit import InviteRateLimitExceeded, InviteRateLimiter
from kfactor_api.services.smart_links import (
    ATTRIBUTION_COOKIE,
    SignatureCodec,
    SigningKeyMissingError,
    SmartLinkService,
    encode_attribution_cookie,
)


router = APIRouter(prefix="/smart-links", tags=["smart-links"])
resolve_router = APIRouter(tags=["smart-links"])


class CreateSmartLinkRequest(BaseModel):
    loop: str | None = Field(default=None, min_length=1, max_length=24)
    params: dict[str, Any] | None = None
    context: dict[str, Any] | None = Field(
        default=None,
        description="Signals forwarded to the loop orchestrator when loop is omitted",
    )


class SmartLinkResponse(BaseModel):
    code: str
    url: str
    loop: str
    expiresAt: datetime


@router.post("", response_model=SmartLinkResponse, status_code=status.HTTP_201_CREATED)
async def create_smart_link(
    payload: CreateSmartLinkRequest,
    current_user: User = Depends(require_member_session),
    db: AsyncSession = Depends(get_session),
    codec: SignatureCodec = Depends(get_signature_codec),
    rate_limiter: InviteRateLimiter = Depends(get_rate_limiter),
    orchestrator: LoopOrchestratorClient = Depends(get_orchestrator),
) -> SmartLinkResponse:
    loop = payload.loop
    if loop is None:
        decision = await orchestrator.choose_loop(
            {"user_id": str(current_user.id), "persona": current_user.persona, **(payload.context or {})}
        )
        loop = decision.loop[:24]

    service = SmartLinkService(
        db,
        codec,
        rate_limiter=rate_limiter,
        public_app_url=settings.public_app_url,
        expiry_days=settings.smartlink_expiry_days,
    )
    try:
        issued = await service.create(current_user.id, loop, payload.params)
    except InviteRateLimitExceeded as exc:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=(
                f"Rate limit exceeded. You can send {exc.state.limit} invites per day. "
                f"Try again after {exc.state.reset_at.isoformat()}."
            ),
        ) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except SigningKeyMissingError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Smart link signing is not configured",
        ) from exc

    await db.commit()
    return SmartLinkResponse(code=issued.code, url=issued.url, loop=issued.loop, expiresAt=issued.expires_at)


@resolve_router.get("/sl/{code}", include_in_schema=False)
async def resolve_smart_link(
    code: str,
    request: Request,
    db: AsyncSession = Depends(get_session),
    codec: SignatureCodec = Depends(get_signature_codec),
) -> RedirectResponse:
    """Redirect to the deep route and drop the attribution cookie; failures land on ``/``."""

    service = SmartLinkService(db, codec)
    resolution = await service.resolve(code, request.query_params)
    response = RedirectResponse(url=resolution.route, status_code=status.HTTP_307_TEMPORARY_REDIRECT)
    if resolution.attribution is not None and codec.configured:
        response.set_cookie(
            ATTRIBUTION_COOKIE,
            encode_attribution_cookie(resolution.attribution, codec),
            max_age=settings.attribution_cookie_max_age_seconds,
            path="/",
            samesite="lax",
            secure=settings.environment == "production",
            httponly=False,
        )
    return response
