"""Presence ping, counts and the live SSE count stream."""

from __future__ import annotations

import secrets
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from kfactor_api.api.dependencies.services import get_presence_service
from kfactor_api.api.dependencies.session import optional_member_session
from kfactor_api.core.settings import settings
from kfactor_api.services.presence import InvalidSubjectError, PresenceService, validate_subject
from kfactor_api.services.smart_links import VISITOR_ID_COOKIE


router = APIRouter(prefix="/presence", tags=["presence"])

VISITOR_COOKIE_MAX_AGE = 365 * 24 * 60 * 60


class PresencePingRequest(BaseModel):
    subject: str


class PresencePingResponse(BaseModel):
    success: bool


class PresenceCountsRequest(BaseModel):
    subjects: list[str] = Field(min_length=1, max_length=50)


class PresenceCountsResponse(BaseModel):
    counts: dict[str, int]
    healthy: bool


def _subject_or_400(raw: object) -> str:
    try:
        return validate_subject(raw)
    except InvalidSubjectError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc


@router.post("/ping", response_model=PresencePingResponse)
async def presence_ping(
    payload: PresencePingRequest,
    request: Request,
    response: Response,
    session_user: UUID | None = Depends(optional_member_session),
    presence: PresenceService = Depends(get_presence_service),
) -> PresencePingResponse:
    subject = _subject_or_400(payload.subject)

    member_id = str(session_user) if session_user else request.cookies.get(VISITOR_ID_COOKIE)
    if not member_id:
        member_id = secrets.token_urlsafe(16)
        response.set_cookie(
            VISITOR_ID_COOKIE,
            member_id,
            max_age=VISITOR_COOKIE_MAX_AGE,
            path="/",
            samesite="lax",
            secure=settings.environment == "production",
            httponly=True,
        )

    # degraded stores are reported by the stream, never to the pinger
    await presence.ping(subject, member_id)
    return PresencePingResponse(success=True)


@router.get("/stream")
async def presence_stream(
    request: Request,
    subject: str = Query(...),
    presence: PresenceService = Depends(get_presence_service),
) -> StreamingResponse:
    validated = _subject_or_400(subject)
    return StreamingResponse(
        presence.stream(
            validated,
            poll_interval=settings.presence_poll_interval_seconds,
            keepalive_interval=settings.presence_keepalive_interval_seconds,
            is_disconnected=request.is_disconnected,
        ),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.post("/counts", response_model=PresenceCountsResponse)
async def presence_counts(
    payload: PresenceCountsRequest,
    presence: PresenceService = Depends(get_presence_service),
) -> PresenceCountsResponse:
    subjects = [_subject_or_400(subject) for subject in payload.subjects]
    counts = await presence.counts(subjects)
    return PresenceCountsResponse(counts=counts, healthy=presence.is_healthy())
