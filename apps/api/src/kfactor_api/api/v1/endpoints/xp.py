"""XP tracking and balance APIs."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from kfactor_api.api.dependencies.session import require_member_session
from kfactor_api.db.session import get_session
from kfactor_api.models import PersonaEnum, XpEvent, XpEventType
from kfactor_api.models.user import User
from kfactor_api.services.xp import XpLedger


router = APIRouter(prefix="/xp", tags=["xp"])


class XpEventMetadata(BaseModel):
    subject: Optional[str] = None
    skillTag: Optional[str] = None
    deckId: Optional[str] = None
    smartlinkId: Optional[str] = None
    inviteId: Optional[str] = None
    attemptId: Optional[str] = None
    score: Optional[int] = Field(default=None, ge=0, le=5)
    streak: Optional[int] = Field(default=None, ge=0)
    device: Optional[str] = None
    ipHash: Optional[str] = None
    causeEventId: Optional[str] = None


class TrackXpRequest(BaseModel):
    personaType: PersonaEnum
    eventType: XpEventType
    referenceId: Optional[str] = None
    metadata: Optional[XpEventMetadata] = None
    rawXp: Optional[int] = Field(default=None, ge=0)


class XpEventResponse(BaseModel):
    id: int
    eventType: str
    personaType: str
    referenceId: Optional[str] = None
    rawXp: int
    createdAt: datetime


class TrackXpResponse(BaseModel):
    event: XpEventResponse
    xp: int
    level: int
    progress: float
    nextNeeded: int


class XpBalanceResponse(BaseModel):
    xp: int
    level: int
    progress: float
    nextNeeded: int
    currentLevelXp: int
    nextLevelXp: int
    recentEvents: Optional[list[XpEventResponse]] = None


def _serialize_event(event: XpEvent) -> XpEventResponse:
    return XpEventResponse(
        id=event.id,
        eventType=event.event_type,
        personaType=event.persona_type,
        referenceId=event.reference_id,
        rawXp=event.raw_xp,
        createdAt=event.created_at,
    )


@router.post("/track", response_model=TrackXpResponse, status_code=status.HTTP_201_CREATED)
async def track_xp(
    payload: TrackXpRequest,
    current_user: User = Depends(require_member_session),
    db: AsyncSession = Depends(get_session),
) -> TrackXpResponse:
    ledger = XpLedger(db)
    metadata: dict[str, Any] = payload.metadata.model_dump(exclude_none=True) if payload.metadata else {}
    event = await ledger.record_event(
        user_id=current_user.id,
        persona_type=payload.personaType,
        event_type=payload.eventType,
        reference_id=payload.referenceId,
        metadata=metadata,
        raw_xp=payload.rawXp,
    )
    totals = await ledger.totals(current_user.id)
    await db.commit()
    return TrackXpResponse(
        event=_serialize_event(event),
        xp=totals.xp,
        level=totals.level,
        progress=totals.progress,
        nextNeeded=totals.next_needed,
    )


@router.get("/balance", response_model=XpBalanceResponse)
async def xp_balance(
    personaType: Optional[PersonaEnum] = Query(None),
    includeEvents: bool = Query(False),
    current_user: User = Depends(require_member_session),
    db: AsyncSession = Depends(get_session),
) -> XpBalanceResponse:
    ledger = XpLedger(db)
    totals = await ledger.totals(current_user.id, personaType)
    recent = None
    if includeEvents:
        recent = [_serialize_event(event) for event in await ledger.recent_events(current_user.id, 20)]
    return XpBalanceResponse(
        xp=totals.xp,
        level=totals.level,
        progress=totals.progress,
        nextNeeded=totals.next_needed,
        currentLevelXp=totals.current_level_xp,
        nextLevelXp=totals.next_level_xp,
        recentEvents=recent,
    )
