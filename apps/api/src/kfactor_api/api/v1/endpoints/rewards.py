"""Reward grant, ledger and balance APIs."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from kfactor_api.api.dependencies.security import require_internal_api_key
from kfactor_api.api.dependencies.services import get_analytics, get_safety_check
from kfactor_api.api.dependencies.session import require_member_session
from kfactor_api.db.session import get_session
from kfactor_api.models import LedgerEntry, LedgerEntryType, RewardType
from kfactor_api.models.user import User
from kfactor_api.services.analytics import AnalyticsDispatcher
from kfactor_api.services.rewards import (
    GrantRequest,
    RewardGrantEngine,
    RewardPolicyError,
    SafetyCheck,
    UserNotFoundError,
)


router = APIRouter(prefix="/rewards", tags=["rewards"])


class GrantRewardRequest(BaseModel):
    userId: UUID
    rewardType: RewardType
    amount: Optional[int] = Field(default=None, gt=0)
    loop: Optional[str] = Field(default=None, max_length=24)
    dedupeKey: str = Field(min_length=1, max_length=255)
    metadata: Optional[dict[str, Any]] = None


class GrantRewardResponse(BaseModel):
    success: bool
    rewardId: UUID
    rewardType: RewardType
    amount: int
    unitCostCents: int
    totalCostCents: int
    message: Optional[str] = None


class LedgerEntryResponse(BaseModel):
    id: int
    rewardId: Optional[UUID]
    type: LedgerEntryType
    unitCostCents: int
    quantity: int
    totalCostCents: int
    loop: Optional[str]
    metadata: dict[str, Any]
    createdAt: datetime


class PaginationResponse(BaseModel):
    limit: int
    offset: int
    total: int
    hasMore: bool


class LedgerResponse(BaseModel):
    entries: list[LedgerEntryResponse]
    pagination: PaginationResponse


class BalancesResponse(BaseModel):
    balances: dict[str, int]


@router.post(
    "/grant",
    response_model=GrantRewardResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_internal_api_key)],
    responses={403: {"description": "Reward denied by the safety check"}},
)
async def grant_reward(
    payload: GrantRewardRequest,
    response: Response,
    db: AsyncSession = Depends(get_session),
    safety_check: SafetyCheck = Depends(get_safety_check),
    analytics: AnalyticsDispatcher = Depends(get_analytics),
) -> GrantRewardResponse | JSONResponse:
    engine = RewardGrantEngine(db, safety_check=safety_check, analytics=analytics)
    try:
        outcome = await engine.grant(
            GrantRequest(
                user_id=payload.userId,
                reward_type=payload.rewardType,
                dedupe_key=payload.dedupeKey,
                amount=payload.amount,
                loop=payload.loop,
                metadata=payload.metadata or {},
            )
        )
    except UserNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found") from exc
    except RewardPolicyError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.message) from exc

    await db.commit()

    if not outcome.granted:
        return JSONResponse(
            status_code=status.HTTP_403_FORBIDDEN,
            content={
                "success": False,
                "error": "Reward denied",
                "reason": outcome.denied_reason,
                "rewardId": str(outcome.reward_id),
            },
        )

    if outcome.replayed:
        response.status_code = status.HTTP_200_OK
    return GrantRewardResponse(
        success=True,
        rewardId=outcome.reward_id,
        rewardType=outcome.reward_type,
        amount=outcome.amount,
        unitCostCents=outcome.unit_cost_cents,
        totalCostCents=outcome.total_cost_cents,
        message="Reward already granted" if outcome.replayed else None,
    )


def _serialize_entry(entry: LedgerEntry) -> LedgerEntryResponse:
    return LedgerEntryResponse(
        id=entry.id,
        rewardId=entry.reward_id,
        type=entry.type,
        unitCostCents=entry.unit_cost_cents,
        quantity=entry.quantity,
        totalCostCents=entry.total_cost_cents,
        loop=entry.loop,
        metadata=entry.metadata_json or {},
        createdAt=entry.created_at,
    )


@router.get("/ledger", response_model=LedgerResponse)
async def list_ledger(
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    type: Optional[LedgerEntryType] = Query(None, description="Filter by ledger entry type"),
    current_user: User = Depends(require_member_session),
    db: AsyncSession = Depends(get_session),
) -> LedgerResponse:
    engine = RewardGrantEngine(db)
    page = await engine.list_ledger(current_user.id, limit=limit, offset=offset, entry_type=type)
    return LedgerResponse(
        entries=[_serialize_entry(entry) for entry in page.entries],
        pagination=PaginationResponse(
            limit=page.limit,
            offset=page.offset,
            total=page.total,
            hasMore=page.has_more,
        ),
    )


@router.get("/balances", response_model=BalancesResponse)
async def reward_balances(
    current_user: User = Depends(require_member_session),
    db: AsyncSession = Depends(get_session),
) -> BalancesResponse:
    engine = RewardGrantEngine(db)
    return BalancesResponse(balances=await engine.balances(current_user.id))
