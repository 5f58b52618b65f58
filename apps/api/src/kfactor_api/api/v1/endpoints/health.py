from __future__ import annotations

from typing import Dict, Literal

from fastapi import APIRouter, Depends
from loguru import logger
from pydantic import BaseModel, Field
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from kfactor_api.api.dependencies.services import get_analytics, get_ephemeral_store
from kfactor_api.db.session import get_session
from kfactor_api.services.analytics import AnalyticsDispatcher
from kfactor_api.services.ephemeral import EphemeralStore


router = APIRouter()


class ComponentStatus(BaseModel):
    status: Literal["ready", "disabled", "error", "degraded"]
    detail: str | None = Field(default=None, description="Human readable status detail")


class ReadinessPayload(BaseModel):
    status: Literal["ready", "degraded", "error"]
    components: Dict[str, ComponentStatus]


async def _ping(client) -> bool:
    return bool(await client.ping())


@router.get("/readyz", summary="Service readiness", response_model=ReadinessPayload)
async def service_readiness(
    session: AsyncSession = Depends(get_session),
    store: EphemeralStore = Depends(get_ephemeral_store),
    analytics: AnalyticsDispatcher = Depends(get_analytics),
) -> ReadinessPayload:
    components: Dict[str, ComponentStatus] = {}
    status: Literal["ready", "degraded", "error"] = "ready"

    try:
        await session.execute(text("SELECT 1"))
        components["database"] = ComponentStatus(status="ready")
    except SQLAlchemyError as exc:
        logger.error("Readiness database probe failed", error=str(exc))
        components["database"] = ComponentStatus(status="error", detail="Database unreachable")
        status = "error"

    # the store is optional; an outage degrades presence and rate limits but never fails readiness
    if not store.configured:
        components["ephemeral_store"] = ComponentStatus(
            status="disabled",
            detail="REDIS_URL not configured; presence and invite limits fail open",
        )
    elif await store.run("readyz.ping", _ping, False):
        components["ephemeral_store"] = ComponentStatus(status="ready")
    else:
        kind = store.last_failure_kind.value if store.last_failure_kind else "unknown"
        components["ephemeral_store"] = ComponentStatus(status="degraded", detail=f"Store unavailable ({kind})")
        status = "degraded" if status != "error" else status

    components["analytics"] = ComponentStatus(
        status="ready",
        detail=f"pending={analytics.pending} dropped={analytics.dropped}",
    )

    return ReadinessPayload(status=status, components=components)
