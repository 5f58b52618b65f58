"""Accessors for process-wide collaborators stored on ``app.state``."""

from __future__ import annotations

from fastapi import Depends, Request

from kfactor_api.core.settings import settings
from kfactor_api.services.analytics import AnalyticsDispatcher
from kfactor_api.services.ephemeral import EphemeralStore
from kfactor_api.services.orchestrator import LoopOrchestratorClient
from kfactor_api.services.presence import PresenceService
from kfactor_api.services.rate_limit import InviteRateLimiter
from kfactor_api.services.rewards import SafetyCheck
from kfactor_api.services.smart_links import AttributionPropagator, SignatureCodec


def get_signature_codec(request: Request) -> SignatureCodec:
    return request.app.state.signature_codec


def get_ephemeral_store(request: Request) -> EphemeralStore:
    return request.app.state.ephemeral_store


def get_analytics(request: Request) -> AnalyticsDispatcher:
    return request.app.state.analytics


def get_orchestrator(request: Request) -> LoopOrchestratorClient:
    return request.app.state.orchestrator


def get_safety_check(request: Request) -> SafetyCheck:
    return request.app.state.safety_check


def get_presence_service(store: EphemeralStore = Depends(get_ephemeral_store)) -> PresenceService:
    return PresenceService(store, ttl_seconds=settings.presence_ttl_seconds)


def get_rate_limiter(store: EphemeralStore = Depends(get_ephemeral_store)) -> InviteRateLimiter:
    return InviteRateLimiter(store, daily_limit=settings.invite_rate_limit_daily)


def get_attribution_propagator(
    codec: SignatureCodec = Depends(get_signature_codec),
    analytics: AnalyticsDispatcher = Depends(get_analytics),
) -> AttributionPropagator:
    return AttributionPropagator(codec, analytics)
