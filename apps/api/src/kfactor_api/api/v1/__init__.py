from fastapi import APIRouter

from .endpoints import (
    attribution,
    guest,
    health,
    presence,
    rate_limit,
    rewards,
    smart_links,
    xp,
)

router = APIRouter()
router.include_router(health.router, tags=["Health"])
router.include_router(smart_links.router)
router.include_router(attribution.router)
router.include_router(rewards.router)
router.include_router(xp.router)
router.include_router(presence.router)
router.include_router(rate_limit.router)
router.include_router(guest.challenges_router)
router.include_router(guest.auth_router)
