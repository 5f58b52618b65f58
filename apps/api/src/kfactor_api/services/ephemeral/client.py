from __future__ import annotations

from loguru import logger
from redis.asyncio import Redis

from kfactor_api.core.settings import Settings


def build_redis_client(config: Settings) -> Redis | None:
    """Create the shared Redis client, or ``None`` when presence and rate limiting should degrade."""

    if not config.redis_url:
        logger.warning("REDIS_URL not set; presence and invite rate limiting will degrade")
        return None
    try:
        return Redis.from_url(
            config.redis_url,
            encoding="utf-8",
            decode_responses=True,
            socket_timeout=config.redis_socket_timeout_seconds,
            socket_connect_timeout=config.redis_socket_timeout_seconds,
        )
    except ValueError as exc:
        logger.error("Invalid REDIS_URL; ephemeral store disabled", error=str(exc))
        return None
