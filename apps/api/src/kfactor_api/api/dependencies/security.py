import hmac

from fastapi import Header, HTTPException, status

from kfactor_api.core.settings import settings


async def require_internal_api_key(x_api_key: str = Header("", alias="X-API-Key")) -> None:
    """Guard service-to-service endpoints; open when no key is configured (local development)."""

    if not settings.internal_api_key:
        return

    if not hmac.compare_digest(x_api_key.encode("utf-8"), settings.internal_api_key.encode("utf-8")):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
        )
