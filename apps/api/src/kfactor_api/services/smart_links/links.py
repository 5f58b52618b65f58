"""Smart link issuance and resolution."""

from __future__ import annotations

import base64
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Mapping
from urllib.parse import quote
from uuid import UUID

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from kfactor_api.models import SmartLink
from kfactor_api.services.rate_limit import InviteRateLimitExceeded, InviteRateLimiter
from kfactor_api.services.smart_links.attribution import AttributionRecord, extract_utm
from kfactor_api.services.smart_links.signing import SignatureCodec, SmartLinkFields


CODE_LENGTH = 12
MAX_CODE_ATTEMPTS = 10
SAFE_ROUTE = "/"

# Priority order: a result beats a deck, a deck beats a cohort.
_DEEP_ROUTES: tuple[tuple[str, str], ...] = (
    ("resultId", "/results/{}"),
    ("deckId", "/fvm/skill/{}"),
    ("cohortId", "/cohort/{}"),
)


class SmartLinkCodeExhaustedError(RuntimeError):
    """No unused code could be generated."""


@dataclass(frozen=True)
class IssuedSmartLink:
    code: str
    url: str
    loop: str
    expires_at: datetime


@dataclass(frozen=True)
class SmartLinkResolution:
    route: str
    attribution: AttributionRecord | None = None

    @property
    def resolved(self) -> bool:
        return self.attribution is not None


FALLBACK_RESOLUTION = SmartLinkResolution(route=SAFE_ROUTE, attribution=None)


def generate_code() -> str:
    return base64.urlsafe_b64encode(secrets.token_bytes(9)).decode("ascii")[:CODE_LENGTH]


def build_deep_route(params: Any) -> str:
    if not isinstance(params, Mapping):
        return SAFE_ROUTE
    for key, template in _DEEP_ROUTES:
        value = params.get(key)
        if isinstance(value, str) and value:
            return template.format(quote(value, safe=""))
    return SAFE_ROUTE


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SmartLinkService:
    """Issues signed share links and resolves them back into attribution."""

    def __init__(
        self,
        session: AsyncSession,
        codec: SignatureCodec,
        *,
        rate_limiter: InviteRateLimiter | None = None,
        public_app_url: str = "http://localhost:3000",
        expiry_days: int = 7,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._db = session
        self._codec = codec
        self._rate_limiter = rate_limiter
        self._public_app_url = public_app_url.rstrip("/")
        self._expiry = timedelta(days=expiry_days)
        self._now = now

    async def create(
        self,
        inviter_id: UUID | str,
        loop: str,
        params: Mapping[str, Any] | None = None,
    ) -> IssuedSmartLink:
        """Persist a new signed link; raises ``InviteRateLimitExceeded`` when today's quota is spent."""

        inviter = inviter_id if isinstance(inviter_id, UUID) else UUID(str(inviter_id))
        if self._rate_limiter is not None:
            state = await self._rate_limiter.check(str(inviter))
            if not state.allowed:
                raise InviteRateLimitExceeded(state)

        code = await self._unique_code()
        expires_at = self._now() + self._expiry
        link_params = dict(params) if params else None
        sig = self._codec.sign(
            SmartLinkFields(
                code=code,
                expires_at=expires_at,
                inviter_id=str(inviter),
                loop=loop,
                params=link_params,
            )
        )

        self._db.add(
            SmartLink(
                code=code,
                inviter_id=inviter,
                loop=loop,
                params=link_params,
                sig=sig,
                expires_at=expires_at,
            )
        )
        await self._db.flush()

        if self._rate_limiter is not None:
            await self._rate_limiter.increment(str(inviter))

        logger.info("Issued smart link", code=code, inviter_id=str(inviter), loop=loop)
        return IssuedSmartLink(
            code=code,
            url=f"{self._public_app_url}/sl/{code}",
            loop=loop,
            expires_at=expires_at,
        )

    async def _unique_code(self) -> str:
        for _ in range(MAX_CODE_ATTEMPTS):
            code = generate_code()
            if await self._db.get(SmartLink, code) is None:
                return code
        raise SmartLinkCodeExhaustedError(
            f"Failed to generate unique code after {MAX_CODE_ATTEMPTS} attempts"
        )

    async def resolve(self, code: str, query_params: Mapping[str, Any] | None = None) -> SmartLinkResolution:
        """Resolve a code to its deep route; every failure collapses into the same fallback."""

        try:
            return await self._resolve(code, query_params or {})
        except Exception as exc:  # noqa: BLE001 - anonymous visitors never see an error
            logger.warning("Smart link resolution failed", code=code, error=type(exc).__name__)
            return FALLBACK_RESOLUTION

    async def _resolve(self, code: str, query_params: Mapping[str, Any]) -> SmartLinkResolution:
        if not code or len(code) > CODE_LENGTH:
            logger.warning("Smart link rejected", code=code, reason="malformed_code")
            return FALLBACK_RESOLUTION

        link = await self._db.get(SmartLink, code)
        if link is None:
            logger.warning("Smart link rejected", code=code, reason="not_found")
            return FALLBACK_RESOLUTION

        if _as_utc(link.expires_at) < self._now():
            logger.warning("Smart link rejected", code=code, reason="expired")
            return FALLBACK_RESOLUTION

        if link.params is not None and not isinstance(link.params, Mapping):
            logger.warning("Smart link rejected", code=code, reason="malformed_params")
            return FALLBACK_RESOLUTION

        fields = SmartLinkFields(
            code=link.code,
            expires_at=link.expires_at,
            inviter_id=str(link.inviter_id),
            loop=link.loop,
            params=link.params or None,
        )
        if not self._codec.verify(link.sig, fields):
            logger.warning("Smart link rejected", code=code, reason="invalid_signature")
            return FALLBACK_RESOLUTION

        attribution = AttributionRecord(
            inviter_id=str(link.inviter_id),
            loop=link.loop,
            smart_link_code=link.code,
            utm=extract_utm(query_params),
        )
        return SmartLinkResolution(route=build_deep_route(link.params), attribution=attribution)


__all__ = [
    "FALLBACK_RESOLUTION",
    "IssuedSmartLink",
    "SAFE_ROUTE",
    "SmartLinkCodeExhaustedError",
    "SmartLinkResolution",
    "SmartLinkService",
    "build_deep_route",
    "generate_code",
]
