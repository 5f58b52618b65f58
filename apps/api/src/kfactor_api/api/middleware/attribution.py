"""Emits ``invite.opened`` once per processed-marker window on tracked app routes."""

from __future__ import annotations

from typing import Sequence

from fastapi import Request, Response
from loguru import logger
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.types import ASGIApp

from kfactor_api.services.smart_links import PROCESSED_COOKIE, AttributionPropagator


class AttributionMiddleware(BaseHTTPMiddleware):
    def __init__(
        self,
        app: ASGIApp,
        *,
        tracked_prefixes: Sequence[str],
        processed_max_age: int = 3600,
        secure_cookies: bool = False,
    ) -> None:
        super().__init__(app)
        self._prefixes = tuple(prefix.rstrip("/") or "/" for prefix in tracked_prefixes)
        self._processed_max_age = processed_max_age
        self._secure = secure_cookies

    def _tracked(self, path: str) -> bool:
        return any(path == prefix or path.startswith(f"{prefix}/") for prefix in self._prefixes)

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if not self._tracked(request.url.path):
            return await call_next(request)

        emitted = False
        try:
            propagator = AttributionPropagator(
                request.app.state.signature_codec,
                request.app.state.analytics,
            )
            emitted = propagator.track_opened(request.cookies)
        except Exception as exc:  # noqa: BLE001 - tracking never breaks page loads
            logger.warning("Attribution tracking failed", path=request.url.path, error=str(exc))

        response = await call_next(request)
        if emitted:
            response.set_cookie(
                PROCESSED_COOKIE,
                "1",
                max_age=self._processed_max_age,
                path="/",
                samesite="lax",
                secure=self._secure,
                httponly=True,
            )
        return response


__all__ = ["AttributionMiddleware"]
