"""Client for the loop orchestrator with a hard deadline and deterministic fallback."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Mapping

import httpx
from loguru import logger


@dataclass(frozen=True)
class LoopDecision:
    loop: str
    eligibility_reason: str
    rationale: str
    features_used: list[str] = field(default_factory=list)
    ttl_ms: int = 0
    fallback: bool = False

    def as_dict(self) -> dict[str, Any]:
        return {
            "loop": self.loop,
            "eligibility_reason": self.eligibility_reason,
            "rationale": self.rationale,
            "features_used": list(self.features_used),
            "ttl_ms": self.ttl_ms,
        }


def fallback_decision(default_loop: str = "buddy_challenge") -> LoopDecision:
    return LoopDecision(
        loop=default_loop,
        eligibility_reason="timeout_fallback",
        rationale="Orchestrator call timed out - using default loop",
        features_used=["fallback:timeout"],
        ttl_ms=0,
        fallback=True,
    )


class LoopOrchestratorClient:
    def __init__(
        self,
        base_url: str | None,
        *,
        timeout_seconds: float = 0.15,
        default_loop: str = "buddy_challenge",
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/") if base_url else None
        self._timeout = timeout_seconds
        self._default_loop = default_loop
        self._client = http_client
        self._owns_client = http_client is None

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def choose_loop(self, payload: Mapping[str, Any]) -> LoopDecision:
        """Ask the orchestrator for a loop; any timeout, error or bad payload yields the fallback."""

        if not self._base_url:
            return fallback_decision(self._default_loop)

        started = time.perf_counter()
        url = f"{self._base_url}/api/orchestrator/choose_loop"
        try:
            response = await asyncio.wait_for(
                self._http().post(url, json=dict(payload), timeout=self._timeout),
                timeout=self._timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            logger.warning(
                "Orchestrator request timed out; using fallback",
                timeout_ms=int(self._timeout * 1000),
            )
            return fallback_decision(self._default_loop)
        except httpx.HTTPError as exc:
            logger.warning("Orchestrator request failed; using fallback", error=str(exc))
            return fallback_decision(self._default_loop)

        latency_ms = round((time.perf_counter() - started) * 1000, 2)
        if response.status_code >= 400:
            logger.warning(
                "Orchestrator returned an error; using fallback",
                status_code=response.status_code,
                latency_ms=latency_ms,
            )
            return fallback_decision(self._default_loop)

        try:
            data = response.json()
        except ValueError:
            logger.warning("Orchestrator returned invalid JSON; using fallback")
            return fallback_decision(self._default_loop)

        loop = data.get("loop") if isinstance(data, dict) else None
        if not isinstance(loop, str) or not loop:
            logger.warning("Orchestrator response missing loop; using fallback")
            return fallback_decision(self._default_loop)

        features = data.get("features_used")
        ttl_ms = data.get("ttl_ms")
        logger.debug("Orchestrator chose loop", loop=loop, latency_ms=latency_ms)
        return LoopDecision(
            loop=loop,
            eligibility_reason=str(data.get("eligibility_reason") or ""),
            rationale=str(data.get("rationale") or ""),
            features_used=[str(item) for item in features] if isinstance(features, list) else [],
            ttl_ms=ttl_ms if isinstance(ttl_ms, int) else 0,
        )


__all__ = ["LoopDecision", "LoopOrchestratorClient", "fallback_decision"]
