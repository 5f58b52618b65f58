"""Resilience wrapper shared by every Redis-backed counter."""

from __future__ import annotations

import socket
import time
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

from loguru import logger
from redis import exceptions as redis_exceptions
from redis.asyncio import Redis


T = TypeVar("T")


class FailureKind(str, Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"


class StoreNotConfiguredError(RuntimeError):
    """Raised internally when no Redis client is available."""


_PERMANENT_ERRORS: tuple[type[BaseException], ...] = (
    redis_exceptions.AuthenticationError,
    redis_exceptions.AuthorizationError,
    redis_exceptions.ResponseError,
    StoreNotConfiguredError,
    ValueError,
)

_TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    redis_exceptions.ConnectionError,
    redis_exceptions.TimeoutError,
    redis_exceptions.BusyLoadingError,
    socket.gaierror,
    TimeoutError,
    ConnectionError,
    OSError,
)


def classify_error(exc: BaseException) -> FailureKind:
    # AuthenticationError subclasses ConnectionError in redis-py, so permanent wins.
    if isinstance(exc, _PERMANENT_ERRORS):
        return FailureKind.PERMANENT
    if isinstance(exc, _TRANSIENT_ERRORS):
        return FailureKind.TRANSIENT
    return FailureKind.PERMANENT


class EphemeralStore:
    """Runs Redis calls, tracks health and swallows failures into safe defaults.

    Healthy means no attempt has been made yet or the last success happened
    within ``health_window`` seconds. Failure logs are emitted at most once per
    ``log_suppression`` seconds for this adapter.
    """

    def __init__(
        self,
        client: Redis | None,
        *,
        name: str = "ephemeral",
        health_window: float = 120.0,
        log_suppression: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client = client
        self._name = name
        self._health_window = health_window
        self._log_suppression = log_suppression
        self._clock = clock
        self._attempted = False
        self._last_success: float | None = None
        self._last_log: float | None = None
        self._suppressed = 0
        self.last_failure_kind: FailureKind | None = None

    @property
    def client(self) -> Redis | None:
        return self._client

    @property
    def configured(self) -> bool:
        return self._client is not None

    def is_healthy(self) -> bool:
        if not self._attempted:
            return True
        if self._last_success is None:
            return False
        return self._clock() - self._last_success <= self._health_window

    async def run(
        self,
        operation: str,
        factory: Callable[[Redis], Awaitable[T]],
        default: T,
    ) -> T:
        """Execute ``factory(client)``; any failure is classified, maybe logged, and replaced by ``default``."""

        self._attempted = True
        try:
            if self._client is None:
                raise StoreNotConfiguredError("REDIS_URL is not configured")
            result = await factory(self._client)
        except Exception as exc:  # noqa: BLE001 - the adapter is the error boundary for the store
            self._record_failure(operation, exc)
            return default
        self._last_success = self._clock()
        self.last_failure_kind = None
        return result

    def _record_failure(self, operation: str, exc: BaseException) -> None:
        kind = classify_error(exc)
        self.last_failure_kind = kind
        now = self._clock()
        if self._last_log is not None and now - self._last_log < self._log_suppression:
            self._suppressed += 1
            return

        context: dict[str, Any] = {
            "store": self._name,
            "operation": operation,
            "failure_kind": kind.value,
            "error": type(exc).__name__,
            "suppressed": self._suppressed,
        }
        if kind is FailureKind.PERMANENT:
            logger.error("Ephemeral store operation failed", **context)
        else:
            logger.warning("Ephemeral store unavailable", **context)
        self._last_log = now
        self._suppressed = 0


__all__ = [
    "EphemeralStore",
    "FailureKind",
    "StoreNotConfiguredError",
    "classify_error",
]
