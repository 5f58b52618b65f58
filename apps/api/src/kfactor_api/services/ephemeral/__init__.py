from .client import build_redis_client
from .store import EphemeralStore, FailureKind, StoreNotConfiguredError, classify_error

__all__ = [
    "EphemeralStore",
    "FailureKind",
    "StoreNotConfiguredError",
    "build_redis_client",
    "classify_error",
]
