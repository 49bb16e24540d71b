"""Ephemeral-state coordination for the Fixly marketplace.

Rate limiting, one-time passcodes, response caching and capped time-series
logs, all coordinated through a single key-value store.
"""

from fixly_state.constants import OTPPurpose, RateLimitAction
from fixly_state.core.config import Settings
from fixly_state.core.exceptions import FixlyStateError, InvalidKeyComponent, StoreUnavailable
from fixly_state.core.kv import KVClient, MemoryBackend, RedisBackend, create_backend
from fixly_state.models import (
    CachedResponse,
    OTPStatus,
    OTPVerification,
    OTPVerifyReason,
    RateLimitResult,
    RetentionPolicy,
    TimeSeriesEntry,
    LocationPoint,
)
from fixly_state.services import (
    CappedLog,
    DailyCounter,
    LocationTracker,
    OTPManager,
    RateLimiter,
    ResponseCache,
)

__version__ = "1.0.0"

__all__ = [
    "OTPPurpose",
    "RateLimitAction",
    "Settings",
    "FixlyStateError",
    "InvalidKeyComponent",
    "StoreUnavailable",
    "KVClient",
    "MemoryBackend",
    "RedisBackend",
    "create_backend",
    "CachedResponse",
    "OTPStatus",
    "OTPVerification",
    "OTPVerifyReason",
    "RateLimitResult",
    "RetentionPolicy",
    "TimeSeriesEntry",
    "LocationPoint",
    "CappedLog",
    "DailyCounter",
    "LocationTracker",
    "OTPManager",
    "RateLimiter",
    "ResponseCache",
]
