"""Coordination primitives built on the key-value adapter.

- Fixed-window rate limiting (fail-open by default)
- One-time passcodes with one-shot consumption
- TTL response cache with prefix and tag invalidation
- Capped time-series logs and daily counters
- Current and recent user locations
"""

from .rate_limiter import RateLimiter, build_key
from .otp import OTPManager, generate_code, normalize_subject
from .response_cache import (
    ResponseCache,
    compute_key,
    normalize_path,
    profile_for,
)
from .location import LocationTracker, haversine_km
from .timeseries import (
    CappedLog,
    DailyCounter,
    analytics_events,
    location_history,
)

__all__ = [
    # Rate limiting
    "RateLimiter",
    "build_key",
    # OTP
    "OTPManager",
    "generate_code",
    "normalize_subject",
    # Cache
    "ResponseCache",
    "compute_key",
    "normalize_path",
    "profile_for",
    # Time-series
    "CappedLog",
    "DailyCounter",
    "analytics_events",
    "location_history",
    # Location
    "LocationTracker",
    "haversine_km",
]
