"""Result and record types for the coordination layer."""

from .rate_limit import RateLimitResult
from .otp import OTPRecord, OTPStatus, OTPVerification, OTPVerifyReason
from .cache import CachedResponse
from .timeseries import RetentionPolicy, TimeSeriesEntry
from .location import LocationPoint

__all__ = [
    "RateLimitResult",
    "OTPRecord",
    "OTPStatus",
    "OTPVerification",
    "OTPVerifyReason",
    "CachedResponse",
    "RetentionPolicy",
    "TimeSeriesEntry",
    "LocationPoint",
]
