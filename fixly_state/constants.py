"""Centralized constants for key namespaces, OTP purposes and default policies.

Single source of truth for the action names, quotas and cache profiles that
request handlers pass to the coordination layer.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional

# =============================================================================
# KEY NAMESPACES
# =============================================================================

RATE_LIMIT_NAMESPACE = "rate_limit"
OTP_NAMESPACE = "otp"
CACHE_NAMESPACE = "cache"
TAG_NAMESPACE = "tag"
TIMESERIES_NAMESPACE = "timeseries"
LOCATION_NAMESPACE = "location"

HEALTH_CHECK_KEY = "_health_check"


# =============================================================================
# OTP
# =============================================================================

class OTPPurpose(str, Enum):
    """What an issued code authorizes."""
    SIGNUP = "signup"
    PASSWORD_RESET = "password_reset"
    EMAIL_CHANGE = "email_change"
    USERNAME_CHANGE = "username_change"
    PHONE_VERIFY = "phone_verify"


OTP_CODE_LENGTH = 6
OTP_DEFAULT_TTL = 5 * 60


# =============================================================================
# RATE LIMITING
# =============================================================================

class RateLimitAction(str, Enum):
    """Closed set of rate-limited actions."""
    SEND_OTP = "send_otp"
    VERIFY_OTP = "verify_otp"
    SIGNUP = "signup"
    LOGIN = "login"
    FORGOT_PASSWORD = "forgot_password"
    RESET_PASSWORD = "reset_password"
    USERNAME_CHECK = "username_check"
    CONTENT_VALIDATION = "content_validation"
    JOB_POST = "job_post"
    JOB_APPLY = "job_apply"
    JOB_UPDATE = "job_update"
    JOB_MEDIA_UPLOAD = "job_media_upload"
    DRAFT_SAVE = "draft_save"
    REVIEW_SUBMIT = "review_submit"
    MESSAGE_SEND = "message_send"
    PROFILE_UPDATE = "profile_update"
    PROFILE_PHOTO = "profile_photo"
    SEARCH = "search"
    LOCATION_GET = "location_get"
    LOCATION_UPDATE = "location_update"
    HOME_ADDRESS = "home_address"
    PAYMENT_CREATE = "payment_create"
    PAYMENT_VERIFY = "payment_verify"
    DEFAULT = "default"


@dataclass(frozen=True)
class RateLimitRule:
    """Quota for one action: ``max_requests`` per fixed ``window_seconds``."""
    max_requests: int
    window_seconds: int
    fail_closed: bool = False


HOUR = 60 * 60

RATE_LIMITS: Dict[RateLimitAction, RateLimitRule] = {
    # Authentication
    RateLimitAction.SEND_OTP: RateLimitRule(3, HOUR),
    RateLimitAction.VERIFY_OTP: RateLimitRule(10, HOUR),
    RateLimitAction.SIGNUP: RateLimitRule(3, HOUR),
    RateLimitAction.LOGIN: RateLimitRule(5, 15 * 60),
    RateLimitAction.FORGOT_PASSWORD: RateLimitRule(3, 15 * 60, fail_closed=True),
    RateLimitAction.RESET_PASSWORD: RateLimitRule(5, HOUR, fail_closed=True),
    RateLimitAction.USERNAME_CHECK: RateLimitRule(30, 60),
    RateLimitAction.CONTENT_VALIDATION: RateLimitRule(100, 60),

    # Jobs
    RateLimitAction.JOB_POST: RateLimitRule(10, HOUR),
    RateLimitAction.JOB_APPLY: RateLimitRule(20, HOUR),
    RateLimitAction.JOB_UPDATE: RateLimitRule(30, HOUR),
    RateLimitAction.JOB_MEDIA_UPLOAD: RateLimitRule(20, HOUR),
    RateLimitAction.DRAFT_SAVE: RateLimitRule(60, HOUR),

    # Reviews and messaging
    RateLimitAction.REVIEW_SUBMIT: RateLimitRule(5, HOUR),
    RateLimitAction.MESSAGE_SEND: RateLimitRule(100, HOUR),

    # Profile, search and location
    RateLimitAction.PROFILE_UPDATE: RateLimitRule(20, HOUR),
    RateLimitAction.PROFILE_PHOTO: RateLimitRule(1, 7 * 24 * HOUR),
    RateLimitAction.SEARCH: RateLimitRule(100, HOUR),
    RateLimitAction.LOCATION_GET: RateLimitRule(30, 60),
    RateLimitAction.LOCATION_UPDATE: RateLimitRule(10, 60),
    RateLimitAction.HOME_ADDRESS: RateLimitRule(5, HOUR),

    # Payments
    RateLimitAction.PAYMENT_CREATE: RateLimitRule(10, HOUR),
    RateLimitAction.PAYMENT_VERIFY: RateLimitRule(20, HOUR),

    RateLimitAction.DEFAULT: RateLimitRule(60, HOUR),
}


def get_rate_limit_rule(action: RateLimitAction) -> RateLimitRule:
    """Quota for an action, falling back to the default rule."""
    return RATE_LIMITS.get(action, RATE_LIMITS[RateLimitAction.DEFAULT])


# =============================================================================
# RESPONSE CACHE PROFILES
# =============================================================================

@dataclass(frozen=True)
class CacheProfile:
    """How responses for a route are cached."""
    ttl: int
    version: Optional[str] = None  # None -> Settings.cache_version
    subject_specific: bool = False


DAY = 24 * HOUR

CACHE_PROFILES: Dict[str, CacheProfile] = {
    # Static / semi-static
    "/api/skills": CacheProfile(7 * DAY),
    "/api/categories": CacheProfile(7 * DAY),
    "/api/location/cities": CacheProfile(DAY),

    # User data
    "/api/user/profile": CacheProfile(15 * 60, subject_specific=True),
    "/api/user/ratings": CacheProfile(HOUR, subject_specific=True),
    "/api/user/reviews": CacheProfile(30 * 60, subject_specific=True),

    # Jobs
    "/api/jobs/browse": CacheProfile(5 * 60),
    "/api/jobs/search": CacheProfile(10 * 60),
    "/api/jobs/[id]": CacheProfile(15 * 60),
    "/api/jobs/applications": CacheProfile(2 * 60, subject_specific=True),

    # Aggregates
    "/api/stats/dashboard": CacheProfile(HOUR, subject_specific=True),
    "/api/stats/public": CacheProfile(6 * HOUR),
}

DEFAULT_CACHE_PROFILE = CacheProfile(5 * 60)


# =============================================================================
# TIME-SERIES
# =============================================================================

LOCATION_HISTORY_SUBJECT_TYPE = "location"
ANALYTICS_SUBJECT_TYPE = "analytics"


# =============================================================================
# LOCATION
# =============================================================================

LOCATION_CURRENT_TTL = 30 * 60
LOCATION_RECENT_TTL = 2 * HOUR
LOCATION_RECENT_MAX = 10
# A new fix replaces the current one only after moving this far or aging out.
LOCATION_MIN_MOVE_KM = 0.5
LOCATION_REFRESH_SECONDS = 30 * 60
# Recent places closer than this collapse into one entry.
LOCATION_MERGE_RADIUS_KM = 1.0
