"""Rate limit decision model."""

from dataclasses import dataclass, asdict
from typing import Any, Dict


@dataclass(frozen=True)
class RateLimitResult:
    """Outcome of one fixed-window check.

    Attributes:
        allowed: Whether the action may proceed.
        limit: Max requests per window.
        remaining: Requests left in the current window (0 when denied).
        reset_at: Epoch seconds when the current window ends.
        retry_after_seconds: Seconds to wait before retrying (0 when allowed).
        fallback: True when the store was unreachable and the decision was
            made without it.
    """

    allowed: bool
    limit: int
    remaining: int
    reset_at: int
    retry_after_seconds: int = 0
    fallback: bool = False

    def headers(self) -> Dict[str, str]:
        """Standard X-RateLimit-* response headers."""
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_at),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after_seconds)
        return headers

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
