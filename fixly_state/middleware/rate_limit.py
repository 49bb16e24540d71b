"""FastAPI dependency that rate-limits a route by caller identity."""

from typing import Optional

from fastapi import HTTPException, Request, Response, status

from fixly_state.constants import RateLimitAction
from fixly_state.core.container import container
from fixly_state.core.logging import get_logger
from fixly_state.services.rate_limiter import RateLimiter

logger = get_logger(__name__)


def client_identity(request: Request, trusted_proxy_hops: int = 1) -> str:
    """``user:{id}`` for authenticated callers, ``ip:{addr}`` otherwise.

    X-Forwarded-For is read from the right: each of the ``trusted_proxy_hops``
    proxies appends the address it saw, so the entry added by the outermost
    trusted proxy is the real client. Entries left of it are client-supplied
    and ignored. With no trusted proxies the socket peer is used.
    """
    user_id = getattr(request.state, "user_id", None)
    if user_id:
        return f"user:{user_id}"

    ip = request.client.host if request.client else ""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded and trusted_proxy_hops > 0:
        hops = [hop.strip() for hop in forwarded.split(",") if hop.strip()]
        if hops:
            ip = hops[-min(trusted_proxy_hops, len(hops))]
    return f"ip:{ip or 'unknown'}"


class RateLimitGuard:
    """Route dependency: ``Depends(RateLimitGuard(RateLimitAction.SEND_OTP))``.

    Adds X-RateLimit-* headers to the response and raises 429 with
    Retry-After once the caller's quota for ``action`` is spent.
    """

    def __init__(self, action: RateLimitAction, namespace: str = "api",
                 limiter: Optional[RateLimiter] = None):
        self.action = RateLimitAction(action)
        self.namespace = namespace
        self._limiter = limiter

    @property
    def limiter(self) -> RateLimiter:
        return self._limiter or container.rate_limiter()

    async def __call__(self, request: Request, response: Response) -> None:
        limiter = self.limiter
        result = await limiter.allow_action(
            self.action,
            client_identity(request, limiter.settings.trusted_proxy_hops),
            namespace=self.namespace,
        )
        headers = result.headers()
        if not result.allowed:
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail={
                    "error": "rate_limited",
                    "message": "Too many requests",
                    "retry_after": result.retry_after_seconds,
                },
                headers=headers,
            )
        for name, value in headers.items():
            response.headers[name] = value
