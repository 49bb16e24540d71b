"""Health check utilities for the coordination layer."""
import time
from typing import Dict, Any, TYPE_CHECKING

from fixly_state.constants import HEALTH_CHECK_KEY

if TYPE_CHECKING:
    from fixly_state.core.config import Settings
    from fixly_state.core.kv import KVClient

# Module-level startup time tracking
_startup_time: float = 0.0


def set_startup_time() -> None:
    """Record the process startup time. Call once during startup."""
    global _startup_time
    _startup_time = time.time()


def get_uptime() -> float:
    """Get uptime in seconds since startup."""
    return time.time() - _startup_time if _startup_time else 0.0


async def check_store(kv: "KVClient") -> bool:
    """Write, read back and delete a probe key."""
    if not await kv.ping():
        return False
    if not await kv.set_with_ttl(HEALTH_CHECK_KEY, "ok", 10):
        return False
    result = await kv.get(HEALTH_CHECK_KEY)
    await kv.delete(HEALTH_CHECK_KEY)
    return result == "ok"


async def get_health_status(kv: "KVClient", settings: "Settings") -> Dict[str, Any]:
    """Get health status for a /health endpoint.

    Returns:
        Dict containing status, uptime, store check and feature flags.
    """
    store_healthy = await check_store(kv)

    return {
        "status": "healthy" if store_healthy else "degraded",
        "uptime_seconds": round(get_uptime(), 1),
        "backend": kv.backend_name,
        "checks": {
            "store": store_healthy,
        },
        "features": {
            "redis": settings.use_redis,
            "rate_limit": settings.rate_limit_enabled,
        },
    }
