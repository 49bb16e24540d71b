"""Dependency injection container for the coordination layer."""

from dependency_injector import containers, providers

from fixly_state.core.config import Settings
from fixly_state.core.health import set_startup_time
from fixly_state.core.kv import KVClient, create_backend
from fixly_state.core.logging import configure_logging
from fixly_state.services.otp import OTPManager
from fixly_state.services.rate_limiter import RateLimiter
from fixly_state.services.response_cache import ResponseCache
from fixly_state.services.location import LocationTracker
from fixly_state.services.timeseries import DailyCounter, analytics_events, location_history


class Container(containers.DeclarativeContainer):
    """Builds one store adapter per process and hands it to every service."""

    settings = providers.Singleton(
        Settings,
    )

    # Redis when enabled and configured, in-memory otherwise
    kv_backend = providers.Singleton(
        create_backend,
        settings=settings
    )

    kv = providers.Singleton(
        KVClient,
        backend=kv_backend,
        settings=settings
    )

    # Services
    rate_limiter = providers.Singleton(
        RateLimiter,
        kv=kv,
        settings=settings
    )

    otp_manager = providers.Singleton(
        OTPManager,
        kv=kv,
        settings=settings
    )

    response_cache = providers.Singleton(
        ResponseCache,
        kv=kv,
        settings=settings
    )

    location_log = providers.Singleton(
        location_history,
        kv=kv,
        settings=settings
    )

    location_tracker = providers.Singleton(
        LocationTracker,
        kv=kv,
        history=location_log
    )

    analytics_log = providers.Singleton(
        analytics_events,
        kv=kv,
        settings=settings
    )

    daily_counter = providers.Singleton(
        DailyCounter,
        kv=kv,
        retention_days=settings.provided.analytics_retention_days
    )


# Global container instance
container = Container()


async def startup() -> None:
    """Configure logging and open the store. Call once per process."""
    configure_logging(container.settings())
    set_startup_time()
    await container.kv().startup()


async def shutdown() -> None:
    """Close store connections."""
    await container.kv().shutdown()
