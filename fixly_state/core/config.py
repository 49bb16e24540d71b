"""Environment-driven configuration with Pydantic v2."""

from typing import Literal, Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Coordination layer settings driven entirely by environment variables."""

    # Key-value store
    redis_url: Optional[str] = Field(default=None)
    redis_enabled: bool = Field(default=False)
    kv_timeout: float = Field(default=2.0, ge=0.1, le=30.0)
    kv_scan_timeout: float = Field(default=30.0, ge=0.1, le=600.0)
    health_check_interval: int = Field(default=60, ge=1)
    key_prefix: str = Field(default="")

    # OTP
    otp_ttl: int = Field(default=300, ge=30, le=3600)

    # Response cache
    cache_ttl: int = Field(default=300, ge=1)
    cache_version: str = Field(default="v1", min_length=1)
    tag_ttl_padding: int = Field(default=3600, ge=0)

    # Rate limiting
    rate_limit_enabled: bool = Field(default=True)
    # Reverse proxies in front of the app that append to X-Forwarded-For.
    # 0 ignores the header and uses the socket peer.
    trusted_proxy_hops: int = Field(default=1, ge=0, le=10)

    # Time-series retention
    location_history_max_entries: int = Field(default=50, ge=1)
    analytics_retention_days: int = Field(default=30, ge=1)
    timeseries_idle_ttl: int = Field(default=30 * 24 * 3600, ge=60)

    # Logging
    log_level: str = Field(default="INFO")
    log_format: Literal["json", "console"] = Field(default="json")
    log_file: Optional[str] = Field(default=None)

    @field_validator("cache_version", "key_prefix")
    @classmethod
    def validate_no_separator(cls, v):
        """Key components must not contain the namespace separator."""
        if ":" in v:
            raise ValueError("must not contain ':'")
        return v

    @property
    def use_redis(self) -> bool:
        """Redis is used only when enabled and a URL is configured."""
        return self.redis_enabled and bool(self.redis_url)

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore",
        "env_parse_none_str": "none",
    }
