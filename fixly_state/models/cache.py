"""Cached response snapshot."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional


@dataclass
class CachedResponse:
    """Opaque snapshot of a computed response.

    ``from_cache`` is set on the instance returned from a cache hit and is
    not persisted.
    """
    body: Any
    status: int = 200
    cached_at: Optional[str] = None
    from_cache: bool = field(default=False, compare=False)

    @property
    def is_success(self) -> bool:
        return 200 <= self.status < 300

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "body": self.body,
            "cached_at": self.cached_at or datetime.now(timezone.utc).isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], from_cache: bool = False) -> "CachedResponse":
        return cls(
            body=data.get("body"),
            status=int(data.get("status", 200)),
            cached_at=data.get("cached_at"),
            from_cache=from_cache,
        )
