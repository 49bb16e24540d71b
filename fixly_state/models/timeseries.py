"""Capped time-series log models."""

import json
from dataclasses import dataclass
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class RetentionPolicy:
    """Bounds for a capped log. Both apply when set; ``None`` means unbounded."""
    max_entries: Optional[int] = None
    max_age_seconds: Optional[int] = None

    def __post_init__(self):
        if self.max_entries is not None and self.max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        if self.max_age_seconds is not None and self.max_age_seconds < 1:
            raise ValueError("max_age_seconds must be at least 1")


@dataclass(frozen=True)
class TimeSeriesEntry:
    """One appended event. ``id`` keeps identical payloads distinct in the set."""
    id: str
    timestamp: float
    data: Dict[str, Any]

    def to_member(self) -> str:
        """Canonical JSON used as the sorted-set member."""
        return json.dumps(
            {"id": self.id, "ts": self.timestamp, "data": self.data},
            sort_keys=True,
            separators=(",", ":"),
            default=str,
        )

    @classmethod
    def from_member(cls, member: str) -> "TimeSeriesEntry":
        payload = json.loads(member)
        return cls(id=payload["id"], timestamp=float(payload["ts"]), data=payload.get("data") or {})
