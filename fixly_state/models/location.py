"""Location fixes."""

from dataclasses import dataclass
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class LocationPoint:
    """One position report. ``source`` is gps, manual or home."""
    lat: float
    lng: float
    timestamp: float
    address: Optional[str] = None
    source: str = "gps"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lat": self.lat,
            "lng": self.lng,
            "timestamp": self.timestamp,
            "address": self.address,
            "source": self.source,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LocationPoint":
        return cls(
            lat=float(data["lat"]),
            lng=float(data["lng"]),
            timestamp=float(data["timestamp"]),
            address=data.get("address"),
            source=data.get("source") or "gps",
        )
