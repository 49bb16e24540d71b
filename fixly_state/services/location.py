"""Current and recent user locations.

Keys:
    location:current:{user}   -> JSON point, 30 minute TTL
    location:recent:{user}    -> JSON list of up to 10 distinct places, newest
                                 first, 2 hour TTL

Every accepted fix is also appended to the capped location history when one
is configured.
"""

import math
import time
from typing import Callable, List, Optional

from fixly_state.constants import (
    LOCATION_CURRENT_TTL,
    LOCATION_MERGE_RADIUS_KM,
    LOCATION_MIN_MOVE_KM,
    LOCATION_NAMESPACE,
    LOCATION_RECENT_MAX,
    LOCATION_RECENT_TTL,
    LOCATION_REFRESH_SECONDS,
)
from fixly_state.core.exceptions import InvalidKeyComponent
from fixly_state.core.kv import KVClient
from fixly_state.core.logging import get_logger
from fixly_state.models.location import LocationPoint
from fixly_state.services.timeseries import CappedLog

logger = get_logger(__name__)

EARTH_RADIUS_KM = 6371.0


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance in kilometres."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(a))


def _distance(a: LocationPoint, b: LocationPoint) -> float:
    return haversine_km(a.lat, a.lng, b.lat, b.lng)


class LocationTracker:
    """Keeps each user's current position and a short list of recent places.

    The recent list is read, modified and written back; two concurrent
    updates for one user may drop one of the fixes from that list.
    """

    def __init__(self, kv: KVClient, history: Optional[CappedLog] = None,
                 clock: Callable[[], float] = time.time):
        self.kv = kv
        self.history = history
        self._clock = clock

    def _key(self, kind: str, user_id: str) -> str:
        if not user_id or ":" in str(user_id):
            raise InvalidKeyComponent(f"Invalid user id: {user_id!r}")
        return f"{LOCATION_NAMESPACE}:{kind}:{user_id}"

    async def current(self, user_id: str) -> Optional[LocationPoint]:
        data = await self.kv.get_json(self._key("current", user_id))
        if not isinstance(data, dict):
            return None
        try:
            return LocationPoint.from_dict(data)
        except (KeyError, TypeError, ValueError):
            return None

    async def recent(self, user_id: str) -> List[LocationPoint]:
        """Distinct recent places, newest place first; a revisit keeps its slot."""
        data = await self.kv.get_json(self._key("recent", user_id))
        if not isinstance(data, list):
            return []
        points = []
        for item in data:
            try:
                points.append(LocationPoint.from_dict(item))
            except (KeyError, TypeError, ValueError):
                continue
        return points

    async def update(self, user_id: str, lat: float, lng: float,
                     address: Optional[str] = None, source: str = "gps") -> LocationPoint:
        """Record a fix and return the user's current location.

        A fix within ``LOCATION_MIN_MOVE_KM`` of a current location younger
        than ``LOCATION_REFRESH_SECONDS`` is ignored and the existing current
        location is returned.

        Raises:
            ValueError: Coordinates out of range.
        """
        lat, lng = float(lat), float(lng)
        if not (-90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0):
            raise ValueError(f"Coordinates out of range: {lat}, {lng}")

        now = self._clock()
        point = LocationPoint(lat=lat, lng=lng, timestamp=now, address=address, source=source)
        previous = await self.current(user_id)
        if (previous is not None
                and _distance(previous, point) <= LOCATION_MIN_MOVE_KM
                and now - previous.timestamp <= LOCATION_REFRESH_SECONDS):
            return previous

        await self.kv.set_json(self._key("current", user_id), point.to_dict(), LOCATION_CURRENT_TTL)
        if self.history is not None:
            await self.history.append(str(user_id), point.to_dict(), timestamp=now)
        await self._remember(user_id, point)
        logger.debug("Location updated", source=source)
        return point

    async def _remember(self, user_id: str, point: LocationPoint) -> None:
        places = await self.recent(user_id)
        for index, place in enumerate(places):
            if _distance(place, point) < LOCATION_MERGE_RADIUS_KM:
                places[index] = point
                break
        else:
            places = [point] + places[:LOCATION_RECENT_MAX - 1]
        await self.kv.set_json(self._key("recent", user_id),
                               [p.to_dict() for p in places], LOCATION_RECENT_TTL)

    async def clear(self, user_id: str) -> int:
        return await self.kv.delete_many([self._key("current", user_id), self._key("recent", user_id)])
