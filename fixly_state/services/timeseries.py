"""Capped, time-ordered logs per subject on sorted sets.

Key: ``timeseries:{subject_type}:{subject}`` scored by epoch seconds.
Retention runs on every append: entries older than ``max_age_seconds`` are
dropped, then the set is trimmed to the newest ``max_entries``.
"""

import math
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from fixly_state.constants import (
    ANALYTICS_SUBJECT_TYPE,
    LOCATION_HISTORY_SUBJECT_TYPE,
    TIMESERIES_NAMESPACE,
)
from fixly_state.core.config import Settings
from fixly_state.core.exceptions import InvalidKeyComponent
from fixly_state.core.kv import KVClient
from fixly_state.core.logging import get_logger
from fixly_state.models.timeseries import RetentionPolicy, TimeSeriesEntry

logger = get_logger(__name__)


class CappedLog:
    """Append-only log with count and/or age retention."""

    def __init__(self, kv: KVClient, subject_type: str, policy: RetentionPolicy,
                 idle_ttl: int = 30 * 24 * 3600, clock: Callable[[], float] = time.time):
        if not subject_type or ":" in subject_type:
            raise InvalidKeyComponent(f"Invalid subject type: {subject_type!r}")
        self.kv = kv
        self.subject_type = subject_type
        self.policy = policy
        self.idle_ttl = idle_ttl
        self._clock = clock

    def _key(self, subject: str) -> str:
        if not subject:
            raise InvalidKeyComponent("Time-series subject must not be empty")
        return f"{TIMESERIES_NAMESPACE}:{self.subject_type}:{subject}"

    async def append(self, subject: str, data: Dict[str, Any],
                     timestamp: Optional[float] = None) -> TimeSeriesEntry:
        """Append an entry and apply retention."""
        key = self._key(subject)
        now = self._clock()
        entry = TimeSeriesEntry(
            id=uuid.uuid4().hex,
            timestamp=now if timestamp is None else float(timestamp),
            data=dict(data),
        )
        if not await self.kv.sorted_set_add(key, entry.timestamp, entry.to_member()):
            logger.warning("Time-series append dropped", subject_type=self.subject_type)
            return entry

        await self._prune(key, now)
        await self.kv.expire(key, self.policy.max_age_seconds or self.idle_ttl)
        return entry

    async def _prune(self, key: str, now: float) -> int:
        removed = 0
        if self.policy.max_age_seconds is not None:
            # Strictly older than the cutoff.
            cutoff = math.nextafter(now - self.policy.max_age_seconds, float("-inf"))
            removed += await self.kv.sorted_set_remove_by_score(key, float("-inf"), cutoff)
        if self.policy.max_entries is not None:
            removed += await self.kv.sorted_set_remove_by_rank(key, 0, -(self.policy.max_entries + 1))
        if removed:
            logger.debug("Time-series pruned", subject_type=self.subject_type, removed=removed)
        return removed

    async def range(self, subject: str, from_time: float = float("-inf"),
                    to_time: float = float("inf")) -> List[TimeSeriesEntry]:
        """Entries with ``from_time <= timestamp <= to_time``, oldest first."""
        members = await self.kv.sorted_set_range_by_score(self._key(subject), from_time, to_time)
        entries = []
        for member in members:
            try:
                entries.append(TimeSeriesEntry.from_member(member))
            except (ValueError, KeyError, TypeError) as e:
                logger.warning("Skipping undecodable time-series entry",
                               subject_type=self.subject_type, error=str(e))
        return entries

    async def latest(self, subject: str, limit: int = 20) -> List[TimeSeriesEntry]:
        """Newest ``limit`` entries, newest first."""
        entries = await self.range(subject)
        return list(reversed(entries[-limit:])) if limit > 0 else []

    async def count(self, subject: str) -> int:
        return await self.kv.sorted_set_card(self._key(subject))

    async def clear(self, subject: str) -> bool:
        return await self.kv.delete(self._key(subject))


class DailyCounter:
    """Per-day event counters: ``timeseries:daily:{event}:{YYYY-MM-DD}``."""

    def __init__(self, kv: KVClient, retention_days: int = 30,
                 clock: Callable[[], float] = time.time):
        self.kv = kv
        self.retention_days = retention_days
        self._clock = clock

    def _day(self, offset_days: int = 0) -> str:
        moment = datetime.fromtimestamp(self._clock(), tz=timezone.utc) - timedelta(days=offset_days)
        return moment.strftime("%Y-%m-%d")

    def _key(self, event: str, day: str) -> str:
        if not event or ":" in event:
            raise InvalidKeyComponent(f"Invalid event name: {event!r}")
        return f"{TIMESERIES_NAMESPACE}:daily:{event}:{day}"

    async def track(self, event: str) -> Optional[int]:
        """Count one occurrence today; None when the store is unreachable."""
        key = self._key(event, self._day())
        count = await self.kv.increment(key)
        if count == 1:
            await self.kv.expire(key, self.retention_days * 24 * 3600)
        return count

    async def daily_counts(self, event: str, days: int = 7) -> List[Dict[str, Any]]:
        """Counts for the last ``days`` days, today first."""
        counts = []
        for offset in range(days):
            day = self._day(offset)
            raw = await self.kv.get(self._key(event, day))
            try:
                count = int(raw) if raw is not None else 0
            except ValueError:
                count = 0
            counts.append({"date": day, "count": count})
        return counts


def location_history(kv: KVClient, settings: Settings,
                     clock: Callable[[], float] = time.time) -> CappedLog:
    """Last N locations per user, no age cap."""
    return CappedLog(
        kv,
        LOCATION_HISTORY_SUBJECT_TYPE,
        RetentionPolicy(max_entries=settings.location_history_max_entries),
        idle_ttl=settings.timeseries_idle_ttl,
        clock=clock,
    )


def analytics_events(kv: KVClient, settings: Settings,
                     clock: Callable[[], float] = time.time) -> CappedLog:
    """Analytics events kept for the retention window, unbounded count."""
    return CappedLog(
        kv,
        ANALYTICS_SUBJECT_TYPE,
        RetentionPolicy(max_age_seconds=settings.analytics_retention_days * 24 * 3600),
        idle_ttl=settings.timeseries_idle_ttl,
        clock=clock,
    )
