"""TTL response cache with hashed keys and prefix/tag invalidation.

Key schema:
    cache:{version}:{path-slug}:{sha256}   -> JSON {status, body, cached_at}
    tag:{tag}                              -> SET {cache keys}

The hash covers the full canonical request shape, so distinct requests never
share a key however long their components are. Only the readable prefix is
truncated.
"""

import hashlib
import json
import re
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from fixly_state.constants import (
    CACHE_NAMESPACE,
    CACHE_PROFILES,
    DEFAULT_CACHE_PROFILE,
    TAG_NAMESPACE,
    CacheProfile,
)
from fixly_state.core.config import Settings
from fixly_state.core.kv import KVClient, glob_escape
from fixly_state.core.logging import get_logger, log_cache_operation
from fixly_state.models.cache import CachedResponse

logger = get_logger(__name__)

MAX_PREFIX_LENGTH = 100

QueryParams = Union[Mapping[str, Any], Sequence[Tuple[str, Any]], None]
ComputeFn = Callable[[], Awaitable[CachedResponse]]

_SLUG_RE = re.compile(r"[^a-zA-Z0-9]")
_SLASHES_RE = re.compile(r"/{2,}")


def normalize_path(path: str) -> str:
    """Drop query string and fragment, collapse slashes, drop trailing slash."""
    path = (path or "/").split("?", 1)[0].split("#", 1)[0]
    path = _SLASHES_RE.sub("/", "/" + path.lstrip("/"))
    if len(path) > 1:
        path = path.rstrip("/")
    return path


def path_slug(path: str) -> str:
    """Readable key segment for a path."""
    return _SLUG_RE.sub("_", normalize_path(path))


def canonical_query(query: QueryParams) -> List[List[str]]:
    """Sorted (name, value) pairs; multi-valued parameters keep every value."""
    if not query:
        return []
    items = query.items() if isinstance(query, Mapping) else query
    pairs = []
    for name, value in items:
        values = value if isinstance(value, (list, tuple)) else [value]
        pairs.extend([str(name), "" if v is None else str(v)] for v in values)
    return sorted(pairs)


def compute_key(path: str, query: QueryParams = None, subject_id: Optional[str] = None,
                version: str = "v1") -> str:
    """Deterministic cache key for a logical request.

    Format: ``cache:{version}:{path-slug}:{sha256 of canonical components}``.
    """
    components = {
        "version": version,
        "path": normalize_path(path),
        "query": canonical_query(query),
        "subject": None if subject_id is None else str(subject_id),
    }
    canonical = json.dumps(components, sort_keys=True, separators=(",", ":"))
    digest = hashlib.sha256(canonical.encode("utf-8")).hexdigest()
    return f"{key_prefix(version, path_slug(path))}:{digest}"


def key_prefix(version: str, slug: str) -> str:
    """Readable ``cache:{version}:{slug}`` part of a key, truncated."""
    return f"{CACHE_NAMESPACE}:{version}:{slug}"[:MAX_PREFIX_LENGTH]


def _has_path_prefix(key: str, slug: str) -> bool:
    parts = key.split(":")
    if len(parts) != 4 or parts[0] != CACHE_NAMESPACE:
        return False
    stored = key.rsplit(":", 1)[0]
    return stored.startswith(key_prefix(parts[1], slug))


def profile_for(path: str) -> CacheProfile:
    """Cache profile for a route; ``[param]`` segments match any one segment."""
    path = normalize_path(path)
    if path in CACHE_PROFILES:
        return CACHE_PROFILES[path]
    for pattern, profile in CACHE_PROFILES.items():
        if "[" in pattern:
            regex = "^" + re.sub(r"\\\[[^/]*?\\\]", "[^/]+", re.escape(pattern)) + "$"
            if re.match(regex, path):
                return profile
    return DEFAULT_CACHE_PROFILE


def subject_tag(subject_id: str) -> str:
    return f"subject:{subject_id}"


class ResponseCache:
    """Get/set/invalidate computed responses.

    Store failures behave as misses: the response is recomputed and served,
    only cache effectiveness is lost. There is no stampede protection;
    concurrent misses for one key may each compute.
    """

    def __init__(self, kv: KVClient, settings: Settings):
        self.kv = kv
        self.default_ttl = settings.cache_ttl
        self.version = settings.cache_version
        self.tag_ttl_padding = settings.tag_ttl_padding

    def compute_key(self, path: str, query: QueryParams = None,
                    subject_id: Optional[str] = None, version: Optional[str] = None) -> str:
        return compute_key(path, query, subject_id, version or self.version)

    # =========================================================================
    # READ / WRITE
    # =========================================================================

    async def get(self, key: str) -> Optional[CachedResponse]:
        """Cached response for ``key``, or None on miss."""
        data = await self.kv.get_json(key)
        if not isinstance(data, dict):
            log_cache_operation(logger, "get", key, hit=False)
            return None
        log_cache_operation(logger, "get", key, hit=True)
        return CachedResponse.from_dict(data, from_cache=True)

    async def set(self, key: str, response: CachedResponse, ttl: Optional[int] = None,
                  tags: Iterable[str] = ()) -> bool:
        """Store a response and register it under ``tags``."""
        ttl = ttl or self.default_ttl
        payload = response.to_dict()
        stored = await self.kv.set_json(key, payload, ttl)
        log_cache_operation(logger, "set", key, ttl=ttl, stored=stored)
        if stored:
            await self._index_tags(key, tags, ttl)
        return stored

    async def _index_tags(self, key: str, tags: Iterable[str], ttl: int) -> None:
        # A tag set must outlive every entry it references: only ever extend.
        wanted = ttl + self.tag_ttl_padding
        for tag in dict.fromkeys(tags):
            tag_key = f"{TAG_NAMESPACE}:{tag}"
            await self.kv.set_add(tag_key, key)
            if await self.kv.ttl(tag_key) < wanted:
                await self.kv.expire(tag_key, wanted)

    async def get_or_compute(self, key: str, ttl: Optional[int], compute_fn: ComputeFn,
                             tags: Iterable[str] = ()) -> CachedResponse:
        """Return the cached response or compute, cache and return a fresh one.

        Only successful (2xx) responses are cached.
        """
        cached = await self.get(key)
        if cached is not None:
            return cached

        response = await compute_fn()
        if response.is_success:
            response.cached_at = datetime.now(timezone.utc).isoformat()
            await self.set(key, response, ttl, tags)
        else:
            log_cache_operation(logger, "skip", key, status=response.status)
        return response

    async def cached_response(self, path: str, compute_fn: ComputeFn, query: QueryParams = None,
                              subject_id: Optional[str] = None,
                              tags: Iterable[str] = ()) -> CachedResponse:
        """``get_or_compute`` keyed and timed by the route's cache profile.

        Subject-specific routes include the subject in the key and tag the
        entry with ``subject:{id}``.
        """
        profile = profile_for(path)
        subject = subject_id if profile.subject_specific else None
        key = self.compute_key(path, query, subject, profile.version)
        tags = list(tags)
        if subject is not None:
            tags.append(subject_tag(subject))
        return await self.get_or_compute(key, profile.ttl, compute_fn, tags)

    async def warm(self, path: str, body: Any, query: QueryParams = None,
                   subject_id: Optional[str] = None, ttl: Optional[int] = None,
                   tags: Iterable[str] = ()) -> str:
        """Pre-populate the entry a later request for ``path`` would read."""
        profile = profile_for(path)
        key = self.compute_key(path, query, subject_id, profile.version)
        await self.set(key, CachedResponse(body=body), ttl or profile.ttl, tags)
        return key

    # =========================================================================
    # INVALIDATION
    # =========================================================================

    async def invalidate(self, key: str) -> bool:
        deleted = await self.kv.delete(key)
        log_cache_operation(logger, "invalidate", key, deleted=deleted)
        return deleted

    async def invalidate_by_prefix(self, path_prefix: str, version: Optional[str] = None) -> int:
        """Drop every entry whose path starts with ``path_prefix``.

        Scans the keyspace; use for administrative or write-side invalidation.
        Stored prefixes are truncated, so a long ``path_prefix`` is compared
        at the same truncated length as the keys it should match.
        """
        slug = path_slug(path_prefix)
        if version:
            pattern = glob_escape(key_prefix(version, slug)) + "*"
        else:
            pattern = f"{CACHE_NAMESPACE}:*"
        keys = [key for key in await self.kv.keys_matching(pattern)
                if _has_path_prefix(key, slug)]
        deleted = await self.kv.delete_many(keys)
        log_cache_operation(logger, "invalidate_prefix", pattern, deleted=deleted)
        return deleted

    async def invalidate_by_tag(self, tags: Union[str, Iterable[str]]) -> int:
        """Drop every entry registered under any of ``tags``.

        Read-then-delete; an entry written concurrently may survive until
        its TTL.
        """
        tags = [tags] if isinstance(tags, str) else list(tags)
        total = 0
        for tag in tags:
            tag_key = f"{TAG_NAMESPACE}:{tag}"
            members = await self.kv.set_members(tag_key)
            if members:
                total += await self.kv.delete_many(sorted(members))
            await self.kv.delete(tag_key)
        log_cache_operation(logger, "invalidate_tags", ",".join(tags), deleted=total)
        return total

    async def invalidate_subject(self, subject_id: str) -> int:
        """Drop every subject-specific entry cached for ``subject_id``."""
        return await self.invalidate_by_tag([subject_tag(subject_id)])

    async def stats(self) -> Dict[str, Any]:
        """Entry counts by version and path slug. Scans the keyspace."""
        keys = await self.kv.keys_matching(f"{CACHE_NAMESPACE}:*")
        stats: Dict[str, Any] = {"total_keys": len(keys), "by_version": {}, "by_path": {}}
        for key in keys:
            parts = key.split(":")
            if len(parts) >= 4:
                version, slug = parts[1], parts[2]
                stats["by_version"][version] = stats["by_version"].get(version, 0) + 1
                stats["by_path"][slug] = stats["by_path"].get(slug, 0) + 1
        return stats
