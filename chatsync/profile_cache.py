"""
Bounded, time-expiring cache of sender profiles.

Entries are kept in an OrderedDict in insertion order. Every ``put`` re-inserts
its key at the end with a fresh timestamp, so the first entry is always the one
with the smallest timestamp and eviction is O(1).
"""

import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable, Optional

from chatsync.errors import TransportError
from chatsync.metrics import record_cache_lookup
from chatsync.schemas import Profile

logger = logging.getLogger(__name__)

ProfileLookup = Callable[[list[str]], Awaitable[list[Profile]]]


@dataclass(frozen=True)
class CacheEntry:
    profile: Profile
    timestamp: float


class ProfileCache:
    """
    Mapping from user id to Profile with a size bound and a TTL.

    Args:
        capacity: maximum number of entries
        ttl_seconds: entries older than this are treated as absent
        clock: monotonic time source in seconds (injectable for tests)
    """

    def __init__(
        self,
        capacity: int = 200,
        ttl_seconds: float = 1800.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, user_id: str) -> bool:
        return user_id in self._entries

    def get(self, user_id: str) -> Optional[Profile]:
        """Return the cached profile, or None if missing or expired (expired entries are dropped)."""
        entry = self._entries.get(user_id)
        if entry is None:
            record_cache_lookup("miss")
            return None

        if self._clock() - entry.timestamp > self.ttl_seconds:
            del self._entries[user_id]
            record_cache_lookup("expired")
            logger.debug(f"Profile cache entry expired: {user_id}")
            return None

        record_cache_lookup("hit")
        return entry.profile

    def put(self, profile: Profile) -> None:
        """Insert or refresh a profile, evicting the oldest entry when full."""
        if profile.id in self._entries:
            del self._entries[profile.id]
        elif len(self._entries) >= self.capacity:
            evicted_id, _ = self._entries.popitem(last=False)
            logger.debug(f"Profile cache full, evicted {evicted_id}")

        self._entries[profile.id] = CacheEntry(profile=profile, timestamp=self._clock())

    def clear(self) -> None:
        self._entries.clear()

    async def resolve_many(self, user_ids: Iterable[str], lookup: ProfileLookup) -> dict[str, Profile]:
        """
        Resolve profiles for ``user_ids``, fetching only what is not cached.

        Uncached ids are requested in a single batched ``lookup`` call. Ids the
        lookup cannot resolve are absent from the result; a failed lookup is
        logged and leaves them absent too.

        Args:
            user_ids: ids to resolve (duplicates are ignored)
            lookup: batched profile fetch, usually ``TransportClient.fetch_profiles``

        Returns:
            Mapping of id to Profile for every resolvable requested id
        """
        requested = list(dict.fromkeys(uid for uid in user_ids if uid))
        result: dict[str, Profile] = {}
        uncached: list[str] = []

        for user_id in requested:
            profile = self.get(user_id)
            if profile is not None:
                result[user_id] = profile
            else:
                uncached.append(user_id)

        if not uncached:
            return result

        logger.debug(f"Resolving {len(uncached)} uncached profiles")
        try:
            profiles = await lookup(uncached)
        except TransportError as e:
            logger.warning(f"Profile lookup failed, continuing without profiles: {e}")
            return result

        wanted = set(uncached)
        for profile in profiles:
            self.put(profile)
            if profile.id in wanted:
                result[profile.id] = profile

        return result
