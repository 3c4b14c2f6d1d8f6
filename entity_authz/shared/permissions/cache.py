"""
Resolution Cache - short-lived memoization of permission decisions.

Keys: (user_id, entity_type, entity_id, permission_key), where the permission
slot holds ``CAPABILITIES`` for a cached capability set. Entries are grouped
in one partition per user so a role change can drop everything a user has
cached in a single step.

Reads are plain dictionary lookups and never take the lock; writes and
invalidations are serialized by it. The TTL is a correctness backstop for a
missed invalidation, so it is measured in seconds.

Every invalidation bumps the user's generation. A writer that read the
generation before computing its value passes it back to ``set``; if the
user was invalidated in between, the write is dropped so a decision built
from pre-change data cannot outlive the change.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from .models import EntityType

logger = logging.getLogger(__name__)

CAPABILITIES = "*"

CacheValue = Any  # PermissionDecision or frozenset of permission keys
EntryKey = tuple[EntityType, str, str]
Generation = tuple[int, int]


@dataclass(frozen=True)
class CacheEntry:
    value: CacheValue
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


class ResolutionCache:
    """Per-instance TTL cache owned by whoever builds the engine."""

    def __init__(
        self,
        ttl_seconds: float = 5.0,
        max_entries: int = 10000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._partitions: dict[str, dict[EntryKey, CacheEntry]] = {}
        self._generations: dict[str, int] = {}
        self._epoch = 0
        self._size = 0
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(
        self,
        user_id: str,
        entity_type: EntityType,
        entity_id: str,
        permission_key: str = CAPABILITIES,
    ) -> Optional[CacheValue]:
        partition = self._partitions.get(user_id)
        entry = partition.get((entity_type, entity_id, permission_key)) if partition else None
        if entry is None or entry.is_expired(self._clock()):
            self.misses += 1
            return None
        self.hits += 1
        return entry.value

    def generation(self, user_id: str) -> Generation:
        """Token that changes whenever the user's entries are invalidated."""
        return (self._epoch, self._generations.get(user_id, 0))

    def set(
        self,
        user_id: str,
        entity_type: EntityType,
        entity_id: str,
        value: CacheValue,
        permission_key: str = CAPABILITIES,
        ttl_seconds: Optional[float] = None,
        generation: Optional[Generation] = None,
    ) -> None:
        """
        Store a value. ``ttl_seconds`` may only shorten the configured TTL,
        e.g. to the time left before a contributing assignment expires.
        With ``generation``, the write is skipped if the user was invalidated
        since that token was read.
        """
        ttl = self.ttl_seconds if ttl_seconds is None else min(ttl_seconds, self.ttl_seconds)
        if ttl <= 0 or self.max_entries <= 0:
            return

        now = self._clock()
        entry = CacheEntry(value=value, expires_at=now + ttl)
        key = (entity_type, entity_id, permission_key)

        with self._lock:
            if generation is not None and generation != self.generation(user_id):
                logger.debug(f"Dropped stale cache write for user {user_id}")
                return

            if self._size >= self.max_entries:
                self._evict(now)

            # Partitions are replaced, never mutated, so lock-free readers
            # always see a consistent dictionary. Popping first moves the
            # partition to the end, keeping the dict in last-write order.
            partition = dict(self._partitions.pop(user_id, {}))
            if key not in partition:
                self._size += 1
            partition[key] = entry
            self._partitions[user_id] = partition

    def invalidate(self, user_id: str, entity_type: EntityType, entity_id: str) -> int:
        """Drop every cached answer for one user on one entity."""
        with self._lock:
            self._bump(user_id)
            partition = self._partitions.get(user_id)
            if not partition:
                return 0
            kept = {
                k: v
                for k, v in partition.items()
                if not (k[0] == entity_type and k[1] == entity_id)
            }
            removed = len(partition) - len(kept)
            self._replace_partition(user_id, kept)
            self._size -= removed

        logger.debug(
            f"Invalidated {removed} cache entries for user {user_id} "
            f"on {entity_type.value}:{entity_id}"
        )
        return removed

    def invalidate_user(self, user_id: str) -> int:
        """Drop the whole partition of a user."""
        with self._lock:
            self._bump(user_id)
            partition = self._partitions.pop(user_id, None)
            removed = len(partition) if partition else 0
            self._size -= removed

        logger.debug(f"Invalidated {removed} cache entries for user {user_id}")
        return removed

    def clear(self) -> None:
        with self._lock:
            self._partitions = {}
            self._size = 0
            self._generations = {}
            self._epoch += 1
        logger.info("Cleared authorization resolution cache")

    def stats(self) -> dict[str, Any]:
        return {
            "size": self._size,
            "users": len(self._partitions),
            "max_entries": self.max_entries,
            "ttl_seconds": self.ttl_seconds,
            "hits": self.hits,
            "misses": self.misses,
        }

    def __len__(self) -> int:
        return self._size

    def _bump(self, user_id: str) -> None:
        self._generations[user_id] = self._generations.get(user_id, 0) + 1

    def _replace_partition(
        self, user_id: str, partition: dict[EntryKey, CacheEntry]
    ) -> None:
        """Install a new partition (must hold lock)."""
        if partition:
            self._partitions[user_id] = partition
        else:
            self._partitions.pop(user_id, None)

    def _evict(self, now: float) -> None:
        """Drop expired entries, then the stalest partitions (must hold lock)."""
        for user_id in list(self._partitions):
            partition = self._partitions[user_id]
            live = {k: v for k, v in partition.items() if not v.is_expired(now)}
            if len(live) != len(partition):
                self._size -= len(partition) - len(live)
                self._replace_partition(user_id, live)

        # Partitions are re-inserted on every write, so the first one is the
        # least recently written.
        while self._size >= self.max_entries and self._partitions:
            oldest = next(iter(self._partitions))
            self._size -= len(self._partitions.pop(oldest))
