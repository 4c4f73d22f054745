"""
Short-lived indirection from client-visible segment ids to upstream URLs.

Upstream URLs often embed session tokens, so rewritten manifests only ever
expose the opaque id. Entries expire after a TTL and the table is capped;
eviction follows insertion (or re-registration) order.
"""
import asyncio
import enum
import hashlib
import logging
import secrets
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)

DIGEST_LENGTH = 16
RANDOM_ID_BYTES = 12


class IdStrategy(str, enum.Enum):
    RANDOM = "random"
    DETERMINISTIC = "deterministic"


class LookupStatus(str, enum.Enum):
    FOUND = "found"
    EXPIRED = "expired"
    NOT_FOUND = "not_found"


@dataclass
class SegmentEntry:
    id: str
    url: str
    created_at: float


@dataclass(frozen=True)
class SegmentLookup:
    status: LookupStatus
    url: Optional[str] = None

    @property
    def found(self) -> bool:
        return self.status is LookupStatus.FOUND


class SegmentRegistry:
    """In-memory id -> URL table bounded by TTL and entry count."""

    def __init__(
        self,
        ttl: float = 60.0,
        max_entries: int = 1000,
        strategy: IdStrategy = IdStrategy.DETERMINISTIC,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.ttl = ttl
        self.max_entries = max_entries
        self.strategy = IdStrategy(strategy)
        self._clock = clock
        self._entries: "OrderedDict[str, SegmentEntry]" = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def _is_expired(self, entry: SegmentEntry, now: float) -> bool:
        return now - entry.created_at > self.ttl

    def _deterministic_id(self, url: str) -> str:
        digest = hashlib.sha256(url.encode("utf-8")).hexdigest()
        # Lengthen the prefix until it no longer clashes with another live URL
        for length in range(DIGEST_LENGTH, len(digest) + 1, 8):
            candidate = digest[:length]
            entry = self._entries.get(candidate)
            if entry is None or entry.url == url:
                return candidate
        return self._random_id()

    def _random_id(self) -> str:
        while True:
            candidate = secrets.token_urlsafe(RANDOM_ID_BYTES)
            if candidate not in self._entries:
                return candidate

    def resolve_or_create(self, url: str) -> str:
        """Return the id under which ``url`` can be fetched, registering it if needed."""
        with self._lock:
            now = self._clock()
            if self.strategy is IdStrategy.DETERMINISTIC:
                segment_id = self._deterministic_id(url)
            else:
                segment_id = self._random_id()

            self._entries[segment_id] = SegmentEntry(id=segment_id, url=url, created_at=now)
            self._entries.move_to_end(segment_id)

            while len(self._entries) > self.max_entries:
                evicted_id, _ = self._entries.popitem(last=False)
                logger.debug(f"Segment registry full, evicted {evicted_id}")
            return segment_id

    def lookup(self, segment_id: str) -> SegmentLookup:
        with self._lock:
            entry = self._entries.get(segment_id)
            if entry is None:
                return SegmentLookup(LookupStatus.NOT_FOUND)
            if self._is_expired(entry, self._clock()):
                del self._entries[segment_id]
                return SegmentLookup(LookupStatus.EXPIRED)
            return SegmentLookup(LookupStatus.FOUND, entry.url)

    def sweep(self) -> int:
        """Drop expired entries, then the oldest ones above capacity. Returns the number removed."""
        with self._lock:
            now = self._clock()
            expired = [k for k, entry in self._entries.items() if self._is_expired(entry, now)]
            for k in expired:
                del self._entries[k]

            removed = len(expired)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)
                removed += 1
            return removed

    def stats(self) -> Dict[str, object]:
        return {
            "entries": len(self._entries),
            "max_entries": self.max_entries,
            "ttl": self.ttl,
            "strategy": self.strategy.value,
        }


async def run_periodic_sweep(registry: SegmentRegistry, interval: float):
    """Sweep the registry forever; cancelled by the application lifespan."""
    while True:
        await asyncio.sleep(interval)
        removed = registry.sweep()
        if removed:
            logger.info(f"Segment sweep removed {removed} entries ({len(registry)} left)")
