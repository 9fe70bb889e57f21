"""Privacy-tiered cache for computed aggregates.

Freshness depends on how sensitive the data is: the more sensitive the
tier, the shorter an aggregate may be served from cache. Keys are digests
of salted subject/cohort ids plus the query shape, so raw identifiers never
appear in a key or a log line.

Reads take only a short lock around the dict and never wait for a
recomputation in progress. Two concurrent misses for the same key both
recompute and the later set wins.
"""
import logging
import os
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Sequence, Tuple

from scribeguard.shared.models import PrivacyTier, QueryShape
from scribeguard.shared.utils import fingerprint_ids

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheConfig:
    """TTL per privacy tier, in seconds."""
    public_ttl_seconds: float = 60 * 60
    internal_ttl_seconds: float = 30 * 60
    confidential_ttl_seconds: float = 15 * 60
    restricted_ttl_seconds: float = 5 * 60
    max_entries: Optional[int] = None

    def __post_init__(self):
        ttls = [
            self.public_ttl_seconds,
            self.internal_ttl_seconds,
            self.confidential_ttl_seconds,
            self.restricted_ttl_seconds,
        ]
        if any(t < 0 for t in ttls):
            raise ValueError("Cache TTLs must be >= 0")
        # More sensitive tiers may never outlive less sensitive ones
        if any(a < b for a, b in zip(ttls, ttls[1:])):
            raise ValueError(
                "Cache TTLs must not increase with sensitivity "
                "(public >= internal >= confidential >= restricted)"
            )
        if self.max_entries is not None and self.max_entries < 1:
            raise ValueError(f"max_entries must be >= 1, got {self.max_entries}")

    def ttl_for(self, tier: PrivacyTier) -> float:
        return {
            PrivacyTier.PUBLIC: self.public_ttl_seconds,
            PrivacyTier.INTERNAL: self.internal_ttl_seconds,
            PrivacyTier.CONFIDENTIAL: self.confidential_ttl_seconds,
        }.get(tier, self.restricted_ttl_seconds)

    @classmethod
    def from_env(cls) -> "CacheConfig":
        """Create config from environment variables (minutes).

        Environment variables:
            SCRIBEGUARD_CACHE_TTL_PUBLIC: default 60
            SCRIBEGUARD_CACHE_TTL_INTERNAL: default 30
            SCRIBEGUARD_CACHE_TTL_CONFIDENTIAL: default 15
            SCRIBEGUARD_CACHE_TTL_RESTRICTED: default 5
            SCRIBEGUARD_CACHE_MAX_ENTRIES: unset = unbounded
        """
        max_entries = os.getenv("SCRIBEGUARD_CACHE_MAX_ENTRIES")
        return cls(
            public_ttl_seconds=float(os.getenv("SCRIBEGUARD_CACHE_TTL_PUBLIC", "60")) * 60,
            internal_ttl_seconds=float(os.getenv("SCRIBEGUARD_CACHE_TTL_INTERNAL", "30")) * 60,
            confidential_ttl_seconds=float(
                os.getenv("SCRIBEGUARD_CACHE_TTL_CONFIDENTIAL", "15")
            ) * 60,
            restricted_ttl_seconds=float(os.getenv("SCRIBEGUARD_CACHE_TTL_RESTRICTED", "5")) * 60,
            max_entries=int(max_entries) if max_entries else None,
        )


@dataclass(frozen=True)
class CacheEntry:
    key: str
    value: Any
    tier: PrivacyTier
    inserted_at: float
    ttl_seconds: float

    def is_expired(self, now: float) -> bool:
        return now - self.inserted_at >= self.ttl_seconds


def derive_cache_key(subject_ids: Sequence[str], shape: QueryShape) -> str:
    """Opaque cache key for a cohort and query shape, independent of cohort order."""
    return fingerprint_ids(subject_ids, qualifier=shape.fingerprint())


class PrivacyTieredCache:
    """Thread-safe TTL cache whose TTL is chosen by privacy tier."""

    def __init__(
        self,
        config: Optional[CacheConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or CacheConfig()
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = threading.Lock()
        self._stats = {"hits": 0, "misses": 0, "expired": 0, "evicted": 0, "sets": 0}

        logger.info(
            "PRIVACY_CACHE_INITIALIZED",
            extra={
                "public_ttl_seconds": self.config.public_ttl_seconds,
                "restricted_ttl_seconds": self.config.restricted_ttl_seconds,
                "max_entries": self.config.max_entries,
            }
        )

    def get(self, key: str, tier: Optional[PrivacyTier] = None) -> Tuple[Optional[Any], bool]:
        """Look up a key on behalf of a reader at `tier`.

        An entry is fresh for a reader only while it is younger than both
        its own TTL and the TTL of the reader's tier, so a restricted reader
        never sees a public entry older than the restricted TTL.

        Returns:
            (value, True) on a fresh hit, (None, False) on a miss. Entries
            past their own TTL are evicted here; entries only too old for
            this reader stay for less sensitive readers.
        """
        now = self._clock()
        reader_ttl = self.config.ttl_for(tier) if tier is not None else None
        stale_for_reader = False
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._stats["misses"] += 1
                return None, False
            expired = entry.is_expired(now)
            if expired:
                del self._entries[key]
                self._stats["expired"] += 1
                self._stats["misses"] += 1
            elif reader_ttl is not None and now - entry.inserted_at >= reader_ttl:
                stale_for_reader = True
                self._stats["misses"] += 1
            else:
                self._stats["hits"] += 1

        if expired:
            logger.debug(
                "CACHE_ENTRY_EXPIRED",
                extra={"key_prefix": key[:12], "tier": entry.tier.value}
            )
            return None, False
        if stale_for_reader:
            logger.debug(
                "CACHE_ENTRY_TOO_OLD_FOR_TIER",
                extra={
                    "key_prefix": key[:12],
                    "tier": entry.tier.value,
                    "reader_tier": tier.value,
                }
            )
            return None, False
        return entry.value, True

    def set(self, key: str, value: Any, tier: PrivacyTier) -> None:
        """Store a value with the TTL of its privacy tier."""
        ttl = self.config.ttl_for(tier)
        if ttl <= 0:
            return

        entry = CacheEntry(
            key=key, value=value, tier=tier, inserted_at=self._clock(), ttl_seconds=ttl
        )
        evicted = 0
        with self._lock:
            self._entries.pop(key, None)
            self._entries[key] = entry
            self._stats["sets"] += 1
            if self.config.max_entries is not None:
                while len(self._entries) > self.config.max_entries:
                    self._entries.popitem(last=False)
                    evicted += 1
                self._stats["evicted"] += evicted

        logger.debug(
            "CACHE_ENTRY_SET",
            extra={
                "key_prefix": key[:12],
                "tier": tier.value,
                "ttl_seconds": ttl,
                "evicted": evicted,
            }
        )

    def invalidate(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
        logger.info("PRIVACY_CACHE_CLEARED")

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            lookups = self._stats["hits"] + self._stats["misses"]
            return dict(
                self._stats,
                size=len(self._entries),
                hit_rate=self._stats["hits"] / lookups if lookups else 0.0,
            )
