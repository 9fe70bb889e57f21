"""Consent Gate: purpose-scoped consent decisions before any data is touched.

Consent is stored per subject as a bit mask of ConsentPurpose flags. A check
grants only when every requested purpose is covered. Denial is a normal
result (False), never an exception; the caller audits and short-circuits.
"""
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Flag
from typing import Callable, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

from scribeguard.shared.models import ConsentDecision
from scribeguard.shared.utils import hash_pii

logger = logging.getLogger(__name__)

DEFAULT_DECISION_TTL_SECONDS = 60.0


class ConsentPurpose(Flag):
    """Purposes a subject can consent to. NECESSARY is always granted."""
    NECESSARY = 1
    ANALYTICS = 2
    IMPROVEMENT = 4
    EDUCATIONAL = 8
    RESEARCH = 16
    MARKETING = 32
    SHARING = 64

    @classmethod
    def parse(cls, value) -> "ConsentPurpose":
        """Parse a purpose name, a named pattern, or a comma separated list.

        Raises:
            ValueError: If any part is not a known purpose or pattern
        """
        if isinstance(value, ConsentPurpose):
            return value
        result = None
        for part in str(value).split(","):
            name = part.strip().lower()
            if not name:
                continue
            if name in CONSENT_PATTERNS:
                flag = CONSENT_PATTERNS[name]
            else:
                try:
                    flag = cls[name.upper()]
                except KeyError:
                    raise ValueError(f"Unknown consent purpose: {part!r}")
            result = flag if result is None else result | flag
        if result is None:
            raise ValueError("Empty consent purpose")
        return result

    @property
    def names(self) -> List[str]:
        return [p.name.lower() for p in ConsentPurpose if p in self]

    @property
    def label(self) -> str:
        return "+".join(self.names)


# Common purpose combinations requested by analytics callers
CONSENT_PATTERNS: Dict[str, ConsentPurpose] = {
    "basic_analytics": ConsentPurpose.ANALYTICS | ConsentPurpose.IMPROVEMENT,
    "educational_insights": ConsentPurpose.EDUCATIONAL | ConsentPurpose.ANALYTICS,
    "minimal_privacy": ConsentPurpose.NECESSARY,
}


@dataclass(frozen=True)
class ConsentRecord:
    """Consent state for one (subject, purpose) pair as held by the store."""
    subject_id: str
    purpose: ConsentPurpose
    granted: bool
    recorded_at: datetime = field(default_factory=datetime.utcnow)
    expires_at: Optional[datetime] = None

    def is_active(self, now: Optional[datetime] = None) -> bool:
        if not self.granted:
            return False
        if self.expires_at is None:
            return True
        return (now or datetime.utcnow()) < self.expires_at


@dataclass(frozen=True)
class ConsentRequest:
    """One element of a batch consent check."""
    subject_id: str
    purposes: Tuple[ConsentPurpose, ...]


class ConsentStore(Protocol):
    """Identity/consent store consumed by the gate."""

    def get_consent(self, subject_id: str, purpose: ConsentPurpose) -> Optional[ConsentRecord]:
        ...


class InMemoryConsentStore:
    """Consent store keeping a purpose mask per subject.

    Used for development and tests; production deployments back the gate
    with the identity service. Every consent change is announced to the
    registered change listeners with the raw subject id; a ConsentGate
    built on this store registers its `invalidate` automatically. Owners of
    any other store must call `ConsentGate.invalidate` themselves after a
    grant or revocation, or a revoked subject stays admitted until the
    gate's decision TTL runs out.
    """

    def __init__(self):
        self._masks: Dict[str, int] = {}
        self._expiry: Dict[str, Optional[datetime]] = {}
        self._updated: Dict[str, datetime] = {}
        self._listeners: List[Callable[[str], object]] = []
        self._lock = threading.Lock()

    def add_change_listener(self, listener: Callable[[str], object]) -> None:
        """Call `listener(subject_id)` after every consent change."""
        with self._lock:
            self._listeners.append(listener)

    def record_consent(
        self,
        subject_id: str,
        purposes: Iterable[ConsentPurpose],
        expires_at: Optional[datetime] = None,
    ) -> None:
        """Grant the given purposes to a subject (in addition to existing ones)."""
        mask = ConsentPurpose.NECESSARY.value
        for purpose in purposes:
            mask |= purpose.value
        with self._lock:
            self._masks[subject_id] = self._masks.get(subject_id, 0) | mask
            self._expiry[subject_id] = expires_at
            self._updated[subject_id] = datetime.utcnow()
        self._notify(subject_id)

    def revoke_consent(self, subject_id: str, purposes: Iterable[ConsentPurpose]) -> None:
        """Withdraw purposes; NECESSARY cannot be revoked. Listeners are notified."""
        mask = 0
        for purpose in purposes:
            mask |= purpose.value
        mask &= ~ConsentPurpose.NECESSARY.value
        with self._lock:
            self._masks[subject_id] = self._masks.get(subject_id, 0) & ~mask
            self._updated[subject_id] = datetime.utcnow()
        self._notify(subject_id)

    def load(self, consents: Dict[str, Iterable[ConsentPurpose]]) -> None:
        """Replace the whole consent matrix."""
        with self._lock:
            previous = list(self._masks)
            self._masks.clear()
            self._expiry.clear()
            self._updated.clear()
        for subject_id, purposes in consents.items():
            self.record_consent(subject_id, purposes)
        for subject_id in previous:
            if subject_id not in consents:
                self._notify(subject_id)

        logger.info(
            "CONSENT_MATRIX_LOADED",
            extra={"subject_count": len(consents)}
        )

    def _notify(self, subject_id: str) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            listener(subject_id)

    def get_consent(self, subject_id: str, purpose: ConsentPurpose) -> Optional[ConsentRecord]:
        with self._lock:
            if subject_id not in self._masks:
                return None
            mask = self._masks[subject_id]
            expires_at = self._expiry.get(subject_id)
            recorded_at = self._updated[subject_id]

        return ConsentRecord(
            subject_id=subject_id,
            purpose=purpose,
            granted=(mask & purpose.value) == purpose.value,
            recorded_at=recorded_at,
            expires_at=expires_at,
        )


class ConsentGate:
    """Decides whether a subject has consented to every requested purpose.

    Decisions per (hashed subject, purpose) are cached for a short TTL so
    repeated checks inside one burst of requests share the store lookup.
    Expired decisions are pruned on write at most once per TTL, so the
    cache holds roughly two TTLs of distinct lookups. A consent change is
    only seen before the TTL runs out if `invalidate` is called for the
    subject; stores offering `add_change_listener` get it wired here.
    """

    def __init__(
        self,
        store: ConsentStore,
        decision_ttl_seconds: float = DEFAULT_DECISION_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize consent gate.

        Args:
            store: Consent store collaborator
            decision_ttl_seconds: Lifetime of cached decisions (0 disables)
            clock: Monotonic clock, injectable for tests
        """
        self.store = store
        self.decision_ttl_seconds = decision_ttl_seconds
        self._clock = clock
        self._decisions: Dict[Tuple[str, int], Tuple[bool, float]] = {}
        self._last_prune = clock()
        self._lock = threading.Lock()
        self._stats = {"checks": 0, "cache_hits": 0, "denials": 0, "pruned": 0}

        add_change_listener = getattr(store, "add_change_listener", None)
        if callable(add_change_listener):
            add_change_listener(self.invalidate)

        logger.info(
            "CONSENT_GATE_INITIALIZED",
            extra={"decision_ttl_seconds": decision_ttl_seconds}
        )

    def check_consent(self, subject_id: str, purposes: Sequence[ConsentPurpose]) -> bool:
        """Check that a subject consented to every listed purpose.

        Args:
            subject_id: Raw subject identifier (hashed before caching/logging)
            purposes: Purposes required by the request

        Returns:
            True only if consent is recorded for all purposes. An empty
            purpose list is malformed and denied.

        Raises:
            Exception: Whatever the consent store raises on infrastructure failure
        """
        subject_hash = hash_pii(subject_id)
        self._bump("checks")

        if not purposes:
            logger.warning(
                "CONSENT_CHECK_MALFORMED",
                extra={"subject_id_hash": subject_hash, "reason": "no purposes"}
            )
            self._bump("denials")
            return False

        for purpose in purposes:
            if not self._is_granted(subject_id, subject_hash, purpose):
                self._bump("denials")
                logger.warning(
                    "CONSENT_DENIED",
                    extra={
                        "subject_id_hash": subject_hash,
                        "purpose": purpose.label,
                    }
                )
                return False

        logger.debug(
            "CONSENT_GRANTED",
            extra={
                "subject_id_hash": subject_hash,
                "purposes": [p.label for p in purposes],
            }
        )
        return True

    def check_consent_batch(self, requests: Sequence[ConsentRequest]) -> List[bool]:
        """Evaluate each request independently, preserving input order.

        A malformed request or a store failure yields False for that element
        only. Lookups for the same (subject, purpose) are shared.
        """
        start = time.perf_counter()
        lookups: Dict[Tuple[str, ConsentPurpose], bool] = {}
        results: List[bool] = []

        for request in requests:
            try:
                results.append(self._check_with_shared_lookups(request, lookups))
            except Exception as e:
                logger.error(
                    "CONSENT_BATCH_ELEMENT_FAILED",
                    extra={"error": str(e), "error_type": type(e).__name__}
                )
                results.append(False)

        logger.info(
            "CONSENT_BATCH_CHECKED",
            extra={
                "request_count": len(requests),
                "granted": sum(results),
                "duration_ms": round((time.perf_counter() - start) * 1000, 2),
            }
        )
        return results

    def _check_with_shared_lookups(
        self,
        request: ConsentRequest,
        lookups: Dict[Tuple[str, ConsentPurpose], bool],
    ) -> bool:
        if not isinstance(request, ConsentRequest) or not request.subject_id or not request.purposes:
            raise ValueError("Malformed consent request")

        subject_hash = hash_pii(request.subject_id)
        self._bump("checks")
        for purpose in request.purposes:
            key = (subject_hash, purpose)
            if key not in lookups:
                lookups[key] = self._is_granted(request.subject_id, subject_hash, purpose)
            if not lookups[key]:
                self._bump("denials")
                return False
        return True

    def decide(self, subject_id: str, purposes: Sequence[ConsentPurpose]) -> ConsentDecision:
        """Check consent and return an immutable ConsentDecision."""
        granted = self.check_consent(subject_id, purposes)
        return ConsentDecision(
            subject_id_hash=hash_pii(subject_id),
            purposes=",".join(p.label for p in purposes),
            granted=granted,
        )

    def invalidate(self, subject_id: str) -> int:
        """Drop cached decisions for a subject after their consent changed.

        Returns:
            Number of cached decisions removed
        """
        subject_hash = hash_pii(subject_id)
        with self._lock:
            keys = [k for k in self._decisions if k[0] == subject_hash]
            for key in keys:
                del self._decisions[key]

        if not keys:
            return 0
        logger.info(
            "CONSENT_CACHE_INVALIDATED",
            extra={"subject_id_hash": subject_hash, "removed": len(keys)}
        )
        return len(keys)

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._stats, cached_decisions=len(self._decisions))

    def _is_granted(self, subject_id: str, subject_hash: str, purpose: ConsentPurpose) -> bool:
        if purpose == ConsentPurpose.NECESSARY:
            return True

        key = (subject_hash, purpose.value)
        now = self._clock()
        if self.decision_ttl_seconds > 0:
            with self._lock:
                cached = self._decisions.get(key)
                if cached is not None and now - cached[1] < self.decision_ttl_seconds:
                    self._stats["cache_hits"] += 1
                    return cached[0]

        record = self.store.get_consent(subject_id, purpose)
        granted = record is not None and record.is_active()

        if self.decision_ttl_seconds > 0:
            with self._lock:
                self._decisions[key] = (granted, now)
                if now - self._last_prune >= self.decision_ttl_seconds:
                    self._prune_locked(now)
        return granted

    def _prune_locked(self, now: float) -> None:
        expired = [
            key for key, (_, decided_at) in self._decisions.items()
            if now - decided_at >= self.decision_ttl_seconds
        ]
        for key in expired:
            del self._decisions[key]
        self._last_prune = now
        self._stats["pruned"] += len(expired)

    def _bump(self, name: str) -> None:
        with self._lock:
            self._stats[name] += 1
