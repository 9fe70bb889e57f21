"""Audit logger - append-only, hash-chained audit trail.

Every component records every decision here, including the branches where
nothing happened: consent denied, cohort too small, alert not found.
"""
import hashlib
import json
import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Tuple
import uuid

from scribeguard.shared.models import PrivacyContext
from scribeguard.shared.utils import hash_pii

logger = logging.getLogger(__name__)

GENESIS_HASH = "genesis"


class AuditAction(Enum):
    """Operations that are audited."""
    # Request path
    ANALYTICS_REQUEST = "analytics_request"
    CONSENT_CHECK = "consent_check"
    CACHE_HIT = "cache_hit"
    CACHE_MISS = "cache_miss"
    AGGREGATE_COMPUTE = "aggregate_compute"
    RULES_EVALUATED = "rules_evaluated"

    # Alert lifecycle
    ALERT_ADMITTED = "alert_admitted"
    ALERT_SUPPRESSED = "alert_suppressed"
    ALERT_ESCALATED = "alert_escalated"
    ALERT_ACKNOWLEDGED = "alert_acknowledged"
    ALERT_RESOLVED = "alert_resolved"
    ALERT_DISMISSED = "alert_dismissed"

    # Remediation
    REMEDIATION_EXECUTED = "remediation_executed"
    REMEDIATION_AWAITING_APPROVAL = "remediation_awaiting_approval"


class AuditEntity(Enum):
    """Entity types for audit logging."""
    STUDENT = "student"
    COHORT = "cohort"
    AGGREGATE = "aggregate"
    ALERT = "alert"
    SYSTEM = "system"


class AuditOutcome(Enum):
    SUCCESS = "success"
    DENIED = "denied"
    ERROR = "error"


@dataclass(frozen=True)
class PrivacyMetadata:
    """Privacy facts attached to an audit entry. Identifiers are hashed."""
    requester_role: Optional[str] = None
    purpose: Optional[str] = None
    privacy_tier: Optional[str] = None
    correlation_id: Optional[str] = None
    educational_justification: Optional[str] = None
    cohort_size: Optional[int] = None
    epsilon: Optional[float] = None
    delta: Optional[float] = None
    escalation_level: Optional[int] = None
    detail: Optional[str] = None

    @classmethod
    def from_context(cls, context: Optional[PrivacyContext], **overrides) -> "PrivacyMetadata":
        if context is None:
            return cls(**overrides)
        base = {
            "requester_role": context.requester_role.value,
            "purpose": context.purpose,
            "privacy_tier": context.privacy_tier.value,
            "correlation_id": context.correlation_id,
            "educational_justification": context.educational_justification,
        }
        base.update(overrides)
        return cls(**base)

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in self.__dict__.items() if v is not None}


@dataclass(frozen=True)
class AuditEntry:
    """Immutable audit log entry.

    Designed for append-only PostgreSQL storage.
    """
    entry_id: str
    timestamp: datetime
    action: AuditAction
    entity_type: AuditEntity
    entity_id: str      # Hashed if PII
    outcome: AuditOutcome
    actor_id: str       # Hashed requester id, or "system"
    actor_role: str
    denial_reason: Optional[str] = None
    privacy: PrivacyMetadata = field(default_factory=PrivacyMetadata)
    previous_hash: str = ""  # Chain to previous entry for verification
    entry_hash: str = ""     # Hash of this entry

    def compute_hash(self) -> str:
        """Compute SHA-256 hash of entry for verification.

        Returns:
            Hex-encoded hash string
        """
        content = {
            "entry_id": self.entry_id,
            "timestamp": self.timestamp.isoformat(),
            "action": self.action.value,
            "entity_type": self.entity_type.value,
            "entity_id": self.entity_id,
            "outcome": self.outcome.value,
            "actor_id": self.actor_id,
            "actor_role": self.actor_role,
            "denial_reason": self.denial_reason,
            "privacy": self.privacy.to_dict(),
            "previous_hash": self.previous_hash,
        }
        content_str = json.dumps(content, sort_keys=True)
        return hashlib.sha256(content_str.encode()).hexdigest()


@dataclass(frozen=True)
class AuditFilter:
    """Selection criteria shared by the logger and every audit store backend.

    Unset fields match everything; date bounds are inclusive.
    """
    action: Optional[AuditAction] = None
    entity_type: Optional[AuditEntity] = None
    entity_id: Optional[str] = None
    outcome: Optional[AuditOutcome] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None

    def matches(self, entry: AuditEntry) -> bool:
        return (
            (self.action is None or entry.action == self.action)
            and (self.entity_type is None or entry.entity_type == self.entity_type)
            and (self.entity_id is None or entry.entity_id == self.entity_id)
            and (self.outcome is None or entry.outcome == self.outcome)
            and (self.start_date is None or entry.timestamp >= self.start_date)
            and (self.end_date is None or entry.timestamp <= self.end_date)
        )

    def where_clause(self) -> Tuple[str, List[Any]]:
        """SQL predicate and parameters, in column order."""
        conditions = [
            ("action = %s", self.action.value if self.action else None),
            ("entity_type = %s", self.entity_type.value if self.entity_type else None),
            ("entity_id = %s", self.entity_id),
            ("outcome = %s", self.outcome.value if self.outcome else None),
            ("timestamp >= %s", self.start_date),
            ("timestamp <= %s", self.end_date),
        ]
        active = [(sql, value) for sql, value in conditions if value is not None]
        if not active:
            return "TRUE", []
        return " AND ".join(sql for sql, _ in active), [value for _, value in active]


class AuditStore(Protocol):
    """Durable append sink consumed by the audit logger."""

    def append(self, entry: AuditEntry) -> bool:
        ...

    def query(self, **filters) -> List[AuditEntry]:
        """Matching entries, newest first unless `oldest_first`; accepts
        AuditFilter fields plus `limit` (None = all).
        """
        ...


def verify_chain(entries: List[AuditEntry]) -> bool:
    """Verify the hash chain of entries in append order.

    Returns:
        True if chain is valid, False if tampered
    """
    expected_prev = GENESIS_HASH
    for entry in entries:
        if entry.previous_hash != expected_prev:
            logger.critical(
                "AUDIT_CHAIN_VERIFICATION_FAILED",
                extra={
                    "entry_id": entry.entry_id,
                    "expected_prev": expected_prev[:16],
                    "actual_prev": entry.previous_hash[:16],
                }
            )
            return False

        computed = entry.compute_hash()
        if computed != entry.entry_hash:
            logger.critical(
                "AUDIT_ENTRY_HASH_MISMATCH",
                extra={
                    "entry_id": entry.entry_id,
                    "computed": computed[:16],
                    "stored": entry.entry_hash[:16],
                }
            )
            return False

        expected_prev = entry.entry_hash

    logger.info(
        "AUDIT_CHAIN_VERIFIED",
        extra={"entry_count": len(entries)}
    )
    return True


class AuditLogger:
    """Chains and writes audit entries to the audit store.

    The write completes (or the entry is queued for retry) before record()
    returns, so no denial or error path finishes unaudited. Store failures
    never propagate to the caller. The logger keeps only the chain head and
    the retry queue; reads go to the store.
    """

    def __init__(self, store: Optional[AuditStore] = None):
        """Initialize audit logger.

        Args:
            store: Audit store (defaults to in-memory AuditRepository)
        """
        if store is None:
            from .audit_repository import AuditRepository
            store = AuditRepository()
        self.store = store
        self._lock = threading.Lock()
        self._last_hash: str = self._resume_head()
        self._pending: List[AuditEntry] = []

        logger.info("AUDIT_LOGGER_INITIALIZED")

    def _resume_head(self) -> str:
        """Continue the chain from the newest stored entry, if any."""
        newest = self.store.query(limit=1)
        if not newest:
            return GENESIS_HASH
        logger.info(
            "AUDIT_CHAIN_RESUMED",
            extra={"entry_id": newest[0].entry_id, "entry_hash": newest[0].entry_hash[:16]}
        )
        return newest[0].entry_hash

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def record(self, entry: AuditEntry) -> AuditEntry:
        """Chain and store an audit entry.

        Args:
            entry: Entry to record; previous_hash/entry_hash are assigned here

        Returns:
            The chained entry as written (or queued)

        Logs:
            - AUDIT_ENTRY_CREATED: After entry is stored
            - AUDIT_WRITE_FAILED: When the store rejects the write (critical)
        """
        with self._lock:
            chained = replace(entry, previous_hash=self._last_hash, entry_hash="")
            chained = replace(chained, entry_hash=chained.compute_hash())
            self._last_hash = chained.entry_hash

            # Preserve append order: nothing overtakes a queued entry
            if self._pending:
                self._pending.append(chained)
                self._flush_locked()
            else:
                self._write_locked(chained)

        logger.info(
            "AUDIT_ENTRY_CREATED",
            extra={
                "entry_id": chained.entry_id,
                "action": chained.action.value,
                "entity_type": chained.entity_type.value,
                "entity_id": chained.entity_id,
                "outcome": chained.outcome.value,
                "actor_role": chained.actor_role,
                "entry_hash": chained.entry_hash[:16],  # Truncated for logs
            }
        )
        return chained

    def _write_locked(self, entry: AuditEntry) -> bool:
        try:
            self.store.append(entry)
            return True
        except Exception as e:
            logger.critical(
                "AUDIT_WRITE_FAILED",
                extra={
                    "entry_id": entry.entry_id,
                    "action": entry.action.value,
                    "error": str(e),
                    "error_type": type(e).__name__,
                    "action_taken": "QUEUED_FOR_RETRY",
                }
            )
            if entry not in self._pending:
                self._pending.append(entry)
            return False

    def _flush_locked(self) -> int:
        written = 0
        while self._pending:
            entry = self._pending[0]
            try:
                self.store.append(entry)
            except Exception as e:
                logger.error(
                    "AUDIT_RETRY_FAILED",
                    extra={
                        "entry_id": entry.entry_id,
                        "pending": len(self._pending),
                        "error": str(e),
                    }
                )
                break
            self._pending.pop(0)
            written += 1
        return written

    def flush_pending(self) -> int:
        """Retry queued entries in order.

        Returns:
            Number of entries written on this attempt
        """
        with self._lock:
            written = self._flush_locked()
        if written:
            logger.info(
                "AUDIT_PENDING_FLUSHED",
                extra={"written": written, "remaining": len(self._pending)}
            )
        return written

    def log(
        self,
        action: AuditAction,
        entity_type: AuditEntity,
        entity_id: str,
        outcome: AuditOutcome = AuditOutcome.SUCCESS,
        privacy_context: Optional[PrivacyContext] = None,
        actor_id: Optional[str] = None,
        denial_reason: Optional[str] = None,
        **privacy_fields,
    ) -> AuditEntry:
        """Build and record an audit entry.

        Args:
            action: Action being audited
            entity_type: Type of entity being acted upon
            entity_id: Identifier of entity (already hashed if PII)
            outcome: success, denied or error
            privacy_context: Request context, if the action belongs to a request
            actor_id: Raw actor id (hashed here); defaults to the requester
            denial_reason: Why the action was denied or failed
            **privacy_fields: Extra PrivacyMetadata fields (cohort_size, epsilon, ...)

        Returns:
            Created AuditEntry
        """
        if actor_id is None and privacy_context is not None:
            actor_id = privacy_context.requester_id
        actor_role = (
            privacy_context.requester_role.value if privacy_context is not None else "system"
        )

        entry = AuditEntry(
            entry_id=f"audit_{uuid.uuid4().hex[:16]}",
            timestamp=datetime.utcnow(),
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            outcome=outcome,
            actor_id=hash_pii(actor_id) if actor_id else "system",
            actor_role=actor_role,
            denial_reason=denial_reason,
            privacy=PrivacyMetadata.from_context(privacy_context, **privacy_fields),
        )
        return self.record(entry)

    def verify_chain(self) -> bool:
        """Verify the chain of every entry the store holds.

        Entries still in the retry queue are not yet stored and so not checked.
        """
        return verify_chain(self.store.query(limit=None, oldest_first=True))

    def query(
        self,
        action: Optional[AuditAction] = None,
        entity_type: Optional[AuditEntity] = None,
        entity_id: Optional[str] = None,
        outcome: Optional[AuditOutcome] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[AuditEntry]:
        """Query stored entries, oldest first."""
        return self.store.query(
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            outcome=outcome,
            start_date=start_date,
            end_date=end_date,
            limit=limit,
            oldest_first=True,
        )
