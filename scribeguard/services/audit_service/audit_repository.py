"""Audit repository: the durable append-only audit store.

The PostgreSQL table is append-only (the service role holds INSERT and
SELECT grants only). A database-assigned `entry_seq BIGSERIAL` column
keeps append order among entries with equal timestamps. Without a
connection manager the repository keeps entries in a process-local list
for development and tests.
"""
import json
import logging
import threading
from datetime import datetime
from typing import List, Optional, Sequence

from scribeguard.shared.database import (
    BaseRepository,
    ConnectionManager,
)
from .audit_logger import (
    AuditAction,
    AuditEntity,
    AuditEntry,
    AuditFilter,
    AuditOutcome,
    PrivacyMetadata,
)

logger = logging.getLogger(__name__)

COLUMNS = (
    "entry_id", "timestamp", "action", "entity_type", "entity_id", "outcome",
    "actor_id", "actor_role", "denial_reason", "privacy", "previous_hash", "entry_hash",
)


def entry_to_row(entry: AuditEntry) -> Sequence:
    """Flatten an entry into COLUMNS order; privacy metadata becomes JSON."""
    return (
        entry.entry_id,
        entry.timestamp,
        entry.action.value,
        entry.entity_type.value,
        entry.entity_id,
        entry.outcome.value,
        entry.actor_id,
        entry.actor_role,
        entry.denial_reason,
        json.dumps(entry.privacy.to_dict()),
        entry.previous_hash,
        entry.entry_hash,
    )


class AuditRepository(BaseRepository[AuditEntry]):
    """Append-only store for hash-chained audit entries."""

    def __init__(
        self,
        connection_manager: Optional[ConnectionManager] = None,
        table_name: str = "audit_entries",
    ):
        super().__init__(connection_manager, table_name)
        self._entries: List[AuditEntry] = []
        self._entries_lock = threading.Lock()

        logger.info(
            "AUDIT_REPOSITORY_INITIALIZED",
            extra={"backend": "postgresql" if connection_manager else "memory"}
        )

    @property
    def durable(self) -> bool:
        return self.connection_manager is not None

    def append(self, entry: AuditEntry) -> bool:
        """Append one entry. There is no update or delete counterpart.

        Raises:
            RepositoryError: If the PostgreSQL insert fails
        """
        if not self.durable:
            with self._entries_lock:
                self._entries.append(entry)
            logger.debug(
                "AUDIT_ENTRY_STORED_MEMORY",
                extra={"entry_id": entry.entry_id, "action": entry.action.value}
            )
            return True

        placeholders = ", ".join(["%s"] * len(COLUMNS))
        self._insert(
            f"INSERT INTO {self.table_name} ({', '.join(COLUMNS)}) VALUES ({placeholders})",
            entry_to_row(entry),
        )
        logger.info(
            "AUDIT_ENTRY_STORED_POSTGRES",
            extra={"entry_id": entry.entry_id, "action": entry.action.value}
        )
        return True

    def query(
        self,
        action: Optional[AuditAction] = None,
        entity_type: Optional[AuditEntity] = None,
        entity_id: Optional[str] = None,
        outcome: Optional[AuditOutcome] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        limit: Optional[int] = 100,
        oldest_first: bool = False,
    ) -> List[AuditEntry]:
        """Return up to `limit` matching entries (None = all) in append order,
        newest first unless oldest_first is set.
        """
        criteria = AuditFilter(action, entity_type, entity_id, outcome, start_date, end_date)

        if not self.durable:
            with self._entries_lock:
                matched = [entry for entry in self._entries if criteria.matches(entry)]
            if not oldest_first:
                matched.reverse()
            return matched if limit is None else matched[:limit]

        predicate, params = criteria.where_clause()
        order = "ASC" if oldest_first else "DESC"
        query = (
            f"SELECT {', '.join(COLUMNS)} FROM {self.table_name} "
            f"WHERE {predicate} ORDER BY timestamp {order}, entry_seq {order}"
        )
        if limit is not None:
            query += " LIMIT %s"
            params.append(limit)
        return self._fetch_all(query, params)

    def _row_to_entity(self, row: tuple) -> AuditEntry:
        record = dict(zip(COLUMNS, row))
        privacy = record["privacy"]
        if isinstance(privacy, str):
            privacy = json.loads(privacy)

        return AuditEntry(
            entry_id=record["entry_id"],
            timestamp=record["timestamp"],
            action=AuditAction(record["action"]),
            entity_type=AuditEntity(record["entity_type"]),
            entity_id=record["entity_id"],
            outcome=AuditOutcome(record["outcome"]),
            actor_id=record["actor_id"],
            actor_role=record["actor_role"],
            denial_reason=record["denial_reason"],
            privacy=PrivacyMetadata(**(privacy or {})),
            previous_hash=record["previous_hash"],
            entry_hash=record["entry_hash"],
        )
