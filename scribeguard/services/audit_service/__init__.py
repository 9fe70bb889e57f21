"""Audit Service: append-only audit trail for every pipeline decision.

Per ADR-005: every component records every branch (granted, denied,
cache-hit, escalated, remediated, not-found) with a hash chain for
tamper evidence.

This service provides:
- AuditLogger: chains entries and writes them before the request finishes
- AuditRepository: in-memory or PostgreSQL append-only audit store
"""

from .audit_logger import (
    AuditLogger,
    AuditAction,
    AuditEntity,
    AuditEntry,
    AuditFilter,
    AuditOutcome,
    AuditStore,
    PrivacyMetadata,
    verify_chain,
)
from .audit_repository import AuditRepository

__all__ = [
    "AuditLogger",
    "AuditAction",
    "AuditEntity",
    "AuditEntry",
    "AuditFilter",
    "AuditOutcome",
    "AuditStore",
    "PrivacyMetadata",
    "verify_chain",
    "AuditRepository",
]
