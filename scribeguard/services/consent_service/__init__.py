"""Consent Service: purpose-scoped consent decisions.

Every analytics request passes the consent gate before any metric row is
read. Denial is returned as False and audited by the caller.

This service provides:
- ConsentGate: single and batch consent checks with a short decision cache
- InMemoryConsentStore: development/test consent store
"""

from .consent_gate import (
    ConsentGate,
    ConsentPurpose,
    ConsentRecord,
    ConsentRequest,
    ConsentStore,
    InMemoryConsentStore,
    CONSENT_PATTERNS,
)

__all__ = [
    "ConsentGate",
    "ConsentPurpose",
    "ConsentRecord",
    "ConsentRequest",
    "ConsentStore",
    "InMemoryConsentStore",
    "CONSENT_PATTERNS",
]
