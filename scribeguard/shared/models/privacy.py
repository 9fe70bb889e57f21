"""Request-scoped privacy domain models.

A PrivacyContext travels with every analytics request. It is validated
before anything else happens: a request without requester id, role or
purpose never reaches the consent gate.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Mapping, Optional
import uuid

from scribeguard.shared.errors import InvalidPrivacyContext


class RequesterRole(Enum):
    """Who is asking for analytics."""
    STUDENT = "student"
    EDUCATOR = "educator"
    SYSTEM = "system"
    ADMIN = "admin"


class PrivacyTier(Enum):
    """Sensitivity classification of the requested data.

    Drives cache freshness and whether subject ids are hashed in alerts.
    """
    PUBLIC = "public"
    INTERNAL = "internal"
    CONFIDENTIAL = "confidential"
    RESTRICTED = "restricted"

    @property
    def sensitivity(self) -> int:
        """Rank from 0 (public) to 3 (restricted)."""
        return _TIER_ORDER.index(self)

    @property
    def requires_subject_hashing(self) -> bool:
        """Public and internal results never carry a raw subject id."""
        return self in (PrivacyTier.PUBLIC, PrivacyTier.INTERNAL)

    @classmethod
    def parse(cls, value: Optional[str]) -> "PrivacyTier":
        """Parse a tier name; unknown or missing values are restricted."""
        if isinstance(value, PrivacyTier):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            return cls.RESTRICTED


_TIER_ORDER = (
    PrivacyTier.PUBLIC,
    PrivacyTier.INTERNAL,
    PrivacyTier.CONFIDENTIAL,
    PrivacyTier.RESTRICTED,
)


@dataclass(frozen=True)
class PrivacyContext:
    """Identity and intent of an analytics request.

    Attributes:
        requester_id: Identity of the caller (hashed before logging)
        requester_role: Role used for access decisions
        purpose: Educational purpose for the access
        educational_justification: Optional free-text justification
        privacy_tier: Sensitivity of the requested data
        timestamp: When the request was made
        correlation_id: Id tying together every record of one request
    """
    requester_id: str
    requester_role: RequesterRole
    purpose: str
    educational_justification: Optional[str] = None
    privacy_tier: PrivacyTier = PrivacyTier.RESTRICTED
    timestamp: datetime = field(default_factory=datetime.utcnow)
    correlation_id: str = field(default_factory=lambda: f"corr_{uuid.uuid4().hex[:16]}")

    def __post_init__(self):
        if not self.requester_id or not str(self.requester_id).strip():
            raise InvalidPrivacyContext("requester_id is required")
        if not isinstance(self.requester_role, RequesterRole):
            raise InvalidPrivacyContext(
                f"requester_role must be a RequesterRole, got {self.requester_role!r}"
            )
        if not self.purpose or not str(self.purpose).strip():
            raise InvalidPrivacyContext("purpose is required")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PrivacyContext":
        """Build a context from a loosely-typed mapping (queue message, request body).

        Raises:
            InvalidPrivacyContext: If a required field is missing or the role is unknown
        """
        role = data.get("requester_role")
        if not isinstance(role, RequesterRole):
            try:
                role = RequesterRole(str(role).lower())
            except ValueError:
                raise InvalidPrivacyContext(f"unknown requester_role {role!r}")

        kwargs = {
            "requester_id": data.get("requester_id", ""),
            "requester_role": role,
            "purpose": data.get("purpose", ""),
            "educational_justification": data.get("educational_justification"),
            "privacy_tier": PrivacyTier.parse(data.get("privacy_tier")),
        }
        if data.get("correlation_id"):
            kwargs["correlation_id"] = data["correlation_id"]
        if isinstance(data.get("timestamp"), datetime):
            kwargs["timestamp"] = data["timestamp"]
        return cls(**kwargs)


@dataclass(frozen=True)
class ConsentDecision:
    """Outcome of one consent check. Immutable and request scoped."""
    subject_id_hash: str
    purposes: str
    granted: bool
    decided_at: datetime = field(default_factory=datetime.utcnow)
