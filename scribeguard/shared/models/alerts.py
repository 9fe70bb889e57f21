"""Intervention alert domain models.

The rule evaluator produces AlertDraft values (no id, no lifecycle state).
The escalation engine turns each admitted draft into an InterventionAlert
and is the only component that mutates it afterwards.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from .privacy import PrivacyTier


class AlertSeverity(Enum):
    """Alert severity, ordered from least to most urgent."""
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"
    BREACH = "breach"

    @property
    def rank(self) -> int:
        return list(AlertSeverity).index(self)


class AlertStatus(Enum):
    """State machine for alert lifecycle."""
    PENDING = "pending"
    ACKNOWLEDGED = "acknowledged"
    ESCALATED = "escalated"
    RESOLVED = "resolved"
    DISMISSED = "dismissed"

    @property
    def is_terminal(self) -> bool:
        return self in (AlertStatus.RESOLVED, AlertStatus.DISMISSED)

    @property
    def awaiting_acknowledgement(self) -> bool:
        """Still eligible for automatic escalation."""
        return self in (AlertStatus.PENDING, AlertStatus.ESCALATED)


class Trend(Enum):
    IMPROVING = "improving"
    DECLINING = "declining"
    STABLE = "stable"


class RemediationType(Enum):
    """Automatic actions an alert may carry."""
    BLOCK_ACCESS = "block_access"
    REVOKE_SESSION = "revoke_session"
    NOTIFY_ADMIN = "notify_admin"
    AUTO_DELETE = "auto_delete"
    REQUIRE_CONSENT = "require_consent"


@dataclass(frozen=True)
class RemediationParameters:
    """Known remediation parameters; each action reads the ones it needs."""
    user_id: Optional[str] = None
    resource: Optional[str] = None
    admin_endpoint: Optional[str] = None
    data_id: Optional[str] = None
    reason: Optional[str] = None
    consent_purpose: Optional[str] = None


@dataclass(frozen=True)
class RemediationDescriptor:
    """Auto-remediation attached to an alert.

    Attributes:
        action: What to do
        parameters: Action inputs
        execute_after_minutes: Delay before execution (0 = immediately)
        requires_manual_approval: If True, the engine only logs; an operator
            must trigger execution explicitly
    """
    action: RemediationType
    parameters: RemediationParameters = field(default_factory=RemediationParameters)
    execute_after_minutes: float = 0.0
    requires_manual_approval: bool = True

    def __post_init__(self):
        if self.execute_after_minutes < 0:
            raise ValueError(
                f"execute_after_minutes must be >= 0, got {self.execute_after_minutes}"
            )


@dataclass(frozen=True)
class MetricSnapshot:
    """Metric values that triggered a rule."""
    metric: str
    current_value: float
    threshold: float
    trend: Trend = Trend.STABLE
    previous_value: Optional[float] = None


@dataclass(frozen=True)
class AlertDraft:
    """Alert proposed by the rule evaluator, not yet admitted."""
    subject_id: str             # hashed when the privacy tier requires it
    alert_type: str
    severity: AlertSeverity
    title: str
    description: str
    recommended_actions: Tuple[str, ...] = ()
    snapshot: Optional[MetricSnapshot] = None
    remediation: Optional[RemediationDescriptor] = None
    rule_id: Optional[str] = None
    privacy_tier: PrivacyTier = PrivacyTier.RESTRICTED


@dataclass
class InterventionAlert:
    """Mutable record tracking an admitted alert.

    Mutated only by acknowledge, resolve, dismiss, escalate and
    remediation-execution events inside the escalation engine.
    """
    alert_id: str
    subject_id: str
    alert_type: str
    severity: AlertSeverity
    title: str
    description: str
    recommended_actions: Tuple[str, ...]
    snapshot: Optional[MetricSnapshot]
    remediation: Optional[RemediationDescriptor]
    privacy_tier: PrivacyTier
    correlation_id: Optional[str]
    created_at: datetime
    updated_at: datetime
    status: AlertStatus = AlertStatus.PENDING
    escalation_level: int = 0
    acknowledged: bool = False
    acknowledged_at: Optional[datetime] = None
    acknowledged_by: Optional[str] = None   # hashed
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None       # hashed
    resolution: Optional[str] = None
    dismissed_at: Optional[datetime] = None
    remediation_executed: bool = False
    rule_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for operator responses and notification payloads."""
        return {
            "alert_id": self.alert_id,
            "subject_id": self.subject_id,
            "alert_type": self.alert_type,
            "severity": self.severity.value,
            "title": self.title,
            "description": self.description,
            "recommended_actions": list(self.recommended_actions),
            "status": self.status.value,
            "escalation_level": self.escalation_level,
            "acknowledged": self.acknowledged,
            "acknowledged_at": self.acknowledged_at.isoformat() if self.acknowledged_at else None,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "resolution": self.resolution,
            "remediation": self.remediation.action.value if self.remediation else None,
            "remediation_executed": self.remediation_executed,
            "created_at": self.created_at.isoformat(),
            "correlation_id": self.correlation_id,
        }
