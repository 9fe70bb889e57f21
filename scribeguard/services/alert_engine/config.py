"""Alert engine configuration: escalation rules and notification channels.

Escalation rules are static: loaded once when the engine is constructed.
"""
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, Optional, Tuple

from scribeguard.shared.models import AlertSeverity

DEFAULT_ESCALATION_CAP = 3


class ChannelType(Enum):
    """Delivery channel understood by the notification sink."""
    EMAIL = "email"
    SMS = "sms"
    SLACK = "slack"
    WEBHOOK = "webhook"


@dataclass(frozen=True)
class EscalationRule:
    """How long an alert of one severity may stay unacknowledged.

    Attributes:
        severity: Severity the rule applies to
        timeout_minutes: Time before each automatic escalation
        auto_escalate: Whether a timer is armed at all
        recipients: Next-tier recipients notified on every escalation, in order
    """
    severity: AlertSeverity
    timeout_minutes: float
    auto_escalate: bool
    recipients: Tuple[str, ...] = ()

    def __post_init__(self):
        if self.timeout_minutes <= 0:
            raise ValueError(
                f"timeout_minutes must be > 0 for {self.severity.value}, got {self.timeout_minutes}"
            )

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_minutes * 60


@dataclass(frozen=True)
class NotificationChannel:
    """Channel notified on admission of alerts with matching severity."""
    channel_type: ChannelType
    endpoint: str
    severities: FrozenSet[AlertSeverity]
    enabled: bool = True

    def accepts(self, severity: AlertSeverity) -> bool:
        return self.enabled and bool(self.endpoint) and severity in self.severities


DEFAULT_ESCALATION_RULES: Dict[AlertSeverity, EscalationRule] = {
    AlertSeverity.INFO: EscalationRule(
        severity=AlertSeverity.INFO,
        timeout_minutes=240,  # 4 hours
        auto_escalate=False,
        recipients=("privacy-team@example.edu",),
    ),
    AlertSeverity.WARNING: EscalationRule(
        severity=AlertSeverity.WARNING,
        timeout_minutes=60,
        auto_escalate=True,
        recipients=("privacy-team@example.edu", "security-team@example.edu"),
    ),
    AlertSeverity.CRITICAL: EscalationRule(
        severity=AlertSeverity.CRITICAL,
        timeout_minutes=15,
        auto_escalate=True,
        recipients=("privacy-officer@example.edu", "cto@example.edu"),
    ),
    AlertSeverity.BREACH: EscalationRule(
        severity=AlertSeverity.BREACH,
        timeout_minutes=5,
        auto_escalate=True,
        recipients=(
            "ceo@example.edu",
            "legal@example.edu",
            "privacy-officer@example.edu",
        ),
    ),
}


def default_channels(
    alert_email: str = "privacy-alerts@example.edu",
    slack_webhook: Optional[str] = None,
    sms_number: Optional[str] = None,
) -> Tuple[NotificationChannel, ...]:
    """Admission channels; Slack and SMS are enabled only when configured."""
    return (
        NotificationChannel(
            channel_type=ChannelType.EMAIL,
            endpoint=alert_email,
            severities=frozenset({
                AlertSeverity.WARNING, AlertSeverity.CRITICAL, AlertSeverity.BREACH,
            }),
        ),
        NotificationChannel(
            channel_type=ChannelType.SLACK,
            endpoint=slack_webhook or "",
            severities=frozenset({AlertSeverity.CRITICAL, AlertSeverity.BREACH}),
            enabled=bool(slack_webhook),
        ),
        NotificationChannel(
            channel_type=ChannelType.SMS,
            endpoint=sms_number or "",
            severities=frozenset({AlertSeverity.BREACH}),
            enabled=bool(sms_number),
        ),
    )


@dataclass(frozen=True)
class AlertEngineConfig:
    """Escalation engine behavior."""
    escalation_rules: Dict[AlertSeverity, EscalationRule] = field(
        default_factory=lambda: dict(DEFAULT_ESCALATION_RULES)
    )
    channels: Tuple[NotificationChannel, ...] = field(default_factory=default_channels)
    escalation_cap: int = DEFAULT_ESCALATION_CAP
    auto_remediation_enabled: bool = True
    suppress_live_duplicates: bool = False
    notification_workers: int = 8

    def __post_init__(self):
        if self.escalation_cap < 0:
            raise ValueError(f"escalation_cap must be >= 0, got {self.escalation_cap}")
        if self.notification_workers < 1:
            raise ValueError("notification_workers must be >= 1")

    def rule_for(self, severity: AlertSeverity) -> Optional[EscalationRule]:
        return self.escalation_rules.get(severity)

    @classmethod
    def from_env(cls) -> "AlertEngineConfig":
        """Create config from environment variables.

        Environment variables:
            SCRIBEGUARD_ESCALATION_CAP: Max automatic escalations (default 3)
            SCRIBEGUARD_AUTO_REMEDIATION: "true"/"false" (default true)
            SCRIBEGUARD_SUPPRESS_DUPLICATE_ALERTS: "true"/"false" (default false)
            SCRIBEGUARD_ALERT_EMAIL: Admission email endpoint
            SLACK_PRIVACY_WEBHOOK: Enables the Slack channel when set
            EMERGENCY_SMS_NUMBER: Enables the SMS channel when set
        """
        return cls(
            channels=default_channels(
                alert_email=os.getenv("SCRIBEGUARD_ALERT_EMAIL", "privacy-alerts@example.edu"),
                slack_webhook=os.getenv("SLACK_PRIVACY_WEBHOOK"),
                sms_number=os.getenv("EMERGENCY_SMS_NUMBER"),
            ),
            escalation_cap=int(os.getenv("SCRIBEGUARD_ESCALATION_CAP", str(DEFAULT_ESCALATION_CAP))),
            auto_remediation_enabled=os.getenv("SCRIBEGUARD_AUTO_REMEDIATION", "true").lower() == "true",
            suppress_live_duplicates=(
                os.getenv("SCRIBEGUARD_SUPPRESS_DUPLICATE_ALERTS", "false").lower() == "true"
            ),
        )
