"""Shared domain models for ScribeGuard."""
from .privacy import (
    RequesterRole,
    PrivacyTier,
    PrivacyContext,
    ConsentDecision,
)
from .analytics import (
    AnonymizationMethod,
    NoiseMechanism,
    AggregationLevel,
    MetricRow,
    QueryShape,
    MetricStatistics,
    AggregateResult,
)
from .alerts import (
    AlertSeverity,
    AlertStatus,
    Trend,
    RemediationType,
    RemediationParameters,
    RemediationDescriptor,
    MetricSnapshot,
    AlertDraft,
    InterventionAlert,
)

__all__ = [
    "RequesterRole",
    "PrivacyTier",
    "PrivacyContext",
    "ConsentDecision",
    "AnonymizationMethod",
    "NoiseMechanism",
    "AggregationLevel",
    "MetricRow",
    "QueryShape",
    "MetricStatistics",
    "AggregateResult",
    "AlertSeverity",
    "AlertStatus",
    "Trend",
    "RemediationType",
    "RemediationParameters",
    "RemediationDescriptor",
    "MetricSnapshot",
    "AlertDraft",
    "InterventionAlert",
]
