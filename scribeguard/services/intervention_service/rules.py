"""Intervention threshold rules.

A ThresholdRule compares one aggregate statistic against a threshold and,
when crossed, describes the alert to raise. Severity bands refine the base
severity: the first band whose own threshold is also crossed wins.

Templates are formatted with:
    current      metric value (float)
    current_pct  value as a percentage (float)
    threshold    rule threshold (float)
    trend        improving | declining | stable
"""
import operator
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Tuple

from scribeguard.shared.models import AlertSeverity, RemediationDescriptor, Trend


class Comparator(Enum):
    """How the metric is compared against the threshold."""
    LT = "<"
    LE = "<="
    GT = ">"
    GE = ">="

    @property
    def fn(self) -> Callable[[float, float], bool]:
        return {
            Comparator.LT: operator.lt,
            Comparator.LE: operator.le,
            Comparator.GT: operator.gt,
            Comparator.GE: operator.ge,
        }[self]

    def crossed(self, value: float, threshold: float) -> bool:
        return self.fn(value, threshold)

    @property
    def lower_is_worse(self) -> bool:
        return self in (Comparator.LT, Comparator.LE)


@dataclass(frozen=True)
class SeverityBand:
    """Escalated severity when the metric also crosses a stricter threshold."""
    threshold: float
    severity: AlertSeverity


@dataclass(frozen=True)
class ThresholdRule:
    """One independent alerting rule over an aggregate statistic."""
    rule_id: str
    metric: str
    comparator: Comparator
    threshold: float
    alert_type: str
    title: str
    description_template: str
    severity: AlertSeverity = AlertSeverity.WARNING
    bands: Tuple[SeverityBand, ...] = ()
    statistic: str = "mean"
    suggested_actions: Tuple[str, ...] = ()
    default_trend: Trend = Trend.STABLE
    remediation: Optional[RemediationDescriptor] = None

    def __post_init__(self):
        if self.statistic not in ("mean", "rate", "count"):
            raise ValueError(f"Unknown statistic {self.statistic!r} for rule {self.rule_id}")
        if not self.metric:
            raise ValueError(f"Rule {self.rule_id} has no metric")

    def is_triggered(self, value: float) -> bool:
        return self.comparator.crossed(value, self.threshold)

    def severity_for(self, value: float) -> AlertSeverity:
        for band in self.bands:
            if self.comparator.crossed(value, band.threshold):
                return band.severity
        return self.severity


# Default rules for writing analytics. Thresholds are on noisy cohort
# statistics, so they describe the group, not any one student.
PRODUCTIVITY_RULE = ThresholdRule(
    rule_id="productivity",
    metric="productivity",
    comparator=Comparator.LT,
    threshold=0.6,
    bands=(SeverityBand(0.3, AlertSeverity.CRITICAL),),
    alert_type="productivity",
    title="Writing Productivity Concern",
    description_template=(
        "Writing productivity is below optimal levels ({current_pct:.1f}%)"
    ),
    suggested_actions=(
        "Review writing process and identify bottlenecks",
        "Implement time management strategies",
        "Consider breaking assignments into smaller tasks",
    ),
)

PROCRASTINATION_RULE = ThresholdRule(
    rule_id="procrastination",
    metric="days_since_last_submission",
    comparator=Comparator.GT,
    threshold=3,
    bands=(SeverityBand(7, AlertSeverity.CRITICAL),),
    alert_type="procrastination",
    title="Potential Procrastination Pattern",
    description_template="No recent writing activity detected ({current:.0f} days)",
    suggested_actions=(
        "Check in with student about assignment progress",
        "Provide deadline reminders and scaffolding",
        "Offer writing support resources",
    ),
    default_trend=Trend.DECLINING,
)

QUALITY_RULE = ThresholdRule(
    rule_id="quality",
    metric="average_quality_score",
    comparator=Comparator.LT,
    threshold=0.7,
    bands=(SeverityBand(0.5, AlertSeverity.CRITICAL),),
    alert_type="quality",
    title="Writing Quality Below Expectations",
    description_template=(
        "Recent submissions show quality concerns ({current_pct:.1f}%)"
    ),
    suggested_actions=(
        "Provide targeted feedback on writing techniques",
        "Recommend writing resources and tutorials",
        "Consider one-on-one writing support",
    ),
)

DEFAULT_RULES: Tuple[ThresholdRule, ...] = (
    PRODUCTIVITY_RULE,
    PROCRASTINATION_RULE,
    QUALITY_RULE,
)
