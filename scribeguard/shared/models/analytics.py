"""Aggregate analytics models shared by the aggregator, cache and evaluator."""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Optional, Tuple


class AnonymizationMethod(Enum):
    """Which guarantee applies to a published aggregate."""
    K_ANONYMITY = "k-anonymity"
    DIFFERENTIAL_PRIVACY = "differential-privacy"
    K_ANONYMITY_AND_DIFFERENTIAL_PRIVACY = "k-anonymity+differential-privacy"


class NoiseMechanism(Enum):
    """Noise distribution used for differential privacy."""
    LAPLACE = "laplace"       # pure epsilon-DP, delta tracked for accounting only
    GAUSSIAN = "gaussian"     # (epsilon, delta)-DP, delta calibrates sigma


class AggregationLevel(Enum):
    """Granularity of the cohort being aggregated."""
    STUDENT = "student"
    CLASS = "class"
    COURSE = "course"
    SCHOOL = "school"


@dataclass(frozen=True)
class MetricRow:
    """One raw per-subject metric value returned by the metrics repository."""
    subject_id: str
    metric: str
    value: float


@dataclass(frozen=True)
class QueryShape:
    """Everything about a query except who it is about.

    Combined with the hashed subject/cohort ids to derive cache keys. The
    privacy parameters are part of the shape: an aggregate noised at one
    epsilon must never answer a query that asked for another.
    """
    metrics: Tuple[str, ...]
    window_days: int = 7
    aggregation_level: AggregationLevel = AggregationLevel.CLASS
    epsilon: float = 1.0
    delta: float = 1e-5
    mechanism: NoiseMechanism = NoiseMechanism.LAPLACE

    def fingerprint(self) -> str:
        """Stable text form, independent of metric order."""
        return "|".join([
            ",".join(sorted(self.metrics)),
            str(self.window_days),
            self.aggregation_level.value,
            repr(float(self.epsilon)),
            repr(float(self.delta)),
            self.mechanism.value,
        ])


@dataclass(frozen=True)
class MetricStatistics:
    """Noisy statistics for one metric.

    A suppressed metric carries no numbers: fewer than k subjects
    contributed values for it.
    """
    metric: str
    mean: Optional[float]
    rate: Optional[float]
    count: Optional[float]
    suppressed: bool = False
    suppression_reason: Optional[str] = None

    def value_of(self, statistic: str) -> Optional[float]:
        """Look up a statistic field by name (mean, rate, count)."""
        if self.suppressed or statistic not in ("mean", "rate", "count"):
            return None
        return getattr(self, statistic)


@dataclass(frozen=True)
class AggregateResult:
    """Published aggregate over a cohort.

    Never constructed below the minimum cohort size; the aggregator
    raises InsufficientCohort instead.
    """
    metrics: Dict[str, MetricStatistics]
    cohort_size: int
    epsilon: float
    delta: float
    sensitivity: float
    mechanism: NoiseMechanism
    anonymization_method: AnonymizationMethod
    window_days: int = 7
    computed_at: datetime = field(default_factory=datetime.utcnow)

    def statistic(self, metric: str, statistic: str = "mean") -> Optional[float]:
        """Return one statistic, or None when missing or suppressed."""
        stats = self.metrics.get(metric)
        if stats is None:
            return None
        return stats.value_of(statistic)
