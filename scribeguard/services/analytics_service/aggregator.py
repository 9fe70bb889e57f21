"""Differential-privacy aggregator.

Computes per-metric cohort statistics (mean, rate, count) under two
guarantees applied in order:

1. k-anonymity: the cohort must reach the minimum size before any row is
   fetched, and each metric needs k contributing subjects or it is
   suppressed.
2. Differential privacy: independent calibrated noise on every published
   numeric field.

Repeated calls with identical inputs draw fresh noise.
"""
import logging
import os
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from scribeguard.shared.errors import InsufficientCohort, PrivacyBudgetExceeded
from scribeguard.shared.models import (
    AggregateResult,
    AnonymizationMethod,
    MetricStatistics,
    NoiseMechanism,
    PrivacyContext,
)
from scribeguard.shared.utils import fingerprint_ids
from scribeguard.services.audit_service import (
    AuditAction,
    AuditEntity,
    AuditLogger,
    AuditOutcome,
)
from .differential_privacy import (
    DEFAULT_SENSITIVITY,
    NoiseSampler,
    PrivacyBudgetLedger,
    validate_privacy_parameters,
)
from .k_anonymity import K_ANONYMITY_THRESHOLD, KAnonymityEnforcer
from .metrics_repository import MetricsRepository

logger = logging.getLogger(__name__)

# mean, rate and count are noised independently for every published metric
NOISY_FIELDS_PER_METRIC = 3


@dataclass(frozen=True)
class AggregatorConfig:
    """Aggregation privacy settings."""
    minimum_cohort_size: int = K_ANONYMITY_THRESHOLD
    sensitivity: float = DEFAULT_SENSITIVITY
    mechanism: NoiseMechanism = NoiseMechanism.LAPLACE
    daily_epsilon_limit: Optional[float] = None  # None disables budget accounting

    @classmethod
    def from_env(cls) -> "AggregatorConfig":
        """Create config from environment variables.

        Environment variables:
            SCRIBEGUARD_MIN_COHORT_SIZE: k-anonymity floor (default 10)
            SCRIBEGUARD_DP_SENSITIVITY: Noise sensitivity (default 1.0)
            SCRIBEGUARD_DP_MECHANISM: laplace or gaussian (default laplace)
            SCRIBEGUARD_DAILY_EPSILON_LIMIT: Per-cohort daily budget (unset = off)
        """
        limit = os.getenv("SCRIBEGUARD_DAILY_EPSILON_LIMIT")
        return cls(
            minimum_cohort_size=int(
                os.getenv("SCRIBEGUARD_MIN_COHORT_SIZE", str(K_ANONYMITY_THRESHOLD))
            ),
            sensitivity=float(os.getenv("SCRIBEGUARD_DP_SENSITIVITY", str(DEFAULT_SENSITIVITY))),
            mechanism=NoiseMechanism(os.getenv("SCRIBEGUARD_DP_MECHANISM", "laplace").lower()),
            daily_epsilon_limit=float(limit) if limit else None,
        )


def cohort_fingerprint(cohort_ids: Sequence[str]) -> str:
    """Hashed, order-independent identifier of a cohort."""
    return fingerprint_ids(cohort_ids)


class DifferentialPrivacyAggregator:
    """Computes noisy cohort aggregates that never fall below the k floor."""

    def __init__(
        self,
        repository: MetricsRepository,
        config: Optional[AggregatorConfig] = None,
        sampler: Optional[NoiseSampler] = None,
        ledger: Optional[PrivacyBudgetLedger] = None,
        audit_logger: Optional[AuditLogger] = None,
    ):
        """Initialize aggregator.

        Args:
            repository: Source of raw per-subject metric rows
            config: Privacy settings (defaults to AggregatorConfig())
            sampler: Noise sampler (defaults to a SystemRandom-backed sampler)
            ledger: Budget ledger; built from config.daily_epsilon_limit if unset
            audit_logger: Audit sink for compute and rejection decisions
        """
        self.repository = repository
        self.config = config or AggregatorConfig()
        self.sampler = sampler or NoiseSampler()
        if ledger is None and self.config.daily_epsilon_limit:
            ledger = PrivacyBudgetLedger(self.config.daily_epsilon_limit)
        self.ledger = ledger
        self.audit_logger = audit_logger
        self.enforcer = KAnonymityEnforcer(self.config.minimum_cohort_size)

        logger.info(
            "AGGREGATOR_INITIALIZED",
            extra={
                "minimum_cohort_size": self.config.minimum_cohort_size,
                "mechanism": self.config.mechanism.value,
                "budget_enabled": self.ledger is not None,
            }
        )

    def aggregate(
        self,
        cohort_ids: Sequence[str],
        metrics: Sequence[str],
        epsilon: float,
        delta: float,
        window_days: int = 7,
        privacy_context: Optional[PrivacyContext] = None,
    ) -> AggregateResult:
        """Compute noisy statistics for a cohort.

        Args:
            cohort_ids: Raw subject identifiers (duplicates count once)
            metrics: Metric names to aggregate
            epsilon: Privacy loss parameter for this query (> 0)
            delta: Failure probability (budget metadata for Laplace;
                calibrates sigma for Gaussian)
            window_days: Look-back window for metric rows
            privacy_context: Request context for audit records

        Returns:
            AggregateResult with cohort_size >= minimum_cohort_size

        Raises:
            ValueError: Invalid epsilon/delta for the configured mechanism
            InsufficientCohort: Cohort below the minimum size; no rows fetched
            PrivacyBudgetExceeded: Ledger refuses the spend of epsilon (and
                delta) times NOISY_FIELDS_PER_METRIC times distinct metrics
        """
        validate_privacy_parameters(epsilon, delta, self.config.mechanism)

        distinct_ids = list(dict.fromkeys(cohort_ids))
        cohort_size = len(distinct_ids)
        cohort_hash = cohort_fingerprint(distinct_ids) if distinct_ids else "empty"

        try:
            self.enforcer.require_cohort(cohort_size, context=f"aggregate:{cohort_hash[:12]}")
        except InsufficientCohort:
            self._audit(
                cohort_hash, AuditOutcome.DENIED, privacy_context,
                denial_reason="insufficient_cohort", cohort_size=cohort_size,
            )
            raise

        if self.ledger is not None:
            # Sequential composition over every noised field, charged before
            # the fetch, so metrics later suppressed still count.
            releases = NOISY_FIELDS_PER_METRIC * len(set(metrics))
            try:
                self.ledger.charge(cohort_hash, epsilon * releases, delta * releases)
            except PrivacyBudgetExceeded:
                self._audit(
                    cohort_hash, AuditOutcome.DENIED, privacy_context,
                    denial_reason="privacy_budget_exceeded",
                    cohort_size=cohort_size, epsilon=epsilon * releases, delta=delta * releases,
                )
                raise

        rows = self.repository.fetch_metrics(distinct_ids, list(metrics), window_days)

        # Per metric, one value per subject (averaged if the store returned several)
        members = set(distinct_ids)
        per_subject: Dict[str, Dict[str, List[float]]] = defaultdict(lambda: defaultdict(list))
        for row in rows:
            if row.subject_id in members and row.metric in metrics:
                per_subject[row.metric][row.subject_id].append(row.value)

        statistics = {
            metric: self._noisy_statistics(
                metric, per_subject.get(metric, {}), cohort_size, epsilon, delta
            )
            for metric in metrics
        }

        result = AggregateResult(
            metrics=statistics,
            cohort_size=cohort_size,
            epsilon=epsilon,
            delta=delta,
            sensitivity=self.config.sensitivity,
            mechanism=self.config.mechanism,
            anonymization_method=AnonymizationMethod.K_ANONYMITY_AND_DIFFERENTIAL_PRIVACY,
            window_days=window_days,
        )

        logger.info(
            "AGGREGATE_COMPUTED",
            extra={
                "cohort_hash": cohort_hash[:16],
                "cohort_size": cohort_size,
                "metric_count": len(statistics),
                "suppressed_metrics": sum(1 for s in statistics.values() if s.suppressed),
                "epsilon": epsilon,
                "delta": delta,
                "mechanism": self.config.mechanism.value,
            }
        )
        self._audit(
            cohort_hash, AuditOutcome.SUCCESS, privacy_context,
            cohort_size=cohort_size, epsilon=epsilon, delta=delta,
        )
        return result

    def _noisy_statistics(
        self,
        metric: str,
        subject_values: Dict[str, List[float]],
        cohort_size: int,
        epsilon: float,
        delta: float,
    ) -> MetricStatistics:
        contributors = len(subject_values)
        check = self.enforcer.check_and_suppress(
            subject_values, contributors, context=f"metric:{metric}"
        )
        if check.suppressed:
            return MetricStatistics(
                metric=metric,
                mean=None,
                rate=None,
                count=None,
                suppressed=True,
                suppression_reason=check.suppression_reason,
            )

        values = [sum(v) / len(v) for v in subject_values.values()]
        mean = sum(values) / contributors
        rate = contributors / cohort_size

        return MetricStatistics(
            metric=metric,
            mean=mean + self._noise(epsilon, delta),
            rate=min(1.0, max(0.0, rate + self._noise(epsilon, delta))),
            count=max(0.0, contributors + self._noise(epsilon, delta)),
        )

    def _noise(self, epsilon: float, delta: float) -> float:
        return self.sampler.sample(
            self.config.mechanism, epsilon, delta, self.config.sensitivity
        )

    def _audit(
        self,
        cohort_hash: str,
        outcome: AuditOutcome,
        privacy_context: Optional[PrivacyContext],
        denial_reason: Optional[str] = None,
        **privacy_fields,
    ) -> None:
        if self.audit_logger is None:
            return
        self.audit_logger.log(
            action=AuditAction.AGGREGATE_COMPUTE,
            entity_type=AuditEntity.COHORT,
            entity_id=cohort_hash,
            outcome=outcome,
            privacy_context=privacy_context,
            denial_reason=denial_reason,
            **privacy_fields,
        )
