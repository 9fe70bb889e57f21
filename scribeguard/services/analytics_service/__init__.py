"""Analytics Service: privacy-preserving cohort aggregates.

Per-metric statistics are published only under k-anonymity (cohort floor
of 10, per-metric suppression) and differential-privacy noise, and cached
with a freshness chosen by privacy tier.

This service provides:
- DifferentialPrivacyAggregator: noisy mean/rate/count per metric
- PrivacyTieredCache: TTL cache keyed by hashed ids and query shape
- KAnonymityEnforcer: cohort floor and per-metric suppression
- Metrics repositories: in-memory and PostgreSQL rows for the aggregator
"""

from .aggregator import AggregatorConfig, DifferentialPrivacyAggregator, cohort_fingerprint
from .differential_privacy import (
    NoiseSampler,
    PrivacyBudgetLedger,
    noise_scale,
    validate_privacy_parameters,
)
from .k_anonymity import K_ANONYMITY_THRESHOLD, KAnonymityEnforcer, SuppressionResult
from .metrics_repository import (
    InMemoryMetricsRepository,
    MetricsRepository,
    PostgresMetricsRepository,
)
from .privacy_cache import CacheConfig, CacheEntry, PrivacyTieredCache, derive_cache_key

__all__ = [
    "AggregatorConfig",
    "DifferentialPrivacyAggregator",
    "cohort_fingerprint",
    "NoiseSampler",
    "PrivacyBudgetLedger",
    "noise_scale",
    "validate_privacy_parameters",
    "K_ANONYMITY_THRESHOLD",
    "KAnonymityEnforcer",
    "SuppressionResult",
    "InMemoryMetricsRepository",
    "MetricsRepository",
    "PostgresMetricsRepository",
    "CacheConfig",
    "CacheEntry",
    "PrivacyTieredCache",
    "derive_cache_key",
]
