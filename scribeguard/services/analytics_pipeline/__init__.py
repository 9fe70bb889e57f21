"""Analytics Pipeline: the privacy-gated request path.

Ties the consent gate, privacy-tiered cache, differential-privacy
aggregator, rule evaluator and escalation engine together, auditing
every step.

This service provides:
- AnalyticsPipeline: request_analytics and alert operations
- AnalyticsQuery / AnalyticsResponse / ResponseStatus: request and result types
"""

from .pipeline import (
    AnalyticsPipeline,
    AnalyticsQuery,
    AnalyticsResponse,
    PipelineConfig,
    ResponseStatus,
)

__all__ = [
    "AnalyticsPipeline",
    "AnalyticsQuery",
    "AnalyticsResponse",
    "PipelineConfig",
    "ResponseStatus",
]
