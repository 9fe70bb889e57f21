"""Privacy-gated analytics request path.

One request runs: context validation -> consent gate -> cache lookup ->
aggregation on miss -> rule evaluation -> alert admission. Privacy outcomes
(consent denied, cohort too small, budget spent) come back as response
statuses, never as exceptions. Infrastructure failures are audited and
then re-raised.
"""
import logging
import os
import threading
import time
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Deque, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from scribeguard.shared.database import ConnectionManager, DatabaseConfig
from scribeguard.shared.errors import InsufficientCohort, PrivacyBudgetExceeded
from scribeguard.shared.models import (
    AggregateResult,
    AggregationLevel,
    InterventionAlert,
    NoiseMechanism,
    PrivacyContext,
    QueryShape,
)
from scribeguard.shared.utils import hash_pii
from scribeguard.services.alert_engine import (
    AlertEngineConfig,
    EscalationEngine,
    KinesisNotificationSink,
    LoggingNotificationSink,
    NotificationDispatcher,
)
from scribeguard.services.analytics_service import (
    AggregatorConfig,
    CacheConfig,
    DifferentialPrivacyAggregator,
    InMemoryMetricsRepository,
    PostgresMetricsRepository,
    PrivacyTieredCache,
    cohort_fingerprint,
    derive_cache_key,
    validate_privacy_parameters,
)
from scribeguard.services.audit_service import (
    AuditAction,
    AuditEntity,
    AuditLogger,
    AuditOutcome,
    AuditRepository,
)
from scribeguard.services.consent_service import (
    ConsentGate,
    ConsentPurpose,
    ConsentRequest,
    InMemoryConsentStore,
)
from scribeguard.services.intervention_service import InterventionRuleEvaluator

logger = logging.getLogger(__name__)

DEFAULT_LATENCY_BUDGET_MS = 50.0


class ResponseStatus(Enum):
    OK = "ok"
    CONSENT_DENIED = "consent_denied"
    INSUFFICIENT_COHORT = "insufficient_cohort"
    BUDGET_EXCEEDED = "budget_exceeded"
    ERROR = "error"  # batch elements only; single requests raise


@dataclass(frozen=True)
class AnalyticsQuery:
    """What is being asked, independent of who is asking.

    Attributes:
        subject_id: Subject whose consent governs the request and whom
            resulting alerts describe
        cohort_ids: Raw ids of the subjects to aggregate over
        metrics: Metric names to aggregate
        purposes: Consent purposes the request relies on
        epsilon: Privacy loss for this query
        delta: Failure probability (budget metadata under Laplace)
        window_days: Look-back window for metric rows
        aggregation_level: Granularity, part of the cache key
    """
    subject_id: str
    cohort_ids: Tuple[str, ...]
    metrics: Tuple[str, ...]
    purposes: Tuple[ConsentPurpose, ...] = (ConsentPurpose.ANALYTICS, ConsentPurpose.EDUCATIONAL)
    epsilon: float = 1.0
    delta: float = 1e-5
    window_days: int = 7
    aggregation_level: AggregationLevel = AggregationLevel.CLASS

    def shape(self, mechanism: NoiseMechanism = NoiseMechanism.LAPLACE) -> QueryShape:
        """Cache-key shape, including the privacy parameters of the release."""
        return QueryShape(
            metrics=tuple(self.metrics),
            window_days=self.window_days,
            aggregation_level=self.aggregation_level,
            epsilon=self.epsilon,
            delta=self.delta,
            mechanism=mechanism,
        )


@dataclass(frozen=True)
class AnalyticsResponse:
    """Result of one analytics request.

    Only OK responses carry an aggregate. Alerts are raised only when the
    aggregate was freshly computed.
    """
    status: ResponseStatus
    correlation_id: str
    aggregate: Optional[AggregateResult] = None
    alerts: Tuple[InterventionAlert, ...] = ()
    served_from_cache: bool = False
    excluded_subjects: int = 0
    duration_ms: float = 0.0
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == ResponseStatus.OK


@dataclass(frozen=True)
class PipelineConfig:
    """Request path settings."""
    latency_budget_ms: float = DEFAULT_LATENCY_BUDGET_MS
    trend_history_size: int = 1024
    latency_sample_size: int = 1000

    @classmethod
    def from_env(cls) -> "PipelineConfig":
        """Create config from environment variables.

        Environment variables:
            SCRIBEGUARD_LATENCY_BUDGET_MS: Per-request latency target (default 50)
            SCRIBEGUARD_TREND_HISTORY_SIZE: Aggregates kept for trend derivation
        """
        return cls(
            latency_budget_ms=float(
                os.getenv("SCRIBEGUARD_LATENCY_BUDGET_MS", str(DEFAULT_LATENCY_BUDGET_MS))
            ),
            trend_history_size=int(os.getenv("SCRIBEGUARD_TREND_HISTORY_SIZE", "1024")),
        )


@dataclass
class _LatencyStats:
    samples: Deque[float]
    requests: int = 0
    over_budget: int = 0
    by_status: Dict[str, int] = field(default_factory=dict)


class AnalyticsPipeline:
    """Entry point for analytics requests and alert operations."""

    def __init__(
        self,
        consent_gate: ConsentGate,
        cache: PrivacyTieredCache,
        aggregator: DifferentialPrivacyAggregator,
        evaluator: InterventionRuleEvaluator,
        engine: EscalationEngine,
        audit_logger: AuditLogger,
        config: Optional[PipelineConfig] = None,
    ):
        self.consent_gate = consent_gate
        self.cache = cache
        self.aggregator = aggregator
        self.evaluator = evaluator
        self.engine = engine
        self.audit_logger = audit_logger
        self.config = config or PipelineConfig()

        self._lock = threading.Lock()
        self._previous: "OrderedDict[str, AggregateResult]" = OrderedDict()
        self._latency = _LatencyStats(samples=deque(maxlen=self.config.latency_sample_size))

        logger.info(
            "ANALYTICS_PIPELINE_INITIALIZED",
            extra={"latency_budget_ms": self.config.latency_budget_ms}
        )

    @classmethod
    def from_config(cls) -> "AnalyticsPipeline":
        """Wire a pipeline from environment variables.

        PostgreSQL backs the metrics and audit stores when DB_HOST or DB_SECRET_ARN is set,
        and notifications go to Kinesis when KINESIS_STREAM_NAME is set.
        Otherwise in-memory and logging implementations are used.
        """
        connection_manager = None
        if os.getenv("DB_HOST") or os.getenv("DB_SECRET_ARN"):
            connection_manager = ConnectionManager(DatabaseConfig.load())

        audit_logger = AuditLogger(AuditRepository(connection_manager))
        repository = (
            PostgresMetricsRepository(connection_manager)
            if connection_manager is not None else InMemoryMetricsRepository()
        )

        stream_name = os.getenv("KINESIS_STREAM_NAME")
        sink = KinesisNotificationSink(stream_name) if stream_name else LoggingNotificationSink()
        engine_config = AlertEngineConfig.from_env()

        return cls(
            consent_gate=ConsentGate(InMemoryConsentStore()),
            cache=PrivacyTieredCache(CacheConfig.from_env()),
            aggregator=DifferentialPrivacyAggregator(
                repository,
                config=AggregatorConfig.from_env(),
                audit_logger=audit_logger,
            ),
            evaluator=InterventionRuleEvaluator(),
            engine=EscalationEngine(
                config=engine_config,
                dispatcher=NotificationDispatcher(sink, max_workers=engine_config.notification_workers),
                audit_logger=audit_logger,
            ),
            audit_logger=audit_logger,
            config=PipelineConfig.from_env(),
        )

    # ------------------------------------------------------------------
    # Request path
    # ------------------------------------------------------------------

    def request_analytics(
        self,
        privacy_context: Union[PrivacyContext, Mapping[str, Any]],
        query: AnalyticsQuery,
    ) -> AnalyticsResponse:
        """Serve one analytics request.

        Args:
            privacy_context: Validated context, or a mapping to validate
            query: What to aggregate

        Returns:
            AnalyticsResponse; denials and insufficient cohorts are statuses

        Raises:
            InvalidPrivacyContext: Context is incomplete (no side effects)
            ValueError: Invalid epsilon/delta (no side effects)
            Exception: Store failures, after an error audit entry
        """
        if not isinstance(privacy_context, PrivacyContext):
            privacy_context = PrivacyContext.from_dict(privacy_context)
        validate_privacy_parameters(query.epsilon, query.delta, self.aggregator.config.mechanism)

        start = time.perf_counter()
        try:
            response = self._serve(privacy_context, query, start)
        except Exception as e:
            self._record_failure(privacy_context, query, e)
            raise

        self._record_latency(response)
        return response

    def _serve(self, context: PrivacyContext, query: AnalyticsQuery, start: float) -> AnalyticsResponse:
        subject_hash = hash_pii(query.subject_id)

        # Consent first: nothing is read unless the subject agreed
        if not self.consent_gate.check_consent(query.subject_id, query.purposes):
            self._audit(
                AuditAction.CONSENT_CHECK, AuditEntity.STUDENT, subject_hash, context,
                outcome=AuditOutcome.DENIED,
                denial_reason="consent_not_granted",
                detail="+".join(p.label for p in query.purposes),
            )
            return self._respond(ResponseStatus.CONSENT_DENIED, context, start, reason="consent_not_granted")

        self._audit(AuditAction.CONSENT_CHECK, AuditEntity.STUDENT, subject_hash, context)

        cohort_ids, excluded = self._consenting_members(query)

        key = derive_cache_key(cohort_ids, query.shape(self.aggregator.config.mechanism))
        cached, found = self.cache.get(key, context.privacy_tier)
        cohort_hash = cohort_fingerprint(cohort_ids) if cohort_ids else "empty"
        if found:
            self._audit(
                AuditAction.CACHE_HIT, AuditEntity.AGGREGATE, cohort_hash, context,
                cohort_size=cached.cohort_size,
            )
            return self._respond(
                ResponseStatus.OK, context, start,
                aggregate=cached, served_from_cache=True, excluded=excluded,
            )

        self._audit(AuditAction.CACHE_MISS, AuditEntity.AGGREGATE, cohort_hash, context)

        try:
            aggregate = self.aggregator.aggregate(
                cohort_ids,
                list(query.metrics),
                query.epsilon,
                query.delta,
                window_days=query.window_days,
                privacy_context=context,
            )
        except InsufficientCohort as e:
            return self._respond(
                ResponseStatus.INSUFFICIENT_COHORT, context, start,
                excluded=excluded, reason=str(e),
            )
        except PrivacyBudgetExceeded as e:
            return self._respond(
                ResponseStatus.BUDGET_EXCEEDED, context, start,
                excluded=excluded, reason=str(e),
            )

        self.cache.set(key, aggregate, context.privacy_tier)
        previous = self._swap_previous(key, aggregate)

        drafts = self.evaluator.evaluate(
            query.subject_id,
            aggregate,
            previous=previous,
            privacy_tier=context.privacy_tier,
        )
        self._audit(
            AuditAction.RULES_EVALUATED, AuditEntity.AGGREGATE, cohort_hash, context,
            cohort_size=aggregate.cohort_size,
            detail=f"drafts={len(drafts)}",
        )
        alerts = tuple(self.engine.admit(draft, context) for draft in drafts)

        return self._respond(
            ResponseStatus.OK, context, start,
            aggregate=aggregate, alerts=alerts, excluded=excluded,
        )

    def _consenting_members(self, query: AnalyticsQuery) -> Tuple[List[str], int]:
        """Drop cohort members without consent for the query's purposes."""
        members = list(dict.fromkeys(query.cohort_ids))
        if not members:
            return [], 0
        decisions = self.consent_gate.check_consent_batch(
            [ConsentRequest(subject_id=m, purposes=tuple(query.purposes)) for m in members]
        )
        consenting = [m for m, granted in zip(members, decisions) if granted]
        excluded = len(members) - len(consenting)
        if excluded:
            logger.info(
                "COHORT_MEMBERS_EXCLUDED",
                extra={"excluded": excluded, "remaining": len(consenting)}
            )
        return consenting, excluded

    def _swap_previous(self, key: str, aggregate: AggregateResult) -> Optional[AggregateResult]:
        with self._lock:
            previous = self._previous.pop(key, None)
            self._previous[key] = aggregate
            while len(self._previous) > self.config.trend_history_size:
                self._previous.popitem(last=False)
        return previous

    def _respond(
        self,
        status: ResponseStatus,
        context: PrivacyContext,
        start: float,
        aggregate: Optional[AggregateResult] = None,
        alerts: Tuple[InterventionAlert, ...] = (),
        served_from_cache: bool = False,
        excluded: int = 0,
        reason: Optional[str] = None,
    ) -> AnalyticsResponse:
        duration_ms = round((time.perf_counter() - start) * 1000, 3)
        response = AnalyticsResponse(
            status=status,
            correlation_id=context.correlation_id,
            aggregate=aggregate,
            alerts=alerts,
            served_from_cache=served_from_cache,
            excluded_subjects=excluded,
            duration_ms=duration_ms,
            reason=reason,
        )
        if status == ResponseStatus.OK:
            self._audit(
                AuditAction.ANALYTICS_REQUEST, AuditEntity.AGGREGATE,
                context.correlation_id, context,
                cohort_size=aggregate.cohort_size,
                epsilon=aggregate.epsilon,
                delta=aggregate.delta,
                detail="cache_hit" if served_from_cache else f"alerts={len(alerts)}",
            )
        logger.info(
            "ANALYTICS_REQUEST_COMPLETED",
            extra={
                "correlation_id": context.correlation_id,
                "status": status.value,
                "served_from_cache": served_from_cache,
                "alert_count": len(alerts),
                "duration_ms": duration_ms,
            }
        )
        return response

    def _record_failure(self, context: PrivacyContext, query: AnalyticsQuery, error: Exception) -> None:
        logger.error(
            "ANALYTICS_REQUEST_FAILED",
            extra={
                "correlation_id": context.correlation_id,
                "subject_id_hash": hash_pii(query.subject_id),
                "error": str(error),
                "error_type": type(error).__name__,
            }
        )
        self._audit(
            AuditAction.ANALYTICS_REQUEST, AuditEntity.AGGREGATE, context.correlation_id, context,
            outcome=AuditOutcome.ERROR,
            denial_reason=type(error).__name__,
        )

    def _record_latency(self, response: AnalyticsResponse) -> None:
        over_budget = response.duration_ms > self.config.latency_budget_ms
        with self._lock:
            stats = self._latency
            stats.requests += 1
            stats.samples.append(response.duration_ms)
            stats.by_status[response.status.value] = stats.by_status.get(response.status.value, 0) + 1
            if over_budget:
                stats.over_budget += 1
        if over_budget:
            logger.warning(
                "ANALYTICS_LATENCY_BUDGET_EXCEEDED",
                extra={
                    "correlation_id": response.correlation_id,
                    "duration_ms": response.duration_ms,
                    "budget_ms": self.config.latency_budget_ms,
                }
            )

    def request_analytics_batch(
        self,
        requests: Sequence[Tuple[Union[PrivacyContext, Mapping[str, Any]], AnalyticsQuery]],
    ) -> List[AnalyticsResponse]:
        """Serve several requests; one failing request never aborts the rest.

        A request that would raise from request_analytics yields an ERROR
        response instead.
        """
        responses = []
        for context, query in requests:
            try:
                responses.append(self.request_analytics(context, query))
            except Exception as e:
                correlation_id = getattr(context, "correlation_id", None) or (
                    context.get("correlation_id", "") if isinstance(context, Mapping) else ""
                )
                logger.error(
                    "ANALYTICS_BATCH_ELEMENT_FAILED",
                    extra={"error": str(e), "error_type": type(e).__name__}
                )
                responses.append(AnalyticsResponse(
                    status=ResponseStatus.ERROR,
                    correlation_id=correlation_id,
                    reason=type(e).__name__,
                ))
        return responses

    # ------------------------------------------------------------------
    # Alert operations
    # ------------------------------------------------------------------

    def acknowledge_alert(self, alert_id: str, actor_id: str) -> InterventionAlert:
        return self.engine.acknowledge(alert_id, actor_id)

    def resolve_alert(self, alert_id: str, actor_id: str, resolution: str = "") -> InterventionAlert:
        return self.engine.resolve(alert_id, actor_id, resolution)

    def dismiss_alert(self, alert_id: str, actor_id: str, reason: Optional[str] = None) -> InterventionAlert:
        return self.engine.dismiss(alert_id, actor_id, reason)

    def get_alert_stats(self) -> Dict[str, Any]:
        return self.engine.get_alert_stats()

    def get_performance_stats(self) -> Dict[str, Any]:
        """Latency and component statistics for the request path."""
        with self._lock:
            samples = sorted(self._latency.samples)
            requests = self._latency.requests
            over_budget = self._latency.over_budget
            by_status = dict(self._latency.by_status)

        def percentile(p: float) -> float:
            if not samples:
                return 0.0
            return samples[min(len(samples) - 1, int(p * len(samples)))]

        return {
            "requests": requests,
            "by_status": by_status,
            "latency_budget_ms": self.config.latency_budget_ms,
            "over_budget": over_budget,
            "mean_ms": round(sum(samples) / len(samples), 3) if samples else 0.0,
            "p50_ms": percentile(0.50),
            "p95_ms": percentile(0.95),
            "max_ms": samples[-1] if samples else 0.0,
            "cache": self.cache.stats(),
            "consent": self.consent_gate.stats(),
            "audit_pending": self.audit_logger.pending_count,
        }

    def shutdown(self) -> None:
        self.engine.shutdown()

    def _audit(
        self,
        action: AuditAction,
        entity_type: AuditEntity,
        entity_id: str,
        context: PrivacyContext,
        outcome: AuditOutcome = AuditOutcome.SUCCESS,
        denial_reason: Optional[str] = None,
        **privacy_fields,
    ) -> None:
        self.audit_logger.log(
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            outcome=outcome,
            privacy_context=context,
            denial_reason=denial_reason,
            **privacy_fields,
        )
