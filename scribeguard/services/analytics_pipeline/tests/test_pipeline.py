"""Tests for the privacy-gated analytics request path."""
import logging
from unittest.mock import MagicMock

import pytest

from scribeguard.shared.errors import InvalidPrivacyContext
from scribeguard.shared.models import (
    AlertSeverity,
    AlertStatus,
    PrivacyContext,
    PrivacyTier,
    RequesterRole,
    Trend,
)
from scribeguard.shared.utils import configure_pii_salt
from scribeguard.services.alert_engine import (
    EscalationEngine,
    LoggingNotificationSink,
    NotificationDispatcher,
)
from scribeguard.services.analytics_service import (
    AggregatorConfig,
    CacheConfig,
    DifferentialPrivacyAggregator,
    InMemoryMetricsRepository,
    NoiseSampler,
    PrivacyTieredCache,
)
from scribeguard.services.audit_service import AuditAction, AuditLogger, AuditOutcome
from scribeguard.services.consent_service import ConsentGate, ConsentPurpose, InMemoryConsentStore
from scribeguard.services.intervention_service import InterventionRuleEvaluator
from scribeguard.services.analytics_pipeline.pipeline import (
    AnalyticsPipeline,
    AnalyticsQuery,
    PipelineConfig,
    ResponseStatus,
)


@pytest.fixture(autouse=True)
def setup_pii_salt():
    configure_pii_salt("test_salt_that_is_at_least_32_characters_long")


class ZeroNoiseSampler(NoiseSampler):
    def sample(self, mechanism, epsilon, delta, sensitivity=1.0):
        super().sample(mechanism, epsilon, delta, sensitivity)
        return 0.0


class NullScheduler:
    def schedule(self, delay_seconds, callback):
        return MagicMock()


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def students(count, prefix="student"):
    return tuple(f"{prefix}_{i}" for i in range(count))


CONSENTED = (ConsentPurpose.ANALYTICS, ConsentPurpose.EDUCATIONAL)


@pytest.fixture
def consent_store():
    store = InMemoryConsentStore()
    for subject in students(15):
        store.record_consent(subject, CONSENTED)
    return store


@pytest.fixture
def repository():
    repo = InMemoryMetricsRepository()
    repo.add_many(students(15), "productivity", 0.2)
    repo.add_many(students(15), "days_since_last_submission", 5)
    return repo


@pytest.fixture
def audit():
    return AuditLogger()


@pytest.fixture
def clock():
    return FakeClock()


def build_pipeline(consent_store, repository, audit, clock, aggregator_config=None, config=None):
    engine = EscalationEngine(
        dispatcher=NotificationDispatcher(LoggingNotificationSink(), max_workers=1),
        scheduler=NullScheduler(),
        audit_logger=audit,
    )
    return AnalyticsPipeline(
        consent_gate=ConsentGate(consent_store),
        cache=PrivacyTieredCache(CacheConfig(), clock=clock),
        aggregator=DifferentialPrivacyAggregator(
            repository,
            config=aggregator_config,
            sampler=ZeroNoiseSampler(),
            audit_logger=audit,
        ),
        evaluator=InterventionRuleEvaluator(),
        engine=engine,
        audit_logger=audit,
        config=config,
    )


@pytest.fixture
def pipeline(consent_store, repository, audit, clock):
    p = build_pipeline(consent_store, repository, audit, clock)
    yield p
    p.shutdown()


@pytest.fixture
def context():
    return PrivacyContext(
        requester_id="educator_1",
        requester_role=RequesterRole.EDUCATOR,
        purpose="writing_support",
        privacy_tier=PrivacyTier.CONFIDENTIAL,
    )


def make_query(cohort=None, metrics=("productivity",), subject_id="student_0", **kwargs):
    return AnalyticsQuery(
        subject_id=subject_id,
        cohort_ids=students(15) if cohort is None else cohort,
        metrics=metrics,
        **kwargs,
    )


class TestConsent:
    """Tests for the consent step."""

    def test_denied_subject_fetches_nothing_and_audits_once(self, pipeline, repository, audit, context):
        response = pipeline.request_analytics(context, make_query(subject_id="student_99"))

        assert response.status == ResponseStatus.CONSENT_DENIED
        assert response.aggregate is None
        assert response.alerts == ()
        assert repository.fetch_count == 0
        denied = audit.query(outcome=AuditOutcome.DENIED)
        assert len(denied) == 1
        assert denied[0].action == AuditAction.CONSENT_CHECK

    def test_missing_purpose_denies(self, pipeline, consent_store, repository, context):
        consent_store.revoke_consent("student_0", [ConsentPurpose.EDUCATIONAL])

        response = pipeline.request_analytics(context, make_query())

        assert response.status == ResponseStatus.CONSENT_DENIED
        assert repository.fetch_count == 0

    def test_non_consenting_members_are_excluded(self, pipeline, consent_store, repository, context):
        extra = students(3, prefix="guest")
        repository.add_many(extra, "productivity", 0.9)

        response = pipeline.request_analytics(context, make_query(cohort=students(15) + extra))

        assert response.ok
        assert response.excluded_subjects == 3
        assert response.aggregate.cohort_size == 15
        assert response.aggregate.statistic("productivity") == pytest.approx(0.2)

    def test_exclusion_can_drop_cohort_below_floor(self, pipeline, consent_store, repository, context):
        for subject in students(15)[9:]:
            consent_store.revoke_consent(subject, [ConsentPurpose.ANALYTICS])

        response = pipeline.request_analytics(context, make_query())

        assert response.status == ResponseStatus.INSUFFICIENT_COHORT
        assert response.excluded_subjects == 6
        assert response.aggregate is None
        assert repository.fetch_count == 0


class TestValidation:
    """Tests for checks that run before any side effect."""

    def test_invalid_context_mapping_raises(self, pipeline, audit):
        with pytest.raises(InvalidPrivacyContext):
            pipeline.request_analytics(
                {"requester_id": "educator_1", "requester_role": "educator"},
                make_query(),
            )

        assert audit.query() == []

    def test_context_mapping_accepted(self, pipeline):
        response = pipeline.request_analytics(
            {"requester_id": "educator_1", "requester_role": "educator", "purpose": "support"},
            make_query(),
        )

        assert response.ok

    def test_invalid_epsilon_raises(self, pipeline, audit, context):
        with pytest.raises(ValueError):
            pipeline.request_analytics(context, make_query(epsilon=0))

        assert audit.query() == []


class TestAggregation:
    """Tests for cache, aggregation and alerting."""

    def test_fresh_request_computes_and_raises_alerts(self, pipeline, repository, context):
        response = pipeline.request_analytics(context, make_query())

        assert response.ok
        assert response.served_from_cache is False
        assert response.aggregate.cohort_size == 15
        assert repository.fetch_count == 1
        assert len(response.alerts) == 1
        alert = response.alerts[0]
        assert alert.alert_type == "productivity"
        assert alert.severity == AlertSeverity.CRITICAL
        assert alert.status == AlertStatus.PENDING
        assert alert.correlation_id == context.correlation_id

    def test_one_aggregate_can_raise_several_alerts(self, pipeline, context):
        response = pipeline.request_analytics(
            context, make_query(metrics=("productivity", "days_since_last_submission"))
        )

        assert sorted(a.alert_type for a in response.alerts) == ["procrastination", "productivity"]

    def test_second_request_served_from_cache(self, pipeline, repository, context):
        first = pipeline.request_analytics(context, make_query())
        second = pipeline.request_analytics(context, make_query())

        assert second.served_from_cache is True
        assert second.aggregate is first.aggregate
        assert second.alerts == ()
        assert repository.fetch_count == 1

    def test_cache_entry_expires_by_tier(self, pipeline, repository, context, clock):
        pipeline.request_analytics(context, make_query())
        clock.now += 15 * 60

        response = pipeline.request_analytics(context, make_query())

        assert response.served_from_cache is False
        assert repository.fetch_count == 2

    def test_cached_aggregate_not_served_for_stricter_epsilon(self, pipeline, repository, context):
        loose = pipeline.request_analytics(context, make_query(epsilon=10.0))
        strict = pipeline.request_analytics(context, make_query(epsilon=0.1))

        assert loose.aggregate.epsilon == 10.0
        assert strict.served_from_cache is False
        assert strict.aggregate.epsilon == 0.1
        assert repository.fetch_count == 2

    def test_restricted_reader_not_served_older_public_aggregate(self, pipeline, repository, clock):
        public = PrivacyContext(
            requester_id="educator_1",
            requester_role=RequesterRole.EDUCATOR,
            purpose="writing_support",
            privacy_tier=PrivacyTier.PUBLIC,
        )
        restricted = PrivacyContext(
            requester_id="admin_1",
            requester_role=RequesterRole.ADMIN,
            purpose="writing_support",
            privacy_tier=PrivacyTier.RESTRICTED,
        )

        pipeline.request_analytics(public, make_query())
        clock.now += 20 * 60
        response = pipeline.request_analytics(restricted, make_query())

        assert response.served_from_cache is False
        assert repository.fetch_count == 2

    def test_trend_uses_previous_aggregate(self, pipeline, context, clock):
        query = make_query(metrics=("days_since_last_submission",))

        first = pipeline.request_analytics(context, query)
        clock.now += 15 * 60
        second = pipeline.request_analytics(context, query)

        assert first.alerts[0].snapshot.trend == Trend.DECLINING
        assert second.alerts[0].snapshot.trend == Trend.STABLE

    def test_insufficient_cohort_is_a_status(self, pipeline, repository, audit, context):
        response = pipeline.request_analytics(context, make_query(cohort=students(9)))

        assert response.status == ResponseStatus.INSUFFICIENT_COHORT
        assert response.aggregate is None
        assert "9" in response.reason
        assert repository.fetch_count == 0
        rejected = audit.query(action=AuditAction.AGGREGATE_COMPUTE, outcome=AuditOutcome.DENIED)
        assert len(rejected) == 1

    def test_budget_exceeded_is_a_status(self, consent_store, repository, audit, clock, context):
        pipeline = build_pipeline(
            consent_store, repository, audit, clock,
            aggregator_config=AggregatorConfig(daily_epsilon_limit=3.0),
        )

        # 0.8 per noised field, three fields per metric: 2.4 of 3.0
        first = pipeline.request_analytics(context, make_query(epsilon=0.8))
        second = pipeline.request_analytics(
            context, make_query(metrics=("days_since_last_submission",), epsilon=0.8)
        )

        assert first.ok
        assert second.status == ResponseStatus.BUDGET_EXCEEDED
        pipeline.shutdown()

    def test_every_step_is_audited(self, pipeline, audit, context):
        pipeline.request_analytics(context, make_query())
        pipeline.request_analytics(context, make_query())

        actions = [e.action for e in audit.query()]
        assert AuditAction.CONSENT_CHECK in actions
        assert AuditAction.CACHE_MISS in actions
        assert AuditAction.AGGREGATE_COMPUTE in actions
        assert AuditAction.RULES_EVALUATED in actions
        assert AuditAction.ALERT_ADMITTED in actions
        assert AuditAction.CACHE_HIT in actions
        assert actions.count(AuditAction.ANALYTICS_REQUEST) == 2
        assert audit.verify_chain()

    def test_store_failure_is_audited_and_raised(self, consent_store, audit, clock, context):
        repository = MagicMock()
        repository.fetch_metrics.side_effect = ConnectionError("metrics store unavailable")
        pipeline = build_pipeline(consent_store, repository, audit, clock)

        with pytest.raises(ConnectionError):
            pipeline.request_analytics(context, make_query())

        errors = audit.query(action=AuditAction.ANALYTICS_REQUEST, outcome=AuditOutcome.ERROR)
        assert len(errors) == 1
        assert errors[0].denial_reason == "ConnectionError"
        pipeline.shutdown()


class TestBatchAndOperations:
    """Tests for batch requests, alert operations and statistics."""

    def test_batch_isolates_failures(self, pipeline, context):
        responses = pipeline.request_analytics_batch([
            ({"requester_id": "educator_1", "requester_role": "robot", "purpose": "x"}, make_query()),
            (context, make_query()),
            (context, make_query(subject_id="student_99")),
        ])

        assert [r.status for r in responses] == [
            ResponseStatus.ERROR,
            ResponseStatus.OK,
            ResponseStatus.CONSENT_DENIED,
        ]
        assert responses[0].reason == "InvalidPrivacyContext"

    def test_alert_operations_delegate_to_engine(self, pipeline, context):
        alert = pipeline.request_analytics(context, make_query()).alerts[0]

        acked = pipeline.acknowledge_alert(alert.alert_id, "officer_1")
        resolved = pipeline.resolve_alert(alert.alert_id, "officer_1", "Extension granted")

        assert acked.status == AlertStatus.ACKNOWLEDGED
        assert resolved.status == AlertStatus.RESOLVED
        assert pipeline.get_alert_stats()["resolved"] == 1

    def test_dismiss_alert(self, pipeline, context):
        alert = pipeline.request_analytics(context, make_query()).alerts[0]

        dismissed = pipeline.dismiss_alert(alert.alert_id, "officer_1", reason="Known absence")

        assert dismissed.status == AlertStatus.DISMISSED

    def test_performance_stats(self, pipeline, context):
        pipeline.request_analytics(context, make_query())
        pipeline.request_analytics(context, make_query())
        pipeline.request_analytics(context, make_query(subject_id="student_99"))

        stats = pipeline.get_performance_stats()

        assert stats["requests"] == 3
        assert stats["by_status"] == {"ok": 2, "consent_denied": 1}
        assert stats["cache"]["hits"] == 1
        assert stats["max_ms"] >= stats["p50_ms"]

    def test_latency_budget_warning(self, consent_store, repository, audit, clock, context, caplog):
        pipeline = build_pipeline(
            consent_store, repository, audit, clock,
            config=PipelineConfig(latency_budget_ms=0.0),
        )

        with caplog.at_level(logging.WARNING):
            pipeline.request_analytics(context, make_query())

        assert any(r.getMessage() == "ANALYTICS_LATENCY_BUDGET_EXCEEDED" for r in caplog.records)
        assert pipeline.get_performance_stats()["over_budget"] == 1
        pipeline.shutdown()


class TestPipelineConfig:
    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("SCRIBEGUARD_LATENCY_BUDGET_MS", "75")

        config = PipelineConfig.from_env()

        assert config.latency_budget_ms == 75.0

    def test_from_config_wires_in_memory_graph(self, monkeypatch):
        monkeypatch.delenv("DB_HOST", raising=False)
        monkeypatch.delenv("DB_SECRET_ARN", raising=False)
        monkeypatch.delenv("KINESIS_STREAM_NAME", raising=False)

        pipeline = AnalyticsPipeline.from_config()

        assert isinstance(pipeline.aggregator.repository, InMemoryMetricsRepository)
        assert isinstance(pipeline.engine.dispatcher.sink, LoggingNotificationSink)
        pipeline.shutdown()
