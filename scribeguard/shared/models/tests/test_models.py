"""Tests for shared domain models."""
from datetime import datetime

import pytest

from scribeguard.shared.errors import InvalidPrivacyContext
from scribeguard.shared.models import (
    AggregateResult,
    AggregationLevel,
    AlertSeverity,
    AlertStatus,
    AnonymizationMethod,
    InterventionAlert,
    MetricStatistics,
    NoiseMechanism,
    PrivacyContext,
    PrivacyTier,
    QueryShape,
    RemediationDescriptor,
    RemediationType,
    RequesterRole,
)
from scribeguard.shared.utils import configure_pii_salt


@pytest.fixture(autouse=True)
def setup_pii_salt():
    configure_pii_salt("test_salt_that_is_at_least_32_characters_long")


class TestPrivacyContext:
    """Tests for PrivacyContext validation."""

    def test_valid_context_gets_correlation_id(self):
        context = PrivacyContext(
            requester_id="educator_1",
            requester_role=RequesterRole.EDUCATOR,
            purpose="writing_support",
        )

        assert context.privacy_tier == PrivacyTier.RESTRICTED
        assert context.correlation_id.startswith("corr_")

    @pytest.mark.parametrize("field,value", [
        ("requester_id", ""),
        ("requester_id", "   "),
        ("purpose", ""),
        ("requester_role", "educator"),
    ])
    def test_missing_fields_rejected(self, field, value):
        kwargs = {
            "requester_id": "educator_1",
            "requester_role": RequesterRole.EDUCATOR,
            "purpose": "writing_support",
        }
        kwargs[field] = value

        with pytest.raises(InvalidPrivacyContext):
            PrivacyContext(**kwargs)

    def test_invalid_context_is_value_error(self):
        with pytest.raises(ValueError):
            PrivacyContext(requester_id="", requester_role=RequesterRole.ADMIN, purpose="x")

    def test_from_dict_parses_role_and_tier(self):
        context = PrivacyContext.from_dict({
            "requester_id": "educator_1",
            "requester_role": "EDUCATOR",
            "purpose": "writing_support",
            "privacy_tier": "internal",
            "correlation_id": "corr_fixed",
        })

        assert context.requester_role == RequesterRole.EDUCATOR
        assert context.privacy_tier == PrivacyTier.INTERNAL
        assert context.correlation_id == "corr_fixed"

    def test_from_dict_unknown_role(self):
        with pytest.raises(InvalidPrivacyContext):
            PrivacyContext.from_dict({
                "requester_id": "educator_1",
                "requester_role": "parent",
                "purpose": "writing_support",
            })


class TestPrivacyTier:
    def test_unknown_tier_is_restricted(self):
        assert PrivacyTier.parse(None) == PrivacyTier.RESTRICTED
        assert PrivacyTier.parse("top-secret") == PrivacyTier.RESTRICTED

    def test_sensitivity_order(self):
        ranks = [t.sensitivity for t in (
            PrivacyTier.PUBLIC, PrivacyTier.INTERNAL,
            PrivacyTier.CONFIDENTIAL, PrivacyTier.RESTRICTED,
        )]

        assert ranks == [0, 1, 2, 3]

    def test_hashing_required_for_shared_tiers(self):
        assert PrivacyTier.PUBLIC.requires_subject_hashing
        assert PrivacyTier.INTERNAL.requires_subject_hashing
        assert not PrivacyTier.RESTRICTED.requires_subject_hashing


class TestAnalyticsModels:
    def test_query_shape_fingerprint_ignores_metric_order(self):
        a = QueryShape(metrics=("quality", "productivity"), window_days=14)
        b = QueryShape(metrics=("productivity", "quality"), window_days=14)

        assert a.fingerprint() == b.fingerprint()
        assert a.fingerprint() != QueryShape(metrics=("quality",), window_days=14).fingerprint()
        assert AggregationLevel.CLASS.value in a.fingerprint()

    def test_query_shape_fingerprint_carries_privacy_parameters(self):
        base = QueryShape(metrics=("quality",), epsilon=1.0, delta=1e-5)

        assert base.fingerprint() == QueryShape(metrics=("quality",), epsilon=1, delta=1e-5).fingerprint()
        assert base.fingerprint() != QueryShape(metrics=("quality",), epsilon=0.1).fingerprint()
        assert base.fingerprint() != QueryShape(metrics=("quality",), delta=0.0).fingerprint()
        assert NoiseMechanism.LAPLACE.value in base.fingerprint()

    def test_suppressed_statistics_have_no_values(self):
        result = AggregateResult(
            metrics={
                "productivity": MetricStatistics("productivity", 0.5, 1.0, 12.0),
                "quality": MetricStatistics(
                    "quality", None, None, None,
                    suppressed=True, suppression_reason="k_anonymity",
                ),
            },
            cohort_size=12,
            epsilon=1.0,
            delta=1e-5,
            sensitivity=1.0,
            mechanism=NoiseMechanism.LAPLACE,
            anonymization_method=AnonymizationMethod.K_ANONYMITY_AND_DIFFERENTIAL_PRIVACY,
        )

        assert result.statistic("productivity", "rate") == 1.0
        assert result.statistic("quality") is None
        assert result.statistic("missing") is None
        assert result.statistic("productivity", "median") is None


class TestAlertModels:
    def test_severity_rank(self):
        assert AlertSeverity.INFO.rank < AlertSeverity.WARNING.rank < AlertSeverity.BREACH.rank

    def test_status_properties(self):
        assert AlertStatus.RESOLVED.is_terminal
        assert AlertStatus.DISMISSED.is_terminal
        assert not AlertStatus.ACKNOWLEDGED.is_terminal
        assert AlertStatus.ESCALATED.awaiting_acknowledgement
        assert not AlertStatus.ACKNOWLEDGED.awaiting_acknowledgement

    def test_negative_remediation_delay_rejected(self):
        with pytest.raises(ValueError):
            RemediationDescriptor(action=RemediationType.AUTO_DELETE, execute_after_minutes=-1)

    def test_alert_to_dict(self):
        now = datetime(2024, 3, 4, 10, 30)
        alert = InterventionAlert(
            alert_id="alert_1",
            subject_id="cohort_hash",
            alert_type="quality",
            severity=AlertSeverity.WARNING,
            title="Writing Quality Below Expectations",
            description="Recent submissions show quality concerns (65.0%)",
            recommended_actions=("Recommend writing resources and tutorials",),
            snapshot=None,
            remediation=None,
            privacy_tier=PrivacyTier.CONFIDENTIAL,
            correlation_id="corr_1",
            created_at=now,
            updated_at=now,
        )

        data = alert.to_dict()

        assert data["severity"] == "warning"
        assert data["status"] == "pending"
        assert data["escalation_level"] == 0
        assert data["resolved_at"] is None
        assert data["created_at"] == "2024-03-04T10:30:00"
