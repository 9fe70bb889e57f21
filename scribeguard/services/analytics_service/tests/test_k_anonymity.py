"""Tests for k-anonymity enforcement."""
import pytest

from scribeguard.shared.errors import InsufficientCohort
from scribeguard.services.analytics_service.k_anonymity import (
    KAnonymityEnforcer,
    K_ANONYMITY_THRESHOLD,
)


@pytest.fixture
def enforcer():
    """Create a KAnonymityEnforcer instance."""
    return KAnonymityEnforcer()


class TestKAnonymityThreshold:
    """Tests for k-anonymity threshold enforcement."""

    def test_default_threshold_is_ten(self):
        assert K_ANONYMITY_THRESHOLD == 10

    def test_group_below_threshold_suppressed(self, enforcer):
        """Groups with fewer than k members should be suppressed."""
        result = enforcer.check_and_suppress(
            data={"mean": 0.5},
            group_size=9,
            context="test_query",
        )

        assert result.suppressed is True
        assert result.data is None
        assert result.group_size == 9
        assert "below the k-anonymity floor of 10" in result.suppression_reason

    def test_group_at_threshold_passes(self, enforcer):
        """Groups with exactly k members should pass."""
        result = enforcer.check_and_suppress(
            data={"mean": 0.5},
            group_size=10,
        )

        assert result.suppressed is False
        assert result.data == {"mean": 0.5}

    def test_single_student_suppressed(self, enforcer):
        """Single student data must always be suppressed."""
        result = enforcer.check_and_suppress(data={"mean": 0.8}, group_size=1)

        assert result.suppressed is True
        assert result.data is None

    def test_custom_threshold(self):
        enforcer = KAnonymityEnforcer(k_threshold=3)

        assert enforcer.check_and_suppress(1.0, group_size=3).suppressed is False
        assert enforcer.check_and_suppress(1.0, group_size=2).suppressed is True

    def test_invalid_threshold_rejected(self):
        with pytest.raises(ValueError):
            KAnonymityEnforcer(k_threshold=0)


class TestCohortFloor:
    def test_small_cohort_raises(self, enforcer):
        with pytest.raises(InsufficientCohort) as exc_info:
            enforcer.require_cohort(9)

        assert exc_info.value.cohort_size == 9
        assert exc_info.value.minimum_cohort_size == 10

    def test_cohort_at_floor_allowed(self, enforcer):
        enforcer.require_cohort(10)  # Should not raise
