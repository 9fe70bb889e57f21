"""Tests for noise calibration, sampling and budget accounting."""
import logging
import math
import random
from datetime import date

import pytest

from scribeguard.shared.errors import PrivacyBudgetExceeded
from scribeguard.shared.models import NoiseMechanism
from scribeguard.services.analytics_service.differential_privacy import (
    NoiseSampler,
    PrivacyBudgetLedger,
    noise_scale,
    validate_privacy_parameters,
)


class TestParameterValidation:
    @pytest.mark.parametrize("epsilon", [0, -1.0, float("nan"), float("inf")])
    def test_bad_epsilon_rejected(self, epsilon):
        with pytest.raises(ValueError):
            validate_privacy_parameters(epsilon, 0.0)

    @pytest.mark.parametrize("delta", [-0.1, 1.0, 2.0])
    def test_bad_delta_rejected(self, delta):
        with pytest.raises(ValueError):
            validate_privacy_parameters(1.0, delta)

    def test_gaussian_requires_positive_delta(self):
        with pytest.raises(ValueError):
            validate_privacy_parameters(1.0, 0.0, NoiseMechanism.GAUSSIAN)

    def test_laplace_accepts_zero_delta(self):
        validate_privacy_parameters(1.0, 0.0, NoiseMechanism.LAPLACE)


class TestNoiseScale:
    def test_laplace_scale_is_sensitivity_over_epsilon(self):
        assert noise_scale(NoiseMechanism.LAPLACE, 0.5, 0.0) == pytest.approx(2.0)
        assert noise_scale(NoiseMechanism.LAPLACE, 1.0, 1e-5, sensitivity=3.0) == pytest.approx(3.0)

    def test_laplace_ignores_delta(self):
        assert noise_scale(NoiseMechanism.LAPLACE, 1.0, 0.0) == noise_scale(
            NoiseMechanism.LAPLACE, 1.0, 1e-3
        )

    def test_gaussian_sigma_uses_delta(self):
        expected = math.sqrt(2 * math.log(1.25 / 1e-5)) / 1.0
        assert noise_scale(NoiseMechanism.GAUSSIAN, 1.0, 1e-5) == pytest.approx(expected)


class TestNoiseSampler:
    def test_default_rng_is_system_random(self):
        assert isinstance(NoiseSampler()._rng, random.SystemRandom)

    def test_laplace_distribution_shape(self):
        sampler = NoiseSampler(rng=random.Random(42))
        samples = [sampler.laplace(2.0) for _ in range(20000)]

        mean = sum(samples) / len(samples)
        mean_abs = sum(abs(s) for s in samples) / len(samples)

        # Laplace(0, b): E[X] = 0, E[|X|] = b
        assert abs(mean) < 0.1
        assert mean_abs == pytest.approx(2.0, rel=0.05)

    def test_successive_samples_differ(self):
        sampler = NoiseSampler()
        draws = {sampler.sample(NoiseMechanism.LAPLACE, 1.0, 0.0) for _ in range(5)}
        assert len(draws) > 1

    def test_gaussian_sample_uses_calibrated_sigma(self):
        sampler = NoiseSampler(rng=random.Random(7))
        samples = [sampler.sample(NoiseMechanism.GAUSSIAN, 1.0, 1e-5) for _ in range(20000)]
        sigma = noise_scale(NoiseMechanism.GAUSSIAN, 1.0, 1e-5)

        variance = sum(s * s for s in samples) / len(samples)
        assert math.sqrt(variance) == pytest.approx(sigma, rel=0.05)


class FakeToday:
    def __init__(self):
        self.value = date(2026, 3, 2)

    def __call__(self):
        return self.value


class TestPrivacyBudgetLedger:
    def test_charges_accumulate(self):
        ledger = PrivacyBudgetLedger(daily_epsilon_limit=1.0)

        ledger.charge("cohort", 0.25, 1e-6)
        total_eps, total_delta = ledger.charge("cohort", 0.25, 1e-6)

        assert total_eps == pytest.approx(0.5)
        assert total_delta == pytest.approx(2e-6)
        assert ledger.remaining("cohort") == pytest.approx(0.5)

    def test_exceeding_limit_refused(self):
        ledger = PrivacyBudgetLedger(daily_epsilon_limit=1.0)
        ledger.charge("cohort", 0.75, 0.0)

        with pytest.raises(PrivacyBudgetExceeded):
            ledger.charge("cohort", 0.5, 0.0)

        # Refused charge is not recorded
        assert ledger.spent("cohort")[0] == pytest.approx(0.75)

    def test_exact_limit_allowed(self):
        ledger = PrivacyBudgetLedger(daily_epsilon_limit=1.0)
        for _ in range(10):
            ledger.charge("cohort", 0.1, 0.0)

    def test_entities_are_independent(self):
        ledger = PrivacyBudgetLedger(daily_epsilon_limit=1.0)
        ledger.charge("a", 1.0, 0.0)
        ledger.charge("b", 1.0, 0.0)  # Should not raise

    def test_warning_at_eighty_percent(self, caplog):
        ledger = PrivacyBudgetLedger(daily_epsilon_limit=1.0)

        with caplog.at_level(logging.WARNING):
            ledger.charge("cohort", 0.8, 0.0)

        assert any(r.getMessage() == "PRIVACY_BUDGET_WARNING" for r in caplog.records)

    def test_daily_reset(self):
        today = FakeToday()
        ledger = PrivacyBudgetLedger(daily_epsilon_limit=1.0, today=today)
        ledger.charge("cohort", 1.0, 0.0)

        today.value = date(2026, 3, 3)

        assert ledger.spent("cohort") == (0.0, 0.0)
        ledger.charge("cohort", 1.0, 0.0)  # Should not raise
