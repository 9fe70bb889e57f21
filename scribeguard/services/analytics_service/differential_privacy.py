"""Differential-privacy noise and budget accounting.

Noise is drawn from the operating system CSPRNG (random.SystemRandom) so
that the published noise cannot be predicted from a seed.

Mechanisms:
- Laplace (default): scale b = sensitivity / epsilon. Pure epsilon-DP; delta
  is carried only as accounting metadata.
- Gaussian: sigma = sensitivity * sqrt(2 ln(1.25 / delta)) / epsilon.
  Requires 0 < delta < 1.
"""
import logging
import math
import random
import threading
from datetime import date
from typing import Callable, Dict, Optional, Tuple

from scribeguard.shared.errors import PrivacyBudgetExceeded
from scribeguard.shared.models import NoiseMechanism

logger = logging.getLogger(__name__)

DEFAULT_SENSITIVITY = 1.0
BUDGET_WARNING_RATIO = 0.8


def validate_privacy_parameters(
    epsilon: float,
    delta: float,
    mechanism: NoiseMechanism = NoiseMechanism.LAPLACE,
) -> None:
    """Validate (epsilon, delta) for the chosen mechanism.

    Raises:
        ValueError: If epsilon <= 0, delta outside [0, 1), or delta == 0
            for the Gaussian mechanism
    """
    if not epsilon or epsilon <= 0 or math.isnan(epsilon) or math.isinf(epsilon):
        raise ValueError(f"epsilon must be a positive finite number, got {epsilon}")
    if delta < 0 or delta >= 1:
        raise ValueError(f"delta must be in [0, 1), got {delta}")
    if mechanism == NoiseMechanism.GAUSSIAN and delta <= 0:
        raise ValueError("Gaussian mechanism requires delta > 0")


def noise_scale(
    mechanism: NoiseMechanism,
    epsilon: float,
    delta: float,
    sensitivity: float = DEFAULT_SENSITIVITY,
) -> float:
    """Calibrated noise scale: Laplace b or Gaussian sigma."""
    validate_privacy_parameters(epsilon, delta, mechanism)
    if mechanism == NoiseMechanism.GAUSSIAN:
        return sensitivity * math.sqrt(2 * math.log(1.25 / delta)) / epsilon
    return sensitivity / epsilon


class NoiseSampler:
    """Draws calibrated noise from a cryptographically adequate RNG."""

    def __init__(self, rng: Optional[random.Random] = None):
        """Initialize sampler.

        Args:
            rng: Random source (defaults to random.SystemRandom)
        """
        self._rng = rng or random.SystemRandom()

    def laplace(self, scale: float) -> float:
        """Sample Laplace(0, scale) by inverse CDF."""
        # u in (-0.5, 0.5); reject the endpoint where log(0) would occur
        u = self._rng.random() - 0.5
        while u == -0.5:
            u = self._rng.random() - 0.5
        return -scale * math.copysign(1.0, u) * math.log(1 - 2 * abs(u))

    def gaussian(self, sigma: float) -> float:
        return self._rng.gauss(0.0, sigma)

    def sample(
        self,
        mechanism: NoiseMechanism,
        epsilon: float,
        delta: float,
        sensitivity: float = DEFAULT_SENSITIVITY,
    ) -> float:
        """Draw one noise value for a query answered with (epsilon, delta)."""
        scale = noise_scale(mechanism, epsilon, delta, sensitivity)
        if mechanism == NoiseMechanism.GAUSSIAN:
            return self.gaussian(scale)
        return self.laplace(scale)


class PrivacyBudgetLedger:
    """Per-entity daily (epsilon, delta) accounting under basic composition.

    A query that would push the day's epsilon above the limit is refused.
    Crossing 80% of the limit logs a warning. Spend resets every day.
    """

    def __init__(
        self,
        daily_epsilon_limit: float = 1.0,
        today: Callable[[], date] = date.today,
    ):
        if daily_epsilon_limit <= 0:
            raise ValueError(f"daily_epsilon_limit must be > 0, got {daily_epsilon_limit}")
        self.daily_epsilon_limit = daily_epsilon_limit
        self._today = today
        self._day = today()
        self._spent: Dict[str, Tuple[float, float]] = {}
        self._lock = threading.Lock()

        logger.info(
            "PRIVACY_BUDGET_LEDGER_INITIALIZED",
            extra={"daily_epsilon_limit": daily_epsilon_limit}
        )

    def _roll_day_locked(self) -> None:
        today = self._today()
        if today != self._day:
            logger.info(
                "PRIVACY_BUDGET_RESET",
                extra={"previous_day": self._day.isoformat(), "entities": len(self._spent)}
            )
            self._day = today
            self._spent.clear()

    def spent(self, entity_id_hash: str) -> Tuple[float, float]:
        with self._lock:
            self._roll_day_locked()
            return self._spent.get(entity_id_hash, (0.0, 0.0))

    def remaining(self, entity_id_hash: str) -> float:
        return max(0.0, self.daily_epsilon_limit - self.spent(entity_id_hash)[0])

    def charge(self, entity_id_hash: str, epsilon: float, delta: float) -> Tuple[float, float]:
        """Charge a query against the entity's budget.

        Args:
            entity_id_hash: Hashed cohort or subject identifier
            epsilon: Epsilon spent by this query
            delta: Delta spent by this query

        Returns:
            Total (epsilon, delta) spent today after the charge

        Raises:
            PrivacyBudgetExceeded: If the charge would exceed the daily limit
        """
        with self._lock:
            self._roll_day_locked()
            spent_eps, spent_delta = self._spent.get(entity_id_hash, (0.0, 0.0))
            new_eps = spent_eps + epsilon
            # Tolerate float accumulation error at the boundary
            if new_eps > self.daily_epsilon_limit + 1e-9:
                logger.warning(
                    "PRIVACY_BUDGET_EXCEEDED",
                    extra={
                        "entity_id_hash": entity_id_hash,
                        "spent_epsilon": spent_eps,
                        "requested_epsilon": epsilon,
                        "limit": self.daily_epsilon_limit,
                    }
                )
                raise PrivacyBudgetExceeded(entity_id_hash, new_eps, self.daily_epsilon_limit)

            self._spent[entity_id_hash] = (new_eps, spent_delta + delta)

        if new_eps >= BUDGET_WARNING_RATIO * self.daily_epsilon_limit:
            logger.warning(
                "PRIVACY_BUDGET_WARNING",
                extra={
                    "entity_id_hash": entity_id_hash,
                    "spent_epsilon": new_eps,
                    "limit": self.daily_epsilon_limit,
                }
            )
        return new_eps, spent_delta + delta
