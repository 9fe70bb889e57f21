"""K-anonymity floor for cohort aggregates.

The cohort as a whole must reach the floor before any metric row is read.
After the fetch, each metric is published only when at least k distinct
subjects contributed to it; otherwise that metric alone is withheld.
"""
import logging
from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

from scribeguard.shared.errors import InsufficientCohort

logger = logging.getLogger(__name__)

K_ANONYMITY_THRESHOLD = 10

T = TypeVar('T')


@dataclass(frozen=True)
class SuppressionResult(Generic[T]):
    """A value that either cleared the floor or was withheld."""
    data: Optional[T]
    group_size: int
    suppressed: bool
    suppression_reason: Optional[str] = None

    @classmethod
    def withheld(cls, group_size: int, k_threshold: int) -> "SuppressionResult[T]":
        return cls(
            data=None,
            group_size=group_size,
            suppressed=True,
            suppression_reason=(
                f"{group_size} contributing subjects is below the "
                f"k-anonymity floor of {k_threshold}"
            ),
        )


class KAnonymityEnforcer:
    """Applies the cohort floor and per-metric suppression.

    Args:
        k_threshold: Smallest group that may be published (default 10)
    """

    def __init__(self, k_threshold: int = K_ANONYMITY_THRESHOLD):
        if k_threshold < 1:
            raise ValueError(f"k_threshold must be >= 1, got {k_threshold}")
        self.k_threshold = k_threshold

    def require_cohort(self, cohort_size: int, context: Optional[str] = None) -> None:
        """Raise InsufficientCohort unless cohort_size reaches the floor."""
        if cohort_size >= self.k_threshold:
            return

        logger.warning(
            "K_ANONYMITY_COHORT_REJECTED",
            extra={
                "cohort_size": cohort_size,
                "k_threshold": self.k_threshold,
                "context": context,
            }
        )
        raise InsufficientCohort(cohort_size, self.k_threshold)

    def check_and_suppress(
        self,
        data: T,
        group_size: int,
        context: Optional[str] = None,
    ) -> SuppressionResult[T]:
        """Pass `data` through when group_size reaches the floor.

        Logs:
            - K_ANONYMITY_SUPPRESSED: When the value is withheld
        """
        if group_size >= self.k_threshold:
            return SuppressionResult(data=data, group_size=group_size, suppressed=False)

        logger.info(
            "K_ANONYMITY_SUPPRESSED",
            extra={
                "group_size": group_size,
                "k_threshold": self.k_threshold,
                "context": context,
            }
        )
        return SuppressionResult.withheld(group_size, self.k_threshold)
