"""Intervention rule evaluator.

Applies threshold rules to a published aggregate and emits alert drafts.
Rules are independent: one aggregate can trigger several drafts. The
evaluator never suppresses or deduplicates; that is decided when the
escalation engine admits a draft.
"""
import logging
from typing import List, Optional, Sequence

from scribeguard.shared.models import (
    AggregateResult,
    AlertDraft,
    MetricSnapshot,
    PrivacyTier,
    Trend,
)
from scribeguard.shared.utils import hash_pii
from .rules import DEFAULT_RULES, ThresholdRule

logger = logging.getLogger(__name__)


def derive_trend(rule: ThresholdRule, current: float, previous: Optional[float]) -> Trend:
    """Trend relative to the direction in which the rule's metric gets worse."""
    if previous is None:
        return rule.default_trend
    if current == previous:
        return Trend.STABLE
    went_down = current < previous
    if rule.comparator.lower_is_worse:
        return Trend.DECLINING if went_down else Trend.IMPROVING
    return Trend.IMPROVING if went_down else Trend.DECLINING


class InterventionRuleEvaluator:
    """Turns aggregates into alert drafts using threshold rules."""

    def __init__(self, rules: Sequence[ThresholdRule] = DEFAULT_RULES):
        self.rules = tuple(rules)

    def evaluate(
        self,
        subject_id: str,
        aggregate: AggregateResult,
        rules: Optional[Sequence[ThresholdRule]] = None,
        previous: Optional[AggregateResult] = None,
        privacy_tier: PrivacyTier = PrivacyTier.RESTRICTED,
    ) -> List[AlertDraft]:
        """Evaluate every rule against the aggregate.

        Args:
            subject_id: Subject or cohort the aggregate describes
            aggregate: Published (noisy) aggregate
            rules: Rules to apply (defaults to the evaluator's rules)
            previous: Earlier aggregate for the same query, used for trends
            privacy_tier: Tier of the request; decides subject id hashing

        Returns:
            Zero or more drafts, in rule order
        """
        rules = self.rules if rules is None else tuple(rules)
        draft_subject = hash_pii(subject_id) if privacy_tier.requires_subject_hashing else subject_id
        drafts: List[AlertDraft] = []

        for rule in rules:
            value = aggregate.statistic(rule.metric, rule.statistic)
            if value is None:
                logger.debug(
                    "RULE_SKIPPED",
                    extra={"rule_id": rule.rule_id, "metric": rule.metric, "reason": "missing_or_suppressed"}
                )
                continue

            if not rule.is_triggered(value):
                continue

            previous_value = (
                previous.statistic(rule.metric, rule.statistic) if previous is not None else None
            )
            trend = derive_trend(rule, value, previous_value)
            drafts.append(self._build_draft(rule, draft_subject, value, previous_value, trend, privacy_tier))

        logger.info(
            "RULES_EVALUATED",
            extra={
                "rule_count": len(rules),
                "draft_count": len(drafts),
                "alert_types": [d.alert_type for d in drafts],
                "cohort_size": aggregate.cohort_size,
            }
        )
        return drafts

    def _build_draft(
        self,
        rule: ThresholdRule,
        subject_id: str,
        value: float,
        previous_value: Optional[float],
        trend: Trend,
        privacy_tier: PrivacyTier,
    ) -> AlertDraft:
        params = {
            "current": value,
            "current_pct": value * 100,
            "threshold": rule.threshold,
            "trend": trend.value,
        }
        return AlertDraft(
            subject_id=subject_id,
            alert_type=rule.alert_type,
            severity=rule.severity_for(value),
            title=rule.title.format(**params),
            description=rule.description_template.format(**params),
            recommended_actions=tuple(a.format(**params) for a in rule.suggested_actions),
            snapshot=MetricSnapshot(
                metric=rule.metric,
                current_value=value,
                threshold=rule.threshold,
                trend=trend,
                previous_value=previous_value,
            ),
            remediation=rule.remediation,
            rule_id=rule.rule_id,
            privacy_tier=privacy_tier,
        )
