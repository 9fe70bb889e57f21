"""Intervention Service: threshold rules over published aggregates.

This service provides:
- InterventionRuleEvaluator: aggregate -> alert drafts
- ThresholdRule / SeverityBand / Comparator: rule definitions
- DEFAULT_RULES: productivity, procrastination and quality rules
"""

from .rule_evaluator import InterventionRuleEvaluator, derive_trend
from .rules import (
    Comparator,
    SeverityBand,
    ThresholdRule,
    DEFAULT_RULES,
    PRODUCTIVITY_RULE,
    PROCRASTINATION_RULE,
    QUALITY_RULE,
)

__all__ = [
    "InterventionRuleEvaluator",
    "derive_trend",
    "Comparator",
    "SeverityBand",
    "ThresholdRule",
    "DEFAULT_RULES",
    "PRODUCTIVITY_RULE",
    "PROCRASTINATION_RULE",
    "QUALITY_RULE",
]
