"""
Rule Evaluator - Condition, Trend and Payload Evaluation
=========================================================
Rule types:
- threshold:            value compared against a single bound
- band:                 lower < value <= upper
- threshold_with_trend: threshold must hold, then a trend over the last N points

Features:
- Conditions parsed once per rule text into a typed AST (see conditions.py)
- Rule types dispatched through a handler table
- Level always taken from the rule definition
- UI-ready payload built on every evaluation
"""
import logging
import math
from functools import lru_cache
from typing import Any, Callable, Dict, List, Optional, Sequence

from alerts_core.exceptions import ValidationError
from alerts_core.models import (
    EnrichedPayload,
    EvaluationReason,
    EvaluationResult,
    Rule,
    RuleType,
    TrendRule,
)
from services.alert_engine.conditions import Band, Comparison, Condition, parse_condition

logger = logging.getLogger(__name__)

# Fixed count regardless of window size
MIN_STRICT_INCREASES = 4


@lru_cache(maxsize=512)
def _parse_cached(condition: str) -> Condition:
    return parse_condition(condition)


def _require_number(value: Any, label: str) -> float:
    # bool is an int subclass but never a metric value
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"{label} must be a real number, got {type(value).__name__}: {value!r}")
    if not math.isfinite(value):
        raise ValidationError(f"{label} must be finite, got {value!r}")
    return float(value)


class RuleEvaluator:
    """
    Evaluates a single rule against a current value and optional trend series.

    Stateless apart from the parse cache, so one instance can be shared by
    every worker of a run.
    """

    def __init__(self):
        self._handlers: Dict[RuleType, Callable[..., EvaluationResult]] = {
            RuleType.THRESHOLD: self._evaluate_threshold,
            RuleType.BAND: self._evaluate_band,
            RuleType.THRESHOLD_WITH_TREND: self._evaluate_threshold_with_trend,
        }

    def evaluate(
        self,
        rule: Rule,
        value: Any,
        trend_values: Optional[Sequence[Any]] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> EvaluationResult:
        """
        Evaluate a rule.

        Args:
            rule: Rule definition
            value: Current metric value
            trend_values: Ascending-by-time values, used by threshold_with_trend
            metadata: Observation context ('base_ts', 'oficial_fx_source')

        Returns:
            EvaluationResult with the rule's level and an enriched payload

        Raises:
            ValidationError: malformed condition, wrong AST for the rule type,
                or a non-numeric value
        """
        current = _require_number(value, f"value for {rule.alert_id}")
        condition = _parse_cached(rule.condition)

        handler = self._handlers.get(rule.type)
        if handler is None:
            raise ValidationError(f"Unsupported rule type for {rule.alert_id}: {rule.type}")

        triggered, reason = handler(rule, condition, current, trend_values)

        return EvaluationResult(
            triggered=triggered,
            value=current,
            threshold_repr=condition.describe(),
            level=rule.level,
            reason=reason,
            payload=self.build_payload(rule, condition, current, metadata),
        )

    # =========================================================================
    # RULE TYPE HANDLERS
    # =========================================================================

    def _evaluate_threshold(self, rule, condition, value, trend_values):
        if not isinstance(condition, Comparison):
            raise ValidationError(
                f"Rule {rule.alert_id} is type 'threshold' but condition is a band: {rule.condition}"
            )
        if condition.matches(value):
            return True, EvaluationReason.THRESHOLD_MET
        return False, EvaluationReason.THRESHOLD_NOT_MET

    def _evaluate_band(self, rule, condition, value, trend_values):
        if not isinstance(condition, Band):
            raise ValidationError(
                f"Rule {rule.alert_id} is type 'band' but condition is not a band: {rule.condition}"
            )
        if condition.matches(value):
            return True, EvaluationReason.WITHIN_BAND
        return False, EvaluationReason.OUTSIDE_BAND

    def _evaluate_threshold_with_trend(self, rule, condition, value, trend_values):
        # The trend is never looked at when the threshold fails
        if not condition.matches(value):
            return False, EvaluationReason.THRESHOLD_NOT_MET

        trend_ok, trend_reason = self.evaluate_trend(rule, trend_values or [])
        if not trend_ok:
            return False, trend_reason
        return True, EvaluationReason.THRESHOLD_AND_TREND_MET

    # =========================================================================
    # TREND EVALUATION
    # =========================================================================

    def evaluate_trend(self, rule: Rule, trend_values: Sequence[Any]) -> tuple:
        """
        Evaluate the rule's trend requirement over the last window_points values.

        Returns:
            (passed, EvaluationReason)
        """
        if rule.trend is None:
            raise ValidationError(f"Rule {rule.alert_id} has no trend configuration")

        window_points = rule.trend.window_points
        if len(trend_values) < window_points:
            logger.debug(
                f"{rule.alert_id}: {len(trend_values)} trend points, {window_points} required"
            )
            return False, EvaluationReason.INSUFFICIENT_POINTS

        # History older than the window is dropped unchecked
        window = [
            _require_number(v, f"trend value for {rule.alert_id}")
            for v in list(trend_values)[-window_points:]
        ]

        if rule.trend.rule == TrendRule.NON_DECREASING:
            if self._is_non_decreasing(window):
                return True, EvaluationReason.TREND_NON_DECREASING
            return False, EvaluationReason.TREND_NOT_NON_DECREASING

        if rule.trend.rule == TrendRule.AT_LEAST_4_OF_5_INCREASING:
            if self._count_increases(window) >= MIN_STRICT_INCREASES:
                return True, EvaluationReason.TREND_SUFFICIENT_INCREASES
            return False, EvaluationReason.TREND_INSUFFICIENT_INCREASES

        raise ValidationError(f"Unsupported trend rule for {rule.alert_id}: {rule.trend.rule}")

    def _is_non_decreasing(self, values: List[float]) -> bool:
        for i in range(1, len(values)):
            if values[i] < values[i - 1]:
                return False
        return True

    def _count_increases(self, values: List[float]) -> int:
        return sum(1 for i in range(1, len(values)) if values[i] > values[i - 1])

    # =========================================================================
    # PAYLOAD
    # =========================================================================

    def build_payload(
        self,
        rule: Rule,
        condition: Condition,
        value: float,
        metadata: Optional[Dict[str, Any]] = None
    ) -> EnrichedPayload:
        """Build the UI payload from rule metadata and observation context"""
        metadata = metadata or {}

        threshold = rule.threshold
        if threshold is None:
            threshold = condition.threshold if isinstance(condition, Comparison) else condition.upper

        return EnrichedPayload(
            value=value,
            value_pct=value * 100,
            threshold=threshold,
            units=rule.units or "ratio",
            window=rule.window,
            inputs=list(rule.inputs) if rule.inputs else None,
            base_ts=metadata.get('base_ts'),
            oficial_fx_source=metadata.get('oficial_fx_source'),
            notes=rule.notes,
        )
