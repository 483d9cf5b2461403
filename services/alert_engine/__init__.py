"""
Alert Engine - Condition Grammar and Rule Evaluation
====================================================

Usage:
    from services.alert_engine import RuleEvaluator

    evaluator = RuleEvaluator()
    result = evaluator.evaluate(rule, 0.0015, metadata={'base_ts': '2025-09-01'})
    if result.triggered:
        ...
"""

from services.alert_engine.conditions import (
    Band,
    Comparison,
    parse_condition,
    validate_condition,
)
from services.alert_engine.rule_evaluator import RuleEvaluator

__all__ = ['RuleEvaluator', 'Comparison', 'Band', 'parse_condition', 'validate_condition']
