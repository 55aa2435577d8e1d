from incident_engine.criteria.context import EvaluationContext
from incident_engine.criteria.evaluator import (
    DEFAULT_STATUS_ROOT_CAUSE,
    CriteriaMatch,
    StepOutcome,
    build_auto_resolve_map,
    build_root_cause,
    evaluate_filter,
    evaluate_instance,
    evaluate_step,
    select_step,
    step_outcome,
)
from incident_engine.criteria.expression import SafeExpression, build_snapshot, evaluate_expression

__all__ = [
    "DEFAULT_STATUS_ROOT_CAUSE",
    "CriteriaMatch",
    "EvaluationContext",
    "SafeExpression",
    "StepOutcome",
    "build_auto_resolve_map",
    "build_root_cause",
    "build_snapshot",
    "evaluate_expression",
    "evaluate_filter",
    "evaluate_instance",
    "evaluate_step",
    "select_step",
    "step_outcome",
]
