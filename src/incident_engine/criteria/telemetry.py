from __future__ import annotations

from incident_engine.checks import LogQueryCheckResult, TraceQueryCheckResult
from incident_engine.criteria.compare import compare_number, describe
from incident_engine.criteria.context import EvaluationContext
from incident_engine.models import Filter


def evaluate_logs(result: LogQueryCheckResult, criteria_filter: Filter, context: EvaluationContext) -> str | None:
    if criteria_filter.check_on != "log_count":
        return None
    if compare_number(result.log_count, criteria_filter.filter_type, criteria_filter.value):
        return describe("Log count", result.log_count, criteria_filter)
    return None


def evaluate_traces(result: TraceQueryCheckResult, criteria_filter: Filter, context: EvaluationContext) -> str | None:
    if criteria_filter.check_on != "span_count":
        return None
    if compare_number(result.span_count, criteria_filter.filter_type, criteria_filter.value):
        return describe("Span count", result.span_count, criteria_filter)
    return None
