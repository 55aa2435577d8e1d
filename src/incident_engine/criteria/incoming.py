from __future__ import annotations

from datetime import timedelta

from incident_engine.checks import IncomingRequestCheckResult
from incident_engine.criteria.compare import compare_text, describe, match_collection, to_float
from incident_engine.criteria.context import EvaluationContext
from incident_engine.models import Filter


def _received_within(result: IncomingRequestCheckResult, minutes: float, context: EvaluationContext) -> bool:
    if result.incoming_request_received_at is None:
        return False
    return context.now - result.incoming_request_received_at <= timedelta(minutes=minutes)


def evaluate(
    result: IncomingRequestCheckResult,
    criteria_filter: Filter,
    context: EvaluationContext,
) -> str | None:
    check_on = criteria_filter.check_on
    filter_type = criteria_filter.filter_type

    if check_on == "incoming_request":
        minutes = to_float(criteria_filter.value)
        if minutes is None:
            return None
        if filter_type == "received_in_minutes" and _received_within(result, minutes, context):
            return f"Incoming request received in the last {criteria_filter.value} minutes."
        if filter_type == "not_received_in_minutes" and not _received_within(result, minutes, context):
            return f"Incoming request not received in the last {criteria_filter.value} minutes."
        return None

    if check_on == "request_body":
        if compare_text(result.request_body, filter_type, criteria_filter.value):
            return describe("Request body", result.request_body, criteria_filter)
        return None

    if check_on == "request_header":
        names = list(result.request_headers.keys())
        if names and match_collection(names, criteria_filter):
            return describe("Request headers", ", ".join(names), criteria_filter)
        return None

    if check_on == "request_header_value":
        values = list(result.request_headers.values())
        if values and match_collection(values, criteria_filter):
            return describe("Request header values", ", ".join(values), criteria_filter)
        return None

    return None
