from __future__ import annotations

from incident_engine.checks import ProbeCheckResult
from incident_engine.criteria.compare import compare_number, compare_text, compare_value, describe, match_collection
from incident_engine.criteria.context import EvaluationContext, describe_flag
from incident_engine.models import Filter


def evaluate(result: ProbeCheckResult, criteria_filter: Filter, context: EvaluationContext) -> str | None:
    check_on = criteria_filter.check_on
    filter_type = criteria_filter.filter_type

    if check_on == "is_online":
        return describe_flag(result.is_online, filter_type, "Monitor is online.", "Monitor is offline.")

    if check_on == "is_request_timeout":
        return describe_flag(result.is_timeout, filter_type, "Request timed out.", "Request did not time out.")

    if check_on == "response_time":
        if compare_number(result.response_time_ms, filter_type, criteria_filter.value):
            return describe("Response time", result.response_time_ms, criteria_filter, "ms")
        return None

    if check_on == "response_status_code":
        if result.response_code is None:
            return None
        if compare_value(result.response_code, filter_type, criteria_filter.value):
            return describe("Response status code", result.response_code, criteria_filter)
        return None

    if check_on == "response_body":
        if compare_text(result.response_body, filter_type, criteria_filter.value):
            return describe("Response body", result.response_body, criteria_filter)
        return None

    if check_on == "response_header":
        names = list(result.response_headers.keys())
        if names and match_collection(names, criteria_filter):
            return describe("Response headers", ", ".join(names), criteria_filter)
        return None

    if check_on == "response_header_value":
        values = list(result.response_headers.values())
        if values and match_collection(values, criteria_filter):
            return describe("Response header values", ", ".join(values), criteria_filter)
        return None

    return None
