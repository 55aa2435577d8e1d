from __future__ import annotations

from incident_engine.checks import CustomCodeCheckResult, ScriptRun, SyntheticCheckResult, SyntheticRun
from incident_engine.criteria.compare import compare_number, compare_text, compare_value, describe
from incident_engine.criteria.context import EvaluationContext
from incident_engine.models import Filter


def evaluate_run(run: ScriptRun, criteria_filter: Filter) -> str | None:
    check_on = criteria_filter.check_on
    filter_type = criteria_filter.filter_type

    if check_on == "execution_time":
        if compare_number(run.execution_time_ms, filter_type, criteria_filter.value):
            return describe("Execution time", run.execution_time_ms, criteria_filter, "ms")
        return None

    if check_on == "result_value":
        if compare_value(run.result, filter_type, criteria_filter.value):
            return describe("Result value", run.result, criteria_filter)
        return None

    if check_on == "error":
        if compare_text(run.script_error, filter_type, criteria_filter.value):
            return describe("Script error", run.script_error, criteria_filter)
        return None

    if check_on == "console_log":
        console = "\n".join(run.logs)
        if compare_text(console, filter_type, criteria_filter.value):
            return describe("Console log", console, criteria_filter)
        return None

    if isinstance(run, SyntheticRun):
        if check_on == "screen_size_type":
            if compare_text(run.screen_size_type, filter_type, criteria_filter.value):
                return describe("Screen size", run.screen_size_type, criteria_filter)
            return None
        if check_on == "browser_type":
            if compare_text(run.browser_type, filter_type, criteria_filter.value):
                return describe("Browser", run.browser_type, criteria_filter)
            return None

    return None


def evaluate_synthetic(
    result: SyntheticCheckResult,
    criteria_filter: Filter,
    context: EvaluationContext,
) -> str | None:
    for run in result.runs:
        cause = evaluate_run(run, criteria_filter)
        if cause is None:
            continue
        labels = [label for label in (run.browser_type, run.screen_size_type) if label]
        if labels:
            return f"{cause} ({', '.join(labels)})"
        return cause
    return None


def evaluate_custom_code(
    result: CustomCodeCheckResult,
    criteria_filter: Filter,
    context: EvaluationContext,
) -> str | None:
    if result.run is None:
        return None
    return evaluate_run(result.run, criteria_filter)
