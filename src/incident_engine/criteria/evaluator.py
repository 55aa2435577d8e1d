from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Literal

import structlog

from incident_engine.checks import (
    CheckResult,
    CustomCodeCheckResult,
    IncomingRequestCheckResult,
    LogQueryCheckResult,
    MonitorType,
    ProbeCheckResult,
    ServerCheckResult,
    SslCheckResult,
    SyntheticCheckResult,
    TraceQueryCheckResult,
)
from incident_engine.criteria import incoming, probe, script, server, ssl, telemetry
from incident_engine.criteria.context import EvaluationContext
from incident_engine.criteria.expression import describe_expression
from incident_engine.models import CriteriaInstance, Filter, MonitorStep, MonitorSteps

log = structlog.get_logger(__name__)

DEFAULT_STATUS_ROOT_CAUSE = "No monitoring criteria met. Change to default status."


@dataclass(frozen=True)
class CriteriaMatch:
    criteria_id: str
    criteria: CriteriaInstance
    root_cause: str


@dataclass(frozen=True)
class StepOutcome:
    match: CriteriaMatch | None
    default_status_id: str | None = None

    @property
    def change_to_default(self) -> bool:
        return self.match is None and self.default_status_id is not None


async def evaluate_filter(
    monitor_type: MonitorType,
    result: CheckResult,
    criteria_filter: Filter,
    context: EvaluationContext,
) -> str | None:
    if criteria_filter.check_on == "expression":
        if criteria_filter.filter_type != "evaluates_to_true" or not criteria_filter.value:
            return None
        return await describe_expression(str(criteria_filter.value), result, context.expression_timeout_seconds)

    if isinstance(result, ProbeCheckResult):
        return probe.evaluate(result, criteria_filter, context)
    if isinstance(result, ServerCheckResult):
        return server.evaluate(result, criteria_filter, context)
    if isinstance(result, SyntheticCheckResult):
        return script.evaluate_synthetic(result, criteria_filter, context)
    if isinstance(result, CustomCodeCheckResult):
        return script.evaluate_custom_code(result, criteria_filter, context)
    if isinstance(result, IncomingRequestCheckResult):
        return incoming.evaluate(result, criteria_filter, context)
    if isinstance(result, LogQueryCheckResult):
        return telemetry.evaluate_logs(result, criteria_filter, context)
    if isinstance(result, TraceQueryCheckResult):
        return telemetry.evaluate_traces(result, criteria_filter, context)
    if isinstance(result, SslCheckResult):
        return ssl.evaluate(result, criteria_filter, context)

    log.warning("unsupported_check_result", monitor_type=monitor_type)
    return None


async def evaluate_instance(
    monitor_type: MonitorType,
    result: CheckResult,
    instance: CriteriaInstance,
    context: EvaluationContext,
) -> list[str] | None:
    causes: list[str] = []
    for criteria_filter in instance.filters:
        cause = await evaluate_filter(monitor_type, result, criteria_filter, context)
        if instance.filter_condition == "any":
            if cause is not None:
                return [cause]
            continue
        if cause is None:
            return None
        causes.append(cause)

    if instance.filter_condition == "any":
        return None
    return causes


def build_root_cause(instance: CriteriaInstance, causes: Iterable[str], failure_cause: str | None) -> str:
    lines = [f"**Criteria Met**: {instance.name}"]
    cause_lines = [f"- {cause}" for cause in causes]
    if cause_lines:
        lines.append("")
        lines.append("**Filter Conditions Met**:")
        lines.extend(cause_lines)
    if failure_cause:
        lines.append("")
        lines.append(f"**Cause**: {failure_cause}")
    return "\n".join(lines)


async def evaluate_step(
    monitor_type: MonitorType,
    result: CheckResult,
    step: MonitorStep,
    context: EvaluationContext,
) -> CriteriaMatch | None:
    for instance in step.criteria:
        causes = await evaluate_instance(monitor_type, result, instance, context)
        if causes is None:
            continue
        log.debug("criteria_matched", monitor_id=result.monitor_id, criteria_id=instance.id)
        return CriteriaMatch(
            criteria_id=instance.id,
            criteria=instance,
            root_cause=build_root_cause(instance, causes, result.failure_cause),
        )
    return None


async def step_outcome(
    monitor_type: MonitorType,
    result: CheckResult,
    step: MonitorStep,
    current_state_id: str | None,
    context: EvaluationContext,
) -> StepOutcome:
    match = await evaluate_step(monitor_type, result, step, context)
    if match is not None:
        return StepOutcome(match=match)
    if step.default_status_id and step.default_status_id != current_state_id:
        return StepOutcome(match=None, default_status_id=step.default_status_id)
    return StepOutcome(match=None)


def select_step(steps: MonitorSteps, step_id: str | None) -> MonitorStep | None:
    if step_id is not None:
        for step in steps.steps:
            if step.id == step_id:
                return step
    return steps.steps[0] if steps.steps else None


def build_auto_resolve_map(steps: MonitorSteps, kind: Literal["incident", "alert"]) -> dict[str, set[str]]:
    auto_resolve: dict[str, set[str]] = {}
    for step in steps.steps:
        for instance in step.criteria:
            templates = instance.incidents if kind == "incident" else instance.alerts
            for template in templates:
                if template.auto_resolve:
                    auto_resolve.setdefault(instance.id, set()).add(template.id)
    return auto_resolve
