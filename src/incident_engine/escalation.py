from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Literal, Protocol

import structlog

from incident_engine.events import EventQueue
from incident_engine.exceptions import NotFoundError
from incident_engine.models import (
    Alert,
    EscalationRule,
    ExecutionLog,
    FeedEvent,
    Incident,
    OnCallPolicy,
    OwnerKind,
    TrackedIssue,
    utc_now,
)
from incident_engine.store import Store
from incident_engine.timeline import state_reached

log = structlog.get_logger(__name__)

SweepOutcome = Literal["completed", "waiting", "advanced", "repeated", "error", "skipped"]

COMPLETED_MESSAGE = "Execution completed."
DEFAULT_ERROR_MESSAGE = "Error occurred while executing the on-call policy."


@dataclass(frozen=True)
class RuleExecutionContext:
    project_id: str
    execution_log_id: str
    policy_id: str
    notification_event_type: str
    triggered_by_incident_id: str | None = None
    triggered_by_alert_id: str | None = None
    repeat_count: int = 0


class RuleExecutor(Protocol):
    async def start_rule_execution(self, rule: EscalationRule, context: RuleExecutionContext) -> None: ...


class FeedRuleExecutor:
    def __init__(self, events: EventQueue) -> None:
        self.events = events

    async def start_rule_execution(self, rule: EscalationRule, context: RuleExecutionContext) -> None:
        owner_kind: OwnerKind = "incident" if context.triggered_by_incident_id else "alert"
        owner_id = context.triggered_by_incident_id or context.triggered_by_alert_id
        if owner_id is None:
            raise NotFoundError(f"Execution log {context.execution_log_id} has no triggering incident or alert")
        targets = [f"user:{item}" for item in rule.user_ids]
        targets += [f"team:{item}" for item in rule.team_ids]
        targets += [f"schedule:{item}" for item in rule.schedule_ids]
        rule_name = rule.name or f"Escalation rule {rule.order}"
        lines = [f"📟 **{rule_name}** executed (order {rule.order})."]
        if targets:
            lines.append("Paging: " + ", ".join(f"`{target}`" for target in targets))
        if context.repeat_count:
            lines.append(f"Repeat {context.repeat_count} of this on-call policy.")
        for user_id in rule.user_ids or [None]:
            self.events.publish(
                "feed",
                FeedEvent(
                    project_id=context.project_id,
                    owner_id=owner_id,
                    owner_kind=owner_kind,
                    event_type="escalation_rule_executed",
                    markdown="\n".join(lines),
                    notify_user_id=user_id,
                ),
            )


async def trigger_policies(
    store: Store,
    kind: Literal["incident", "alert"],
    issue: TrackedIssue,
    now: datetime | None = None,
) -> list[ExecutionLog]:
    created: list[ExecutionLog] = []
    for policy_id in issue.on_call_policy_ids:
        policy = await store.find_one(OnCallPolicy, {"id": policy_id}, is_root=True)
        if policy is None:
            log.warning("on_call_policy_missing", policy_id=policy_id, issue_id=issue.id)
            continue
        execution_log = ExecutionLog(
            project_id=issue.project_id,
            policy_id=policy.id,
            triggered_by_incident_id=issue.id if kind == "incident" else None,
            triggered_by_alert_id=issue.id if kind == "alert" else None,
            notification_event_type=f"{kind}_created",
            max_repeats=policy.repeat_policy_if_no_one_acknowledges_times,
            created_at=now or utc_now(),
        )
        created.append(await store.create(execution_log, is_root=True))
        log.info("on_call_policy_triggered", policy_id=policy.id, issue_id=issue.id, kind=kind)
    return created


class EscalationScheduler:
    def __init__(self, store: Store, executor: RuleExecutor) -> None:
        self.store = store
        self.executor = executor

    async def sweep(self, now: datetime | None = None) -> dict[str, SweepOutcome]:
        tick = now or utc_now()
        pending = await self.store.find_many(ExecutionLog, {"status": "executing"}, sort="created_at", is_root=True)
        results = await asyncio.gather(
            *(self.process(execution_log, tick) for execution_log in pending),
            return_exceptions=True,
        )
        outcomes: dict[str, SweepOutcome] = {}
        for execution_log, result in zip(pending, results, strict=True):
            if isinstance(result, BaseException):
                log.error("escalation_process_crashed", execution_log_id=execution_log.id, error=str(result))
                outcomes[execution_log.id] = "error"
            else:
                outcomes[execution_log.id] = result
        log.info("escalation_sweep_finished", processed=len(pending), now=tick.isoformat())
        return outcomes

    async def process(self, execution_log: ExecutionLog, now: datetime) -> SweepOutcome:
        try:
            return await self._advance(execution_log, now)
        except Exception as exc:
            message = str(exc) or DEFAULT_ERROR_MESSAGE
            log.exception("escalation_tick_failed", execution_log_id=execution_log.id, error=message)
            await self._finish(execution_log, "error", message)
            return "error"

    async def _advance(self, execution_log: ExecutionLog, now: datetime) -> SweepOutcome:
        if await self._is_acknowledged(execution_log):
            await self._finish(execution_log, "completed", None)
            return "completed"

        last_executed_at = execution_log.last_executed_at or execution_log.created_at
        if now - last_executed_at < timedelta(minutes=execution_log.inter_rule_delay_minutes):
            return "waiting"

        next_rule = await self._rule(execution_log, execution_log.last_executed_rule_order + 1)
        if next_rule is not None:
            if not await self._claim(execution_log, next_rule, now, execution_log.repeat_count):
                return "skipped"
            context = self._context(execution_log, execution_log.repeat_count)
            await self.executor.start_rule_execution(next_rule, context)
            log.info("escalation_rule_started", execution_log_id=execution_log.id, order=next_rule.order)
            return "advanced"

        if execution_log.repeat_count < execution_log.max_repeats:
            first_rule = await self._rule(execution_log, 1)
            if first_rule is None:
                await self._finish(execution_log, "completed", COMPLETED_MESSAGE)
                return "completed"
            repeat_count = execution_log.repeat_count + 1
            if not await self._claim(execution_log, first_rule, now, repeat_count):
                return "skipped"
            await self.executor.start_rule_execution(first_rule, self._context(execution_log, repeat_count))
            log.info("escalation_policy_repeated", execution_log_id=execution_log.id, repeat_count=repeat_count)
            return "repeated"

        await self._finish(execution_log, "completed", COMPLETED_MESSAGE)
        return "completed"

    async def _is_acknowledged(self, execution_log: ExecutionLog) -> bool:
        if execution_log.triggered_by_incident_id:
            kind: Literal["incident", "alert"] = "incident"
            owner_id = execution_log.triggered_by_incident_id
            model: type[TrackedIssue] = Incident
        elif execution_log.triggered_by_alert_id:
            kind = "alert"
            owner_id = execution_log.triggered_by_alert_id
            model = Alert
        else:
            return False
        owner = await self.store.find_one(model, {"id": owner_id}, is_root=True)
        if owner is None:
            raise NotFoundError(f"{kind.capitalize()} {owner_id} not found")
        return await state_reached(self.store, kind, owner, "is_acknowledged_state")

    async def _rule(self, execution_log: ExecutionLog, order: int) -> EscalationRule | None:
        return await self.store.find_one(
            EscalationRule,
            {"project_id": execution_log.project_id, "policy_id": execution_log.policy_id, "order": order},
            is_root=True,
        )

    async def _claim(self, execution_log: ExecutionLog, rule: EscalationRule, now: datetime, repeat_count: int) -> bool:
        changed = await self.store.update_where(
            ExecutionLog,
            {
                "id": execution_log.id,
                "status": "executing",
                "last_executed_rule_order": execution_log.last_executed_rule_order,
                "repeat_count": execution_log.repeat_count,
            },
            {
                "last_executed_rule_order": rule.order,
                "last_executed_rule_id": rule.id,
                "last_executed_at": now,
                "inter_rule_delay_minutes": rule.escalate_after_minutes,
                "repeat_count": repeat_count,
            },
            is_root=True,
        )
        if not changed:
            log.info("escalation_claim_lost", execution_log_id=execution_log.id)
        return changed == 1

    async def _finish(
        self,
        execution_log: ExecutionLog,
        status: Literal["completed", "error"],
        message: str | None,
    ) -> None:
        data: dict[str, Any] = {"status": status}
        if message is not None:
            data["status_message"] = message
        await self.store.update_where(
            ExecutionLog,
            {"id": execution_log.id, "status": "executing"},
            data,
            is_root=True,
        )

    def _context(self, execution_log: ExecutionLog, repeat_count: int) -> RuleExecutionContext:
        return RuleExecutionContext(
            project_id=execution_log.project_id,
            execution_log_id=execution_log.id,
            policy_id=execution_log.policy_id,
            notification_event_type=execution_log.notification_event_type,
            triggered_by_incident_id=execution_log.triggered_by_incident_id,
            triggered_by_alert_id=execution_log.triggered_by_alert_id,
            repeat_count=repeat_count,
        )
