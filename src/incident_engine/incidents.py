from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

import structlog

from incident_engine.escalation import trigger_policies
from incident_engine.events import EventQueue
from incident_engine.exceptions import NotFoundError
from incident_engine.feed import OWNER_LABELS, created_event
from incident_engine.models import Alert, Incident, Monitor, Severity, TimelineEntry, TrackedIssue
from incident_engine.store import Store, contains
from incident_engine.timeline import StatusTimelineManager, find_state, state_reached

log = structlog.get_logger(__name__)

IssueKind = Literal["incident", "alert"]
ISSUE_MODELS: dict[str, type[TrackedIssue]] = {"incident": Incident, "alert": Alert}


def issue_kind(issue: TrackedIssue) -> IssueKind:
    return "incident" if isinstance(issue, Incident) else "alert"


def issue_monitor_ids(issue: TrackedIssue) -> list[str]:
    if isinstance(issue, Incident):
        return list(issue.monitor_ids)
    if isinstance(issue, Alert) and issue.monitor_id:
        return [issue.monitor_id]
    return []


class IssueManager:
    def __init__(self, store: Store, timeline: StatusTimelineManager, events: EventQueue | None = None) -> None:
        self.store = store
        self.timeline = timeline
        self.events = events

    async def get(self, kind: IssueKind, issue_id: str) -> TrackedIssue:
        issue = await self.store.find_one(ISSUE_MODELS[kind], {"id": issue_id}, is_root=True)
        if issue is None:
            raise NotFoundError(f"{OWNER_LABELS[kind]} {issue_id} not found")
        return issue

    async def next_number(self, kind: IssueKind, project_id: str) -> int:
        last = await self.store.find_one(
            ISSUE_MODELS[kind],
            {"project_id": project_id},
            sort="number",
            descending=True,
            is_root=True,
        )
        return (last.number if last is not None else 0) + 1

    async def create(self, issue: TrackedIssue) -> TrackedIssue:
        kind = issue_kind(issue)
        created_state = await find_state(self.store, issue.project_id, kind, "is_created_state")

        if issue.created_by_user_id and not issue.root_cause:
            issue.root_cause = f"{OWNER_LABELS[kind]} created by user {issue.created_by_user_id}"
        issue.number = await self.next_number(kind, issue.project_id)
        issue.current_state_id = created_state.id

        saved = await self.store.create(issue, is_root=True)
        await self.timeline.insert(
            kind,
            saved.id,
            created_state.id,
            at=saved.created_at,
            root_cause=saved.root_cause,
            change_log=saved.created_state_log,
        )

        if not saved.is_created_automatically:
            await self._set_manual_disable(issue_monitor_ids(saved), True)

        await self._publish_created(kind, saved)

        if saved.on_call_policy_ids:
            await trigger_policies(self.store, kind, saved)

        log.info("issue_created", kind=kind, issue_id=saved.id, number=saved.number, project_id=saved.project_id)
        return await self.get(kind, saved.id)

    async def _publish_created(self, kind: IssueKind, issue: TrackedIssue) -> None:
        if self.events is None:
            return
        try:
            severity_name: str | None = None
            if issue.severity_id:
                severity = await self.store.find_one(Severity, {"id": issue.severity_id}, is_root=True)
                severity_name = severity.name if severity is not None else None
            self.events.publish(
                "feed",
                created_event(
                    kind,
                    issue.project_id,
                    issue.id,
                    issue.number,
                    issue.title,
                    issue.description,
                    issue.root_cause,
                    severity_name,
                ),
            )
        except Exception as exc:
            log.exception("issue_created_feed_failed", kind=kind, issue_id=issue.id, error=str(exc))

    async def change_state(
        self,
        kind: IssueKind,
        issue_id: str,
        state_id: str,
        *,
        at: datetime | None = None,
        root_cause: str | None = None,
        change_log: dict[str, Any] | None = None,
        user_id: str | None = None,
    ) -> TimelineEntry | None:
        await self.get(kind, issue_id)
        return await self.timeline.insert(
            kind,
            issue_id,
            state_id,
            at=at,
            root_cause=root_cause,
            change_log=change_log,
            created_by_user_id=user_id,
        )

    async def acknowledge(self, kind: IssueKind, issue_id: str, user_id: str) -> TimelineEntry | None:
        issue = await self.get(kind, issue_id)
        state = await find_state(self.store, issue.project_id, kind, "is_acknowledged_state")
        return await self.change_state(
            kind,
            issue_id,
            state.id,
            root_cause=f"{OWNER_LABELS[kind]} acknowledged by user {user_id}",
            user_id=user_id,
        )

    async def resolve(self, kind: IssueKind, issue_id: str, user_id: str) -> TimelineEntry | None:
        issue = await self.get(kind, issue_id)
        state = await find_state(self.store, issue.project_id, kind, "is_resolved_state")
        entry = await self.change_state(
            kind,
            issue_id,
            state.id,
            root_cause=f"{OWNER_LABELS[kind]} resolved by user {user_id}",
            user_id=user_id,
        )
        if not issue.is_created_automatically:
            await self._release_monitors(kind, issue)
        return entry

    async def is_acknowledged(self, kind: IssueKind, issue_id: str) -> bool:
        issue = await self.get(kind, issue_id)
        return await state_reached(self.store, kind, issue, "is_acknowledged_state")

    async def is_resolved(self, kind: IssueKind, issue_id: str) -> bool:
        issue = await self.get(kind, issue_id)
        return await state_reached(self.store, kind, issue, "is_resolved_state")

    async def open_for_monitor(self, kind: IssueKind, monitor_id: str) -> list[TrackedIssue]:
        where: dict[str, Any] = (
            {"monitor_ids": contains(monitor_id)} if kind == "incident" else {"monitor_id": monitor_id}
        )
        issues = await self.store.find_many(ISSUE_MODELS[kind], where, sort="created_at", is_root=True)
        open_issues: list[TrackedIssue] = []
        for issue in issues:
            if not await state_reached(self.store, kind, issue, "is_resolved_state"):
                open_issues.append(issue)
        return open_issues

    async def has_active_manual_issues(self, kind: IssueKind, monitor_id: str) -> bool:
        return any(not issue.is_created_automatically for issue in await self.open_for_monitor(kind, monitor_id))

    async def _release_monitors(self, kind: IssueKind, issue: TrackedIssue) -> None:
        released = [
            monitor_id
            for monitor_id in issue_monitor_ids(issue)
            if not await self.has_active_manual_issues(kind, monitor_id)
        ]
        await self._set_manual_disable(released, False)

    async def _set_manual_disable(self, monitor_ids: list[str], disabled: bool) -> None:
        for monitor_id in monitor_ids:
            changed = await self.store.update_where(
                Monitor,
                {"id": monitor_id},
                {"disabled_by_manual_incident": disabled},
                is_root=True,
            )
            if changed:
                log.info("monitor_manual_disable_changed", monitor_id=monitor_id, disabled=disabled)
