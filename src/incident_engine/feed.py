from __future__ import annotations

from incident_engine.models import FeedEvent, OwnerKind, StateDefinition, TimelineEntry

OWNER_LABELS: dict[str, str] = {
    "monitor": "Monitor",
    "alert": "Alert",
    "incident": "Incident",
    "scheduled_maintenance": "Scheduled Maintenance",
}


def state_emoji(state: StateDefinition | None) -> str:
    if state is None:
        return "➡️"
    if state.is_resolved_state:
        return "✅"
    if state.is_acknowledged_state:
        return "👀"
    if state.is_created_state:
        return "🔴"
    return "➡️"


def owner_title(owner_kind: OwnerKind, owner_name: str) -> str:
    return f"{OWNER_LABELS[owner_kind]} {owner_name}"


def state_changed_event(
    owner_kind: OwnerKind,
    owner_name: str,
    entry: TimelineEntry,
    state: StateDefinition | None,
) -> FeedEvent:
    state_name = state.name if state is not None else entry.state_id
    markdown = f"{state_emoji(state)} Changed **{owner_title(owner_kind, owner_name)} State** to **{state_name}**"
    more_info = f"**Cause:**\n{entry.root_cause}" if entry.root_cause else None
    return FeedEvent(
        project_id=entry.project_id,
        owner_id=entry.owner_id,
        owner_kind=owner_kind,
        event_type="state_changed",
        markdown=markdown,
        more_info_markdown=more_info,
        color=state.color if state is not None else None,
        notify_user_id=entry.created_by_user_id,
    )


def state_removed_event(
    owner_kind: OwnerKind,
    owner_name: str,
    entry: TimelineEntry,
    state: StateDefinition | None,
) -> FeedEvent:
    state_name = state.name if state is not None else entry.state_id
    return FeedEvent(
        project_id=entry.project_id,
        owner_id=entry.owner_id,
        owner_kind=owner_kind,
        event_type="state_removed",
        markdown=f"🗑️ Removed **{state_name}** from the **{owner_title(owner_kind, owner_name)}** timeline",
        color=state.color if state is not None else None,
    )


def created_event(
    owner_kind: OwnerKind,
    project_id: str,
    owner_id: str,
    number: int,
    title: str,
    description: str,
    root_cause: str | None,
    severity_name: str | None,
) -> FeedEvent:
    label = OWNER_LABELS[owner_kind]
    lines = [f"🚨 **{label} {number} Created**:", "", f"**{title}**"]
    if description:
        lines.extend(["", "**Description**:", description])
    if severity_name:
        lines.extend(["", f"**Severity**: {severity_name}"])
    more_info = f"**Root Cause:**\n{root_cause}" if root_cause else None
    return FeedEvent(
        project_id=project_id,
        owner_id=owner_id,
        owner_kind=owner_kind,
        event_type="created",
        markdown="\n".join(lines),
        more_info_markdown=more_info,
        color="#d32f2f",
    )
