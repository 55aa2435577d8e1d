from __future__ import annotations

from datetime import datetime

import structlog

from incident_engine.exceptions import NotFoundError
from incident_engine.models import Monitor, ScheduledMaintenance, StateDefinition, TimelineEntry
from incident_engine.store import Store
from incident_engine.timeline import StatusTimelineManager, find_state

log = structlog.get_logger(__name__)


class MaintenanceManager:
    def __init__(self, store: Store, timeline: StatusTimelineManager) -> None:
        self.store = store
        self.timeline = timeline

    async def get(self, event_id: str) -> ScheduledMaintenance:
        event = await self.store.find_one(ScheduledMaintenance, {"id": event_id}, is_root=True)
        if event is None:
            raise NotFoundError(f"Scheduled maintenance {event_id} not found")
        return event

    async def create(self, event: ScheduledMaintenance) -> ScheduledMaintenance:
        scheduled = await find_state(self.store, event.project_id, "scheduled_maintenance", "is_scheduled_state")
        event.current_state_id = scheduled.id
        saved = await self.store.create(event, is_root=True)
        await self.timeline.insert("scheduled_maintenance", saved.id, scheduled.id, at=saved.created_at)
        log.info("maintenance_created", event_id=saved.id, project_id=saved.project_id)
        return await self.get(saved.id)

    async def change_state(
        self,
        event_id: str,
        state_id: str,
        at: datetime | None = None,
        user_id: str | None = None,
    ) -> TimelineEntry | None:
        event = await self.get(event_id)
        entry = await self.timeline.insert(
            "scheduled_maintenance",
            event_id,
            state_id,
            at=at,
            created_by_user_id=user_id,
        )
        if entry is None:
            return None

        state = await self.store.find_one(StateDefinition, {"id": state_id}, is_root=True)
        if state is not None and state.is_ongoing_state:
            await self._flag_monitors(event, True)
            await self.change_attached_monitor_states(event)
        elif state is not None and state.is_ended_state:
            await self._flag_monitors(event, False)
        return entry

    async def change_attached_monitor_states(self, event: ScheduledMaintenance) -> list[TimelineEntry]:
        if not event.change_monitor_status_to_id:
            return []
        changed: list[TimelineEntry] = []
        for monitor_id in event.monitor_ids:
            entry = await self.timeline.insert(
                "monitor",
                monitor_id,
                event.change_monitor_status_to_id,
                root_cause=f"Changed because of scheduled maintenance event: {event.id}",
            )
            if entry is not None:
                changed.append(entry)
        return changed

    async def _flag_monitors(self, event: ScheduledMaintenance, disabled: bool) -> None:
        for monitor_id in event.monitor_ids:
            await self.store.update_where(
                Monitor,
                {"id": monitor_id},
                {"disabled_by_scheduled_maintenance": disabled},
                is_root=True,
            )
        log.info("maintenance_monitors_flagged", event_id=event.id, disabled=disabled, monitors=len(event.monitor_ids))
