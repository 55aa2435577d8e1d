from __future__ import annotations

import asyncio
import weakref
from datetime import datetime
from typing import Any, Literal

import structlog
from pydantic import BaseModel

from incident_engine.checks import as_utc
from incident_engine.events import EventQueue, MetricsRefresh
from incident_engine.exceptions import ConfigurationError, NotFoundError, TimelineError
from incident_engine.feed import OWNER_LABELS, state_changed_event, state_removed_event
from incident_engine.models import OWNER_MODELS, OwnerKind, StateDefinition, TimelineEntry, utc_now
from incident_engine.store import Store, gt, lte

log = structlog.get_logger(__name__)

StateFlag = Literal[
    "is_created_state",
    "is_acknowledged_state",
    "is_resolved_state",
    "is_scheduled_state",
    "is_ongoing_state",
    "is_ended_state",
]

METRIC_OWNER_KINDS: frozenset[str] = frozenset({"alert", "incident"})


async def find_state(store: Store, project_id: str, owner_kind: OwnerKind, flag: StateFlag) -> StateDefinition:
    state = await store.find_one(
        StateDefinition,
        {"project_id": project_id, "owner_kind": owner_kind, flag: True},
        sort="order",
        is_root=True,
    )
    if state is None:
        label = flag.removeprefix("is_").removesuffix("_state")
        raise ConfigurationError(f"Project {project_id} does not have a {label} {owner_kind} state")
    return state


async def state_reached(store: Store, owner_kind: OwnerKind, owner: BaseModel, flag: StateFlag) -> bool:
    target = await find_state(store, str(getattr(owner, "project_id")), owner_kind, flag)
    current_state_id = getattr(owner, "current_state_id", None)
    if current_state_id is None:
        return False
    current = await store.find_one(StateDefinition, {"id": current_state_id}, is_root=True)
    if current is None:
        return False
    return current.order >= target.order


def owner_display_name(owner_kind: OwnerKind, owner: BaseModel) -> str:
    if owner_kind == "monitor":
        return str(getattr(owner, "name"))
    if owner_kind == "scheduled_maintenance":
        return str(getattr(owner, "title"))
    return str(getattr(owner, "number"))


class StatusTimelineManager:
    def __init__(self, store: Store, events: EventQueue | None = None) -> None:
        self.store = store
        self.events = events
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def _lock(self, owner_id: str) -> asyncio.Lock:
        lock = self._locks.get(owner_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[owner_id] = lock
        return lock

    async def _owner(self, owner_kind: OwnerKind, owner_id: str) -> BaseModel:
        owner = await self.store.find_one(OWNER_MODELS[owner_kind], {"id": owner_id}, is_root=True)
        if owner is None:
            raise NotFoundError(f"{OWNER_LABELS[owner_kind]} {owner_id} not found")
        return owner

    async def entries(self, owner_id: str) -> list[TimelineEntry]:
        return await self.store.find_many(TimelineEntry, {"owner_id": owner_id}, sort="starts_at", is_root=True)

    async def current_entry(self, owner_id: str) -> TimelineEntry | None:
        return await self.store.find_one(TimelineEntry, {"owner_id": owner_id, "ends_at": None}, is_root=True)

    async def created_state_id(self, project_id: str, owner_kind: OwnerKind) -> str:
        return (await find_state(self.store, project_id, owner_kind, "is_created_state")).id

    async def acknowledged_state_id(self, project_id: str, owner_kind: OwnerKind) -> str:
        return (await find_state(self.store, project_id, owner_kind, "is_acknowledged_state")).id

    async def resolved_state_id(self, project_id: str, owner_kind: OwnerKind) -> str:
        return (await find_state(self.store, project_id, owner_kind, "is_resolved_state")).id

    async def insert(
        self,
        owner_kind: OwnerKind,
        owner_id: str,
        state_id: str,
        at: datetime | None = None,
        root_cause: str | None = None,
        change_log: dict[str, Any] | None = None,
        created_by_user_id: str | None = None,
    ) -> TimelineEntry | None:
        starts_at = as_utc(at) if at is not None else utc_now()
        async with self._lock(owner_id):
            owner = await self._owner(owner_kind, owner_id)
            earlier = await self.store.find_many(
                TimelineEntry,
                {"owner_id": owner_id, "starts_at": lte(starts_at)},
                sort="starts_at",
                is_root=True,
            )
            # Rows sharing a starts_at keep insertion order, so the last one is the live predecessor.
            predecessor = earlier[-1] if earlier else None
            if predecessor is not None and predecessor.state_id == state_id:
                log.debug("timeline_insert_skipped", owner_kind=owner_kind, owner_id=owner_id, state_id=state_id)
                return None

            successor = await self.store.find_one(
                TimelineEntry,
                {"owner_id": owner_id, "starts_at": gt(starts_at)},
                sort="starts_at",
                is_root=True,
            )

            if created_by_user_id and not root_cause:
                root_cause = f"{OWNER_LABELS[owner_kind]} state created by user {created_by_user_id}"

            entry = await self.store.create(
                TimelineEntry(
                    project_id=str(getattr(owner, "project_id")),
                    owner_id=owner_id,
                    owner_kind=owner_kind,
                    state_id=state_id,
                    starts_at=starts_at,
                    ends_at=successor.starts_at if successor is not None else None,
                    root_cause=root_cause,
                    state_change_log=change_log,
                    created_by_user_id=created_by_user_id,
                ),
                is_root=True,
            )

            if predecessor is not None:
                await self.store.update_by_id(TimelineEntry, predecessor.id, {"ends_at": starts_at}, is_root=True)

            if entry.ends_at is None:
                await self.store.update_by_id(
                    OWNER_MODELS[owner_kind],
                    owner_id,
                    {"current_state_id": state_id},
                    is_root=True,
                )

        log.info("timeline_entry_inserted", owner_kind=owner_kind, owner_id=owner_id, state_id=state_id)
        await self._publish_change(owner_kind, owner, entry, removed=False)
        return entry

    async def delete(self, entry_id: str) -> None:
        target = await self.store.find_one(TimelineEntry, {"id": entry_id}, is_root=True)
        if target is None:
            raise NotFoundError(f"Timeline entry {entry_id} not found")

        async with self._lock(target.owner_id):
            entries = await self.entries(target.owner_id)
            index = next((i for i, item in enumerate(entries) if item.id == entry_id), None)
            if index is None:
                raise NotFoundError(f"Timeline entry {entry_id} not found")
            if len(entries) == 1:
                raise TimelineError("Cannot delete the only status timeline entry. An owner needs at least one state.")

            deleted = entries[index]
            predecessor = entries[index - 1] if index > 0 else None
            successor = entries[index + 1] if index + 1 < len(entries) else None

            await self.store.delete_by_id(TimelineEntry, deleted.id, is_root=True)

            if predecessor is not None and successor is None:
                await self.store.update_by_id(TimelineEntry, predecessor.id, {"ends_at": deleted.ends_at}, is_root=True)
            elif predecessor is not None and successor is not None:
                await self.store.update_by_id(
                    TimelineEntry,
                    predecessor.id,
                    {"ends_at": successor.starts_at},
                    is_root=True,
                )

            remaining = [item for item in entries if item.id != deleted.id]
            await self.store.update_by_id(
                OWNER_MODELS[deleted.owner_kind],
                deleted.owner_id,
                {"current_state_id": remaining[-1].state_id},
                is_root=True,
            )
            owner = await self._owner(deleted.owner_kind, deleted.owner_id)

        log.info("timeline_entry_deleted", owner_kind=deleted.owner_kind, owner_id=deleted.owner_id, entry_id=entry_id)
        await self._publish_change(deleted.owner_kind, owner, deleted, removed=True)

    async def _publish_change(
        self,
        owner_kind: OwnerKind,
        owner: BaseModel,
        entry: TimelineEntry,
        removed: bool,
    ) -> None:
        if self.events is None:
            return
        try:
            state = await self.store.find_one(StateDefinition, {"id": entry.state_id}, is_root=True)
            name = owner_display_name(owner_kind, owner)
            if removed:
                self.events.publish("feed", state_removed_event(owner_kind, name, entry, state))
            else:
                self.events.publish("feed", state_changed_event(owner_kind, name, entry, state))
            if owner_kind in METRIC_OWNER_KINDS:
                self.events.publish(
                    "metrics_refresh",
                    MetricsRefresh(project_id=entry.project_id, owner_kind=owner_kind, owner_id=entry.owner_id),
                )
        except Exception as exc:
            log.exception("timeline_side_effects_failed", owner_id=entry.owner_id, error=str(exc))
