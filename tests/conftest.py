from __future__ import annotations

from dataclasses import dataclass, field

import pytest
import pytest_asyncio

from incident_engine.config import Settings
from incident_engine.models import Monitor, OwnerKind, Severity, StateDefinition
from incident_engine.store import InMemoryStore

PROJECT_ID = "proj-1"


@dataclass
class Seed:
    store: InMemoryStore
    project_id: str = PROJECT_ID
    states: dict[str, dict[str, StateDefinition]] = field(default_factory=dict)
    severities: list[Severity] = field(default_factory=list)

    def state(self, owner_kind: OwnerKind, name: str) -> StateDefinition:
        return self.states[owner_kind][name]

    async def add_monitor(self, **fields: object) -> Monitor:
        payload: dict[str, object] = {
            "project_id": self.project_id,
            "name": "API",
            "monitor_type": "api",
            "current_state_id": self.state("monitor", "operational").id,
        }
        payload.update(fields)
        return await self.store.create(Monitor.model_validate(payload), is_root=True)


STATE_LAYOUT: dict[str, list[tuple[str, int, str | None]]] = {
    "monitor": [("operational", 1, None), ("degraded", 2, None), ("offline", 3, None), ("maintenance", 4, None)],
    "incident": [
        ("identified", 1, "is_created_state"),
        ("acknowledged", 2, "is_acknowledged_state"),
        ("resolved", 3, "is_resolved_state"),
    ],
    "alert": [
        ("identified", 1, "is_created_state"),
        ("acknowledged", 2, "is_acknowledged_state"),
        ("resolved", 3, "is_resolved_state"),
    ],
    "scheduled_maintenance": [
        ("scheduled", 1, "is_scheduled_state"),
        ("ongoing", 2, "is_ongoing_state"),
        ("ended", 3, "is_ended_state"),
    ],
}


async def seed_states(store: InMemoryStore, project_id: str = PROJECT_ID) -> dict[str, dict[str, StateDefinition]]:
    states: dict[str, dict[str, StateDefinition]] = {}
    for owner_kind, layout in STATE_LAYOUT.items():
        states[owner_kind] = {}
        for name, order, flag in layout:
            flags = {flag: True} if flag else {}
            state = StateDefinition(
                id=f"{owner_kind}-{name}",
                project_id=project_id,
                owner_kind=owner_kind,  # type: ignore[arg-type]
                name=name.capitalize(),
                order=order,
                **flags,
            )
            states[owner_kind][name] = await store.create(state, is_root=True)
    return states


@pytest_asyncio.fixture
async def seed() -> Seed:
    store = InMemoryStore()
    states = await seed_states(store)
    severities = [
        await store.create(Severity(id="sev-critical", project_id=PROJECT_ID, name="Critical", order=1), is_root=True),
        await store.create(Severity(id="sev-minor", project_id=PROJECT_ID, name="Minor", order=2), is_root=True),
    ]
    return Seed(store=store, states=states, severities=severities)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        store_path="unused.json",
        slack_webhook_url=None,
        event_max_attempts=3,
        event_retry_plan_seconds="0",
    )

