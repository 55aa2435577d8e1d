from __future__ import annotations

import asyncio
import json
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal, Protocol, TypeVar

from pydantic import BaseModel

from incident_engine.exceptions import NotFoundError, ScopeError
from incident_engine.models import (
    Alert,
    EscalationRule,
    ExecutionLog,
    Incident,
    Monitor,
    MonitorProbe,
    OnCallPolicy,
    ScheduledMaintenance,
    Severity,
    StateDefinition,
    TimelineEntry,
    utc_now,
)

M = TypeVar("M", bound=BaseModel)

ConditionOp = Literal["eq", "ne", "lt", "lte", "gt", "gte", "in", "not_in", "contains"]

STORED_MODELS: tuple[type[BaseModel], ...] = (
    Monitor,
    MonitorProbe,
    StateDefinition,
    Severity,
    TimelineEntry,
    Incident,
    Alert,
    ScheduledMaintenance,
    OnCallPolicy,
    EscalationRule,
    ExecutionLog,
)


@dataclass(frozen=True)
class Condition:
    op: ConditionOp
    value: Any

    def matches(self, actual: Any) -> bool:
        if self.op == "eq":
            return actual == self.value
        if self.op == "ne":
            return actual != self.value
        if self.op == "in":
            return actual in self.value
        if self.op == "not_in":
            return actual not in self.value
        if self.op == "contains":
            return isinstance(actual, (list, tuple, set)) and self.value in actual
        if actual is None:
            return False
        if self.op == "lt":
            return actual < self.value
        if self.op == "lte":
            return actual <= self.value
        if self.op == "gt":
            return actual > self.value
        return actual >= self.value


def ne(value: Any) -> Condition:
    return Condition("ne", value)


def lt(value: Any) -> Condition:
    return Condition("lt", value)


def lte(value: Any) -> Condition:
    return Condition("lte", value)


def gt(value: Any) -> Condition:
    return Condition("gt", value)


def gte(value: Any) -> Condition:
    return Condition("gte", value)


def in_(values: Any) -> Condition:
    return Condition("in", list(values))


def not_in(values: Any) -> Condition:
    return Condition("not_in", list(values))


def contains(value: Any) -> Condition:
    return Condition("contains", value)


Where = Mapping[str, Any]


class Store(Protocol):
    async def find_one(
        self,
        model: type[M],
        where: Where | None = None,
        *,
        sort: str | None = None,
        descending: bool = False,
        tenant_id: str | None = None,
        is_root: bool = False,
    ) -> M | None: ...

    async def find_many(
        self,
        model: type[M],
        where: Where | None = None,
        *,
        sort: str | None = None,
        descending: bool = False,
        skip: int = 0,
        limit: int | None = None,
        tenant_id: str | None = None,
        is_root: bool = False,
    ) -> list[M]: ...

    async def count(
        self,
        model: type[M],
        where: Where | None = None,
        *,
        tenant_id: str | None = None,
        is_root: bool = False,
    ) -> int: ...

    async def create(self, item: M, *, tenant_id: str | None = None, is_root: bool = False) -> M: ...

    async def update_by_id(
        self,
        model: type[M],
        item_id: str,
        data: Mapping[str, Any],
        *,
        tenant_id: str | None = None,
        is_root: bool = False,
    ) -> M: ...

    async def update_where(
        self,
        model: type[M],
        where: Where,
        data: Mapping[str, Any],
        *,
        tenant_id: str | None = None,
        is_root: bool = False,
    ) -> int: ...

    async def delete_by_id(
        self,
        model: type[M],
        item_id: str,
        *,
        tenant_id: str | None = None,
        is_root: bool = False,
    ) -> None: ...

    async def delete_where(
        self,
        model: type[M],
        where: Where,
        *,
        tenant_id: str | None = None,
        is_root: bool = False,
    ) -> int: ...


def _matches(item: BaseModel, where: Where | None) -> bool:
    if not where:
        return True
    for field, expected in where.items():
        actual = getattr(item, field, None)
        if isinstance(expected, Condition):
            if not expected.matches(actual):
                return False
        elif actual != expected:
            return False
    return True


def _sort_key(field: str) -> Any:
    def key(item: BaseModel) -> tuple[bool, Any]:
        value = getattr(item, field, None)
        return (value is None, value if value is not None else 0)

    return key


class InMemoryStore:
    def __init__(self) -> None:
        self._collections: dict[str, dict[str, BaseModel]] = {}

    def _collection(self, model: type[BaseModel]) -> dict[str, BaseModel]:
        return self._collections.setdefault(model.__name__, {})

    def _scope(self, where: Where | None, tenant_id: str | None, is_root: bool) -> dict[str, Any]:
        scoped: dict[str, Any] = dict(where or {})
        if is_root:
            return scoped
        if tenant_id is None:
            raise ScopeError("tenant_id is required for non-root store access")
        scoped["project_id"] = tenant_id
        return scoped

    def _select(
        self,
        model: type[M],
        where: Where | None,
        sort: str | None,
        descending: bool,
    ) -> list[M]:
        items = [item for item in self._collection(model).values() if _matches(item, where)]
        if sort is not None:
            if descending:
                present = [item for item in items if getattr(item, sort, None) is not None]
                missing = [item for item in items if getattr(item, sort, None) is None]
                present.sort(key=lambda item: getattr(item, sort), reverse=True)
                items = present + missing
            else:
                items.sort(key=_sort_key(sort))
        return [item.model_copy(deep=True) for item in items]  # type: ignore[misc]

    async def find_one(
        self,
        model: type[M],
        where: Where | None = None,
        *,
        sort: str | None = None,
        descending: bool = False,
        tenant_id: str | None = None,
        is_root: bool = False,
    ) -> M | None:
        items = self._select(model, self._scope(where, tenant_id, is_root), sort, descending)
        return items[0] if items else None

    async def find_many(
        self,
        model: type[M],
        where: Where | None = None,
        *,
        sort: str | None = None,
        descending: bool = False,
        skip: int = 0,
        limit: int | None = None,
        tenant_id: str | None = None,
        is_root: bool = False,
    ) -> list[M]:
        items = self._select(model, self._scope(where, tenant_id, is_root), sort, descending)
        end = None if limit is None else skip + limit
        return items[skip:end]

    async def count(
        self,
        model: type[M],
        where: Where | None = None,
        *,
        tenant_id: str | None = None,
        is_root: bool = False,
    ) -> int:
        scoped = self._scope(where, tenant_id, is_root)
        return sum(1 for item in self._collection(model).values() if _matches(item, scoped))

    async def create(self, item: M, *, tenant_id: str | None = None, is_root: bool = False) -> M:
        if not is_root:
            if tenant_id is None:
                raise ScopeError("tenant_id is required for non-root store access")
            if getattr(item, "project_id", None) != tenant_id:
                raise ScopeError("item project_id does not match tenant")
        collection = self._collection(type(item))
        item_id = str(getattr(item, "id"))
        collection[item_id] = item.model_copy(deep=True)
        await self._persist()
        return item.model_copy(deep=True)

    async def update_by_id(
        self,
        model: type[M],
        item_id: str,
        data: Mapping[str, Any],
        *,
        tenant_id: str | None = None,
        is_root: bool = False,
    ) -> M:
        scoped = self._scope({"id": item_id}, tenant_id, is_root)
        collection = self._collection(model)
        current = collection.get(item_id)
        if current is None or not _matches(current, scoped):
            raise NotFoundError(f"{model.__name__} {item_id} not found")
        updated = model.model_validate({**current.model_dump(), **data})
        collection[item_id] = updated
        await self._persist()
        return updated.model_copy(deep=True)

    async def update_where(
        self,
        model: type[M],
        where: Where,
        data: Mapping[str, Any],
        *,
        tenant_id: str | None = None,
        is_root: bool = False,
    ) -> int:
        scoped = self._scope(where, tenant_id, is_root)
        collection = self._collection(model)
        changed = 0
        for item_id, current in list(collection.items()):
            if not _matches(current, scoped):
                continue
            collection[item_id] = model.model_validate({**current.model_dump(), **data})
            changed += 1
        if changed:
            await self._persist()
        return changed

    async def delete_by_id(
        self,
        model: type[M],
        item_id: str,
        *,
        tenant_id: str | None = None,
        is_root: bool = False,
    ) -> None:
        scoped = self._scope({"id": item_id}, tenant_id, is_root)
        collection = self._collection(model)
        current = collection.get(item_id)
        if current is None or not _matches(current, scoped):
            raise NotFoundError(f"{model.__name__} {item_id} not found")
        del collection[item_id]
        await self._persist()

    async def delete_where(
        self,
        model: type[M],
        where: Where,
        *,
        tenant_id: str | None = None,
        is_root: bool = False,
    ) -> int:
        scoped = self._scope(where, tenant_id, is_root)
        collection = self._collection(model)
        doomed = [item_id for item_id, item in collection.items() if _matches(item, scoped)]
        for item_id in doomed:
            del collection[item_id]
        if doomed:
            await self._persist()
        return len(doomed)

    async def _persist(self) -> None:
        return None


def empty_snapshot() -> dict[str, Any]:
    return {"version": 1, "last_updated": utc_now().isoformat(), "collections": {}}


class JsonFileStore(InMemoryStore):
    def __init__(self, path: str) -> None:
        super().__init__()
        self.path = Path(path)
        self._write_lock = asyncio.Lock()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            return
        raw = self.path.read_text(encoding="utf-8").strip()
        if not raw:
            return
        parsed = json.loads(raw)
        if not isinstance(parsed, dict):
            return
        collections = parsed.get("collections")
        if not isinstance(collections, dict):
            return
        by_name = {model.__name__: model for model in STORED_MODELS}
        for name, items in collections.items():
            model = by_name.get(name)
            if model is None or not isinstance(items, list):
                continue
            target = self._collection(model)
            for payload in items:
                if not isinstance(payload, dict):
                    continue
                item = model.model_validate(payload)
                target[str(getattr(item, "id"))] = item

    async def _persist(self) -> None:
        async with self._write_lock:
            snapshot = empty_snapshot()
            snapshot["collections"] = {
                name: [item.model_dump(mode="json") for item in items.values()]
                for name, items in self._collections.items()
            }
            await asyncio.to_thread(self._atomic_dump, self.path, snapshot)

    def _atomic_dump(self, path: Path, payload: dict[str, Any]) -> None:
        with tempfile.NamedTemporaryFile("w", delete=False, dir=path.parent, encoding="utf-8") as handle:
            json.dump(payload, handle, ensure_ascii=True, indent=2, sort_keys=True)
            handle.write("\n")
            tmp_path = Path(handle.name)
        tmp_path.replace(path)
