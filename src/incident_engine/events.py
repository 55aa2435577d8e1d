from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Any, Literal

import structlog
from pydantic import BaseModel

from incident_engine.models import OwnerKind

log = structlog.get_logger(__name__)

EventKind = Literal["feed", "metrics_refresh"]
EventHandler = Callable[[Any], Awaitable[None]]


class MetricsRefresh(BaseModel):
    project_id: str
    owner_kind: OwnerKind
    owner_id: str


@dataclass
class Delivery:
    kind: EventKind
    payload: Any
    handler: EventHandler
    attempts: int = 0


class EventQueue:
    def __init__(self, max_attempts: int = 5, retry_delays: Sequence[float] = (1.0, 5.0, 15.0)) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if any(delay < 0 for delay in retry_delays):
            raise ValueError("retry delays must not be negative")
        self.max_attempts = max_attempts
        self.retry_delays = list(retry_delays)
        self._retries: set[asyncio.Task[None]] = set()
        self._queue: asyncio.Queue[Delivery] = asyncio.Queue()
        self._handlers: dict[str, list[EventHandler]] = {}
        self.dropped = 0

    def subscribe(self, kind: EventKind, handler: EventHandler) -> None:
        self._handlers.setdefault(kind, []).append(handler)

    def publish(self, kind: EventKind, payload: Any) -> None:
        handlers = self._handlers.get(kind, [])
        if not handlers:
            log.debug("event_without_subscribers", kind=kind)
            return
        for handler in handlers:
            self._queue.put_nowait(Delivery(kind=kind, payload=payload, handler=handler))

    @property
    def pending(self) -> int:
        return self._queue.qsize() + len(self._retries)

    def retry_delay(self, attempts: int) -> float:
        if not self.retry_delays:
            return 0.0
        return self.retry_delays[min(attempts, len(self.retry_delays)) - 1]

    async def _requeue_after(self, delivery: Delivery, delay: float) -> None:
        await asyncio.sleep(delay)
        self._queue.put_nowait(delivery)

    def _schedule_retry(self, delivery: Delivery) -> float:
        delay = self.retry_delay(delivery.attempts)
        task = asyncio.create_task(self._requeue_after(delivery, delay))
        self._retries.add(task)
        task.add_done_callback(self._retries.discard)
        return delay

    async def _dispatch(self, delivery: Delivery) -> None:
        delivery.attempts += 1
        try:
            await delivery.handler(delivery.payload)
        except Exception as exc:
            if delivery.attempts < self.max_attempts:
                delay = self._schedule_retry(delivery)
                log.warning(
                    "event_delivery_failed",
                    kind=delivery.kind,
                    attempts=delivery.attempts,
                    retry_in_seconds=delay,
                    error=str(exc),
                )
                return
            self.dropped += 1
            log.exception("event_dropped", kind=delivery.kind, attempts=delivery.attempts, error=str(exc))

    async def drain(self) -> int:
        processed = 0
        while True:
            while not self._queue.empty():
                delivery = self._queue.get_nowait()
                try:
                    await self._dispatch(delivery)
                finally:
                    self._queue.task_done()
                processed += 1
            if not self._retries:
                return processed
            await asyncio.wait(set(self._retries), return_when=asyncio.FIRST_COMPLETED)

    async def run(self) -> None:
        while True:
            delivery = await self._queue.get()
            try:
                await self._dispatch(delivery)
            finally:
                self._queue.task_done()
