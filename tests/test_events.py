from __future__ import annotations

import asyncio
import time

import pytest

from incident_engine.events import EventQueue, MetricsRefresh


class FlakyHandler:
    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.calls = 0
        self.received: list[object] = []

    async def __call__(self, payload: object) -> None:
        self.calls += 1
        if self.calls <= self.failures:
            raise RuntimeError("downstream unavailable")
        self.received.append(payload)


def refresh_event(owner_id: str = "inc-1") -> MetricsRefresh:
    return MetricsRefresh(project_id="p", owner_kind="incident", owner_id=owner_id)


@pytest.mark.asyncio
async def test_every_subscriber_gets_its_own_delivery() -> None:
    queue = EventQueue()
    first = FlakyHandler(failures=0)
    second = FlakyHandler(failures=0)
    queue.subscribe("metrics_refresh", first)
    queue.subscribe("metrics_refresh", second)

    queue.publish("metrics_refresh", refresh_event())
    assert queue.pending == 2
    assert await queue.drain() == 2

    assert len(first.received) == 1 and len(second.received) == 1


@pytest.mark.asyncio
async def test_failed_delivery_is_retried_independently() -> None:
    queue = EventQueue(max_attempts=3, retry_delays=(0.0,))
    flaky = FlakyHandler(failures=2)
    steady = FlakyHandler(failures=0)
    queue.subscribe("feed", flaky)
    queue.subscribe("feed", steady)

    queue.publish("feed", "payload")
    await queue.drain()

    assert flaky.calls == 3
    assert flaky.received == ["payload"]
    assert steady.calls == 1
    assert queue.dropped == 0


@pytest.mark.asyncio
async def test_delivery_dropped_after_max_attempts() -> None:
    queue = EventQueue(max_attempts=2, retry_delays=(0.0,))
    broken = FlakyHandler(failures=10)
    queue.subscribe("feed", broken)

    queue.publish("feed", "payload")
    await queue.drain()

    assert broken.calls == 2
    assert queue.dropped == 1
    assert queue.pending == 0


@pytest.mark.asyncio
async def test_publish_without_subscribers_is_ignored() -> None:
    queue = EventQueue()
    queue.publish("feed", "payload")
    assert queue.pending == 0


@pytest.mark.asyncio
async def test_run_processes_in_background() -> None:
    queue = EventQueue()
    handler = FlakyHandler(failures=0)
    queue.subscribe("metrics_refresh", handler)
    worker = asyncio.create_task(queue.run())

    queue.publish("metrics_refresh", refresh_event("inc-9"))
    for _ in range(50):
        if handler.received:
            break
        await asyncio.sleep(0)
    worker.cancel()
    with pytest.raises(asyncio.CancelledError):
        await worker

    assert handler.received == [refresh_event("inc-9")]


def test_max_attempts_must_be_positive() -> None:
    with pytest.raises(ValueError):
        EventQueue(max_attempts=0)


@pytest.mark.asyncio
async def test_retries_wait_for_the_delay_plan() -> None:
    queue = EventQueue(max_attempts=3, retry_delays=(0.05, 0.1))
    flaky = FlakyHandler(failures=2)
    steady = FlakyHandler(failures=0)
    queue.subscribe("feed", flaky)
    queue.subscribe("feed", steady)

    queue.publish("feed", "payload")
    started = time.monotonic()
    await queue.drain()

    assert time.monotonic() - started >= 0.15
    assert flaky.received == ["payload"]
    assert steady.calls == 1
    assert queue.pending == 0


def test_retry_delay_repeats_the_last_step() -> None:
    queue = EventQueue(retry_delays=(1.0, 5.0))
    assert [queue.retry_delay(attempts) for attempts in (1, 2, 3, 7)] == [1.0, 5.0, 5.0, 5.0]
    assert EventQueue(retry_delays=()).retry_delay(3) == 0.0
    with pytest.raises(ValueError):
        EventQueue(retry_delays=(-1.0,))
