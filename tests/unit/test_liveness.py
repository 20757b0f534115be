from __future__ import annotations

import asyncio

import pytest
from pipeline_doubles import EventRecorder

from datasmith.application.services.events import EventBus
from datasmith.application.services.liveness import LivenessLease
from datasmith.domain.models.events import ProgressEvent


def _lease(bus: EventBus) -> LivenessLease:
    return LivenessLease(
        bus,
        job_id="job-1",
        attempt=1,
        progress=42,
        stage="classify",
        message="Classifying 12 candidates",
        interval=0.01,
    )


def test_lease_beats_with_fixed_progress_until_released() -> None:
    async def scenario() -> tuple[list[ProgressEvent], int]:
        bus = EventBus()
        recorder = EventRecorder(bus)
        async with _lease(bus) as lease:
            await asyncio.sleep(0.08)
        assert not lease.active
        released_with = len(recorder.events)
        await asyncio.sleep(0.05)
        assert len(recorder.events) == released_with
        recorder.close()
        return list(recorder.events), lease.beats

    events, beats = asyncio.run(scenario())

    assert len(events) >= 3
    assert len(events) == beats
    assert all(isinstance(e, ProgressEvent) and e.heartbeat for e in events)
    assert {e.progress for e in events} == {42}
    assert "heartbeat #1" in events[0].message


def test_lease_is_released_when_body_raises() -> None:
    async def scenario() -> LivenessLease:
        bus = EventBus()
        lease = _lease(bus)
        with pytest.raises(RuntimeError):
            async with lease:
                await asyncio.sleep(0.02)
                raise RuntimeError("stage blew up")
        return lease

    lease = asyncio.run(scenario())

    assert not lease.active
    assert lease.beats >= 1


def test_lease_survives_failing_subscriber() -> None:
    async def scenario() -> int:
        bus = EventBus()
        calls = 0

        async def flaky(event: object) -> None:
            nonlocal calls
            calls += 1
            if calls == 2:
                raise RuntimeError("store hiccup")

        bus.subscribe(flaky)
        async with _lease(bus):
            await asyncio.sleep(0.06)
        return calls

    assert asyncio.run(scenario()) >= 3


def test_event_bus_delivers_in_order_and_unsubscribes() -> None:
    async def scenario() -> list[str]:
        bus = EventBus()
        seen: list[str] = []

        async def first(event: object) -> None:
            seen.append("first")

        async def second(event: object) -> None:
            seen.append("second")

        bus.subscribe(first)
        unsubscribe = bus.subscribe(second)
        event = ProgressEvent(job_id="j", attempt=1, progress=10, stage="segment", message="m")
        await bus.publish(event)
        unsubscribe()
        await bus.publish(event)
        return seen

    assert asyncio.run(scenario()) == ["first", "second", "first"]


def test_release_waits_for_an_in_flight_heartbeat() -> None:
    async def scenario() -> tuple[int, int, int]:
        bus = EventBus()
        started = 0
        finished = 0

        async def slow_store(event: object) -> None:
            nonlocal started, finished
            started += 1
            await asyncio.sleep(0.05)
            finished += 1

        bus.subscribe(slow_store)
        lease = _lease(bus)
        async with lease:
            # Entering publishes one beat; wait until the background task is mid-publish.
            while started < 2:
                await asyncio.sleep(0.005)
        at_release = (started, finished)
        await asyncio.sleep(0.1)
        return at_release[0], at_release[1], finished

    started, finished_at_release, finished_later = asyncio.run(scenario())

    assert started == 2
    assert finished_at_release == 2
    assert finished_later == 2


def test_cancelled_holder_still_waits_for_an_in_flight_heartbeat() -> None:
    async def scenario() -> tuple[int, int]:
        bus = EventBus()
        started = 0
        finished = 0

        async def slow_store(event: object) -> None:
            nonlocal started, finished
            started += 1
            await asyncio.sleep(0.1)
            finished += 1

        bus.subscribe(slow_store)

        async def holder() -> None:
            async with _lease(bus):
                await asyncio.sleep(10)

        task = asyncio.create_task(holder())
        while started < 2:
            await asyncio.sleep(0.005)
        task.cancel()
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        return started, finished

    started, finished = asyncio.run(scenario())

    assert started == 2
    assert finished == 2
