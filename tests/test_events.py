# tests/test_events.py
from __future__ import annotations

import pytest

from jobs.events import (
    EventBus,
    JobCompletedEvent,
    JobEvents,
    JobFailedEvent,
    JobProgressEvent,
)


def _progress(job_id: str, value: float) -> JobProgressEvent:
    return JobProgressEvent(job_id=job_id, status="active", progress=value, message=f"{value}%")


def test_publish_without_subscribers_is_dropped():
    bus = EventBus()
    assert bus.publish("job-1", _progress("job-1", 10)) == 0


@pytest.mark.asyncio
async def test_events_arrive_in_emission_order():
    bus = EventBus()
    sub = bus.subscribe("job-1")
    for value in (0, 10, 45, 85):
        bus.publish("job-1", _progress("job-1", value))

    received = [(await sub.get()).progress for _ in range(4)]
    assert received == [0, 10, 45, 85]


@pytest.mark.asyncio
async def test_rooms_are_isolated_per_job():
    bus = EventBus()
    mine = bus.subscribe("job-1")
    other = bus.subscribe("job-2")

    assert bus.publish("job-1", _progress("job-1", 50)) == 1
    assert mine.pending() == 1
    assert other.pending() == 0


def test_unsubscribe_removes_empty_room():
    bus = EventBus()
    first = bus.subscribe("job-1")
    second = bus.subscribe("job-1")
    assert bus.subscriber_count("job-1") == 2

    first.close()
    assert bus.subscriber_count("job-1") == 1
    second.close()
    assert bus.subscriber_count("job-1") == 0
    # closing twice is harmless
    second.close()


def test_full_subscriber_queue_drops_instead_of_raising():
    bus = EventBus(max_queue_size=2)
    sub = bus.subscribe("job-1")
    delivered = [bus.publish("job-1", _progress("job-1", v)) for v in (1, 2, 3)]
    assert delivered == [1, 1, 0]
    assert sub.pending() == 2


def test_unbound_job_events_are_a_no_op():
    events = JobEvents()
    assert events.bus is None
    events.emit_progress("job-1", "active", 10, "bundling")
    events.emit_completed("job-1", {"video_url": "u"})
    events.emit_failed("job-1", "boom")


@pytest.mark.asyncio
async def test_bound_job_events_reach_subscribers():
    bus = EventBus()
    events = JobEvents()
    events.bind(bus)
    sub = bus.subscribe("job-1")

    events.emit_progress("job-1", "active", 30, "bundling: 30%")
    events.emit_completed("job-1", {"video_url": "http://x/v.mp4"})
    events.emit_failed("job-1", "RenderError: boom")

    first, second, third = [await sub.get() for _ in range(3)]
    assert isinstance(first, JobProgressEvent) and first.type == "job:progress"
    assert isinstance(second, JobCompletedEvent) and second.result["video_url"] == "http://x/v.mp4"
    assert isinstance(third, JobFailedEvent) and third.error == "RenderError: boom"
    assert first.timestamp <= second.timestamp <= third.timestamp


def test_event_serializes_with_wire_names():
    event = _progress("job-1", 12.5)
    data = event.model_dump(mode="json")
    assert data["type"] == "job:progress"
    assert data["job_id"] == "job-1"
    assert isinstance(data["timestamp"], str)
