# jobs/events.py
"""
Live job lifecycle events.

`EventBus` is an in-process room map: subscribers join the room of a
job id and receive that job's events in publish order. Nothing is
buffered for absent subscribers; the jobs table stays the source of
truth and clients that miss events poll job status instead.

`JobEvents` is the publishing side used by workers. It is bound to a
bus once at startup; until then every emit is a no-op.
"""
from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class JobProgressEvent(BaseModel):
    type: Literal["job:progress"] = "job:progress"
    job_id: str
    status: str
    progress: float
    message: str
    timestamp: datetime = Field(default_factory=_now)


class JobCompletedEvent(BaseModel):
    type: Literal["job:completed"] = "job:completed"
    job_id: str
    status: Literal["completed"] = "completed"
    result: dict[str, Any]
    timestamp: datetime = Field(default_factory=_now)


class JobFailedEvent(BaseModel):
    type: Literal["job:failed"] = "job:failed"
    job_id: str
    status: Literal["failed"] = "failed"
    error: str
    timestamp: datetime = Field(default_factory=_now)


JobEvent = JobProgressEvent | JobCompletedEvent | JobFailedEvent


class Subscription:
    def __init__(self, bus: EventBus, job_id: str, maxsize: int) -> None:
        self.job_id = job_id
        self._bus = bus
        self._queue: asyncio.Queue[JobEvent] = asyncio.Queue(maxsize=maxsize)

    def deliver(self, event: JobEvent) -> bool:
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("Subscriber queue full for job %s, dropping %s", self.job_id, event.type)
            return False
        return True

    async def get(self) -> JobEvent:
        return await self._queue.get()

    def pending(self) -> int:
        return self._queue.qsize()

    def close(self) -> None:
        self._bus.unsubscribe(self)


class EventBus:
    def __init__(self, max_queue_size: int = 100) -> None:
        self._max_queue_size = max_queue_size
        self._rooms: dict[str, set[Subscription]] = defaultdict(set)

    def subscribe(self, job_id: str) -> Subscription:
        subscription = Subscription(self, job_id, self._max_queue_size)
        self._rooms[job_id].add(subscription)
        logger.debug("Subscribed to job:%s (%d listeners)", job_id, len(self._rooms[job_id]))
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        room = self._rooms.get(subscription.job_id)
        if room is None:
            return
        room.discard(subscription)
        if not room:
            del self._rooms[subscription.job_id]

    def subscriber_count(self, job_id: str) -> int:
        return len(self._rooms.get(job_id, ()))

    def publish(self, job_id: str, event: JobEvent) -> int:
        """Deliver to every subscriber of `job_id`. Returns deliveries made."""
        room = self._rooms.get(job_id)
        if not room:
            return 0
        return sum(1 for subscription in list(room) if subscription.deliver(event))


class JobEvents:
    def __init__(self) -> None:
        self._bus: EventBus | None = None

    @property
    def bus(self) -> EventBus | None:
        return self._bus

    def bind(self, bus: EventBus) -> None:
        if self._bus is not None and self._bus is not bus:
            logger.warning("Job events already bound, rebinding to a new bus")
        self._bus = bus
        logger.info("Event bus registered for job events")

    def _publish(self, event: JobEvent) -> None:
        if self._bus is None:
            logger.debug("Event bus not bound, skipping %s for %s", event.type, event.job_id)
            return
        delivered = self._bus.publish(event.job_id, event)
        logger.debug("Emitted %s for %s to %d subscribers", event.type, event.job_id, delivered)

    def emit_progress(self, job_id: str, status: str, progress: float, message: str) -> None:
        self._publish(
            JobProgressEvent(job_id=job_id, status=status, progress=progress, message=message)
        )

    def emit_completed(self, job_id: str, result: dict[str, Any]) -> None:
        self._publish(JobCompletedEvent(job_id=job_id, result=result))

    def emit_failed(self, job_id: str, error: str) -> None:
        self._publish(JobFailedEvent(job_id=job_id, error=error))
