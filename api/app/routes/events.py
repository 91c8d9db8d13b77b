# api/app/routes/events.py
"""
WebSocket room per job: sends a status snapshot on connect, then relays
live events until the job reaches a terminal state or the client leaves.
"""
from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from db.session import get_session_factory
from jobs.errors import JobNotFoundError
from jobs.events import EventBus, Subscription
from jobs.status import get_job_status

logger = logging.getLogger(__name__)

router = APIRouter(tags=["events"])


async def _forward(websocket: WebSocket, subscription: Subscription, floor: float) -> None:
    while True:
        event = await subscription.get()
        if event.type == "job:progress":
            # queued before the snapshot was read
            if event.progress < floor:
                continue
            floor = event.progress
        await websocket.send_json(event.model_dump(mode="json"))
        if event.type != "job:progress":
            return


async def _drain(websocket: WebSocket) -> None:
    # Client messages are ignored; this only notices disconnects.
    while True:
        await websocket.receive_text()


@router.websocket("/ws/jobs/{job_id}")
async def job_events(websocket: WebSocket, job_id: str):
    bus: EventBus | None = getattr(websocket.app.state, "event_bus", None)
    await websocket.accept()

    # Join the room before reading the snapshot so nothing published in between is missed.
    subscription = bus.subscribe(job_id) if bus is not None else None
    try:
        async with get_session_factory()() as db:
            try:
                snapshot = await get_job_status(db, job_id)
            except JobNotFoundError:
                await websocket.send_json({"type": "error", "job_id": job_id, "error": "Job not found"})
                await websocket.close(code=4404)
                return

        await websocket.send_json({"type": "job:snapshot", **snapshot.model_dump(mode="json")})
        if subscription is None or snapshot.status in ("completed", "failed"):
            await websocket.close()
            return

        logger.info("Client subscribed to job:%s", job_id)
        await _relay(websocket, subscription, snapshot.progress)
    finally:
        if subscription is not None:
            subscription.close()
            logger.debug("Client unsubscribed from job:%s", job_id)


async def _relay(websocket: WebSocket, subscription: Subscription, floor: float) -> None:
    job_id = subscription.job_id
    forward = asyncio.create_task(_forward(websocket, subscription, floor))
    drain = asyncio.create_task(_drain(websocket))
    done, pending = await asyncio.wait({forward, drain}, return_when=asyncio.FIRST_COMPLETED)
    for task in pending:
        task.cancel()
    await asyncio.gather(*pending, return_exceptions=True)
    for task in done:
        exc = task.exception()
        if exc is not None and not isinstance(exc, WebSocketDisconnect):
            logger.warning("Event stream for job:%s ended with error: %s", job_id, exc)
    if forward in done and forward.exception() is None:
        await websocket.close()
