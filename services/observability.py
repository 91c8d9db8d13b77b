# services/observability.py
"""
Audit events: persisted to the events table and mirrored to the logger.

Event types in use: job_submitted, job_failed, job_stalled,
daily_limit_reset, artifact_cleanup, job_cleanup.
"""
from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from models.event import Event

logger = logging.getLogger(__name__)

LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}
_LEVEL_ALIASES = {"warn": "warning", "critical": "error"}

MAX_MESSAGE_LENGTH = 1000


def normalize_level(level: str | None) -> str:
    value = (level or "info").lower()
    value = _LEVEL_ALIASES.get(value, value)
    return value if value in LEVELS else "info"


async def log_event(
    db: AsyncSession,
    event_type: str,
    level: str = "info",
    source: str | None = None,
    message: str | None = None,
    metadata: dict | None = None,
    job_id: str | None = None,
) -> Event:
    """Add an event row to the session (flushed, not committed) and log it."""
    level = normalize_level(level)
    if message and len(message) > MAX_MESSAGE_LENGTH:
        message = message[: MAX_MESSAGE_LENGTH - 3] + "..."

    event = Event(
        event_type=event_type,
        level=level,
        source=source,
        job_id=job_id,
        message=message,
        metadata_=metadata,
    )
    db.add(event)
    await db.flush()
    logger.log(
        LEVELS[level],
        "[%s] source=%s job=%s %s %s",
        event_type,
        source or "-",
        job_id or "-",
        message or "",
        metadata or {},
    )
    return event


async def recent_events(
    db: AsyncSession,
    *,
    job_id: str | None = None,
    limit: int = 50,
) -> list[Event]:
    """Newest first, optionally restricted to one job."""
    stmt = select(Event).order_by(Event.created_at.desc()).limit(max(1, min(limit, 200)))
    if job_id is not None:
        stmt = stmt.where(Event.job_id == job_id)
    return list((await db.scalars(stmt)).all())
