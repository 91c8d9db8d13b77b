# jobs/rate_limit.py
"""
Admission rate limiting backed by the `rate_counters` table.

Counters are incremented with a single INSERT ... ON CONFLICT DO UPDATE
statement, so concurrent callers never lose increments. A counter row
carries its own expiry (next UTC midnight); an expired row is treated
as zero and restarted by the next increment.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone

from sqlalchemy import case, delete, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from models.rate_counter import RateCounter

logger = logging.getLogger(__name__)

DAILY_LIMIT_KEY = "rate-limit:videos:daily"
CALLER_KEY_PREFIX = "rate-limit:caller:"
MAX_CALLER_LENGTH = 200

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def next_utc_midnight(now: datetime) -> datetime:
    """The first UTC midnight strictly after `now`."""
    now = now.astimezone(timezone.utc)
    return datetime.combine(now.date() + timedelta(days=1), time.min, tzinfo=timezone.utc)


@dataclass(frozen=True)
class LimitStatus:
    is_allowed: bool
    current_count: int
    limit: int
    resets_at: datetime

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.current_count)


def increment_statement(key: str, now: datetime):
    """
    Atomic increment-and-read. The expiry is only set when the row is
    created or restarted after expiring, never by later increments.
    """
    stmt = pg_insert(RateCounter).values(
        key=key,
        count=1,
        expires_at=next_utc_midnight(now),
    )
    expired = RateCounter.expires_at <= now
    return stmt.on_conflict_do_update(
        index_elements=[RateCounter.key],
        set_={
            "count": case((expired, 1), else_=RateCounter.count + 1),
            "expires_at": case((expired, stmt.excluded.expires_at), else_=RateCounter.expires_at),
        },
    ).returning(RateCounter.count, RateCounter.expires_at)


async def read_counter(db: AsyncSession, key: str, now: datetime) -> tuple[int, datetime | None]:
    row = (
        await db.execute(select(RateCounter.count, RateCounter.expires_at).where(RateCounter.key == key))
    ).one_or_none()
    if row is None or row.expires_at <= now:
        return 0, None
    return row.count, row.expires_at


async def increment_counter(db: AsyncSession, key: str, now: datetime) -> tuple[int, datetime]:
    row = (await db.execute(increment_statement(key, now))).one()
    return row.count, row.expires_at


class DailyRateLimiter:
    """Global cap on accepted render submissions per UTC day."""

    def __init__(self, limit: int, key: str = DAILY_LIMIT_KEY, clock: Clock = utcnow) -> None:
        self.limit = limit
        self.key = key
        self._clock = clock

    async def check_daily_limit(self, db: AsyncSession) -> LimitStatus:
        now = self._clock()
        count, _ = await read_counter(db, self.key, now)
        return LimitStatus(
            is_allowed=count < self.limit,
            current_count=count,
            limit=self.limit,
            resets_at=next_utc_midnight(now),
        )

    async def increment_daily_counter(self, db: AsyncSession) -> int:
        now = self._clock()
        count, expires_at = await increment_counter(db, self.key, now)
        if count == 1:
            remaining = expires_at - now
            hours, rest = divmod(int(remaining.total_seconds()), 3600)
            logger.info("Daily counter initialized. Resets in %dh %dm", hours, rest // 60)
        return count

    async def get_current_daily_count(self, db: AsyncSession) -> int:
        count, _ = await read_counter(db, self.key, self._clock())
        return count

    async def get_time_until_reset(self, db: AsyncSession) -> timedelta:
        """Zero when no counter is live for the current day."""
        now = self._clock()
        _, expires_at = await read_counter(db, self.key, now)
        if expires_at is None:
            return timedelta(0)
        return max(expires_at - now, timedelta(0))

    async def reset_daily_counter(self, db: AsyncSession) -> None:
        await db.execute(
            delete(RateCounter)
            .where(RateCounter.key == self.key)
            .execution_options(synchronize_session=False)
        )
        logger.info("Daily video counter has been reset")


class CallerRateLimiter:
    """
    Per-caller (network origin) daily cap, independent of the global one.

    Expired caller rows are swept periodically rather than on every
    request.
    """

    def __init__(
        self,
        limit: int,
        sweep_interval_seconds: float = 3600.0,
        clock: Clock = utcnow,
    ) -> None:
        self.limit = limit
        self._sweep_interval = timedelta(seconds=sweep_interval_seconds)
        self._clock = clock
        self._last_sweep: datetime | None = None

    @staticmethod
    def key_for(caller: str) -> str:
        return CALLER_KEY_PREFIX + (caller or "unknown")[:MAX_CALLER_LENGTH]

    async def check(self, db: AsyncSession, caller: str) -> LimitStatus:
        now = self._clock()
        count, expires_at = await read_counter(db, self.key_for(caller), now)
        return LimitStatus(
            is_allowed=count < self.limit,
            current_count=count,
            limit=self.limit,
            resets_at=expires_at or next_utc_midnight(now),
        )

    async def hit(self, db: AsyncSession, caller: str) -> int:
        count, _ = await increment_counter(db, self.key_for(caller), self._clock())
        return count

    async def maybe_sweep(self, db: AsyncSession) -> int:
        now = self._clock()
        if self._last_sweep is not None and now - self._last_sweep < self._sweep_interval:
            return 0
        self._last_sweep = now
        result = await db.execute(
            delete(RateCounter)
            .where(
                RateCounter.key.startswith(CALLER_KEY_PREFIX),
                RateCounter.expires_at <= now,
            )
            .execution_options(synchronize_session=False)
        )
        removed = result.rowcount or 0
        if removed:
            logger.info("Swept %d expired caller rate-limit entries", removed)
        return removed
