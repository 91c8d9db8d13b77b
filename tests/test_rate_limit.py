# tests/test_rate_limit.py
from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy.dialects import postgresql

from jobs.rate_limit import (
    CALLER_KEY_PREFIX,
    DAILY_LIMIT_KEY,
    CallerRateLimiter,
    DailyRateLimiter,
    increment_statement,
    next_utc_midnight,
    read_counter,
)


def _clock(moment: datetime):
    return lambda: moment


def _result(row):
    result = MagicMock()
    result.one_or_none.return_value = row
    result.one.return_value = row
    return result


def test_next_midnight_is_strictly_after_now():
    now = datetime(2026, 10, 19, 15, 30, tzinfo=timezone.utc)
    assert next_utc_midnight(now) == datetime(2026, 10, 20, tzinfo=timezone.utc)


def test_next_midnight_at_exact_midnight_is_a_full_day_away():
    midnight = datetime(2026, 10, 19, tzinfo=timezone.utc)
    assert next_utc_midnight(midnight) == midnight + timedelta(days=1)


def test_next_midnight_converts_offsets_to_utc():
    # 23:30 at UTC-3 is already 02:30 UTC on the next day
    local = datetime(2026, 10, 19, 23, 30, tzinfo=timezone(timedelta(hours=-3)))
    assert next_utc_midnight(local) == datetime(2026, 10, 21, tzinfo=timezone.utc)


_BIND = r"(%\(\w+\)s|\d+)"
_COUNT_SET = re.compile(
    r'"?count"? = CASE WHEN \(?rate_counters\.expires_at <= ' + _BIND + r"\)? "
    r"THEN " + _BIND + r" ELSE rate_counters\.count \+ " + _BIND + r" END"
)
_EXPIRES_SET = re.compile(
    r"expires_at = CASE WHEN \(?rate_counters\.expires_at <= " + _BIND + r"\)? "
    r"THEN excluded\.expires_at ELSE rate_counters\.expires_at END"
)


def _bound_value(compiled, token: str):
    if token.startswith("%("):
        return compiled.params[token[2:-2]]
    return int(token)


def test_increment_is_a_single_atomic_upsert(now):
    compiled = increment_statement(DAILY_LIMIT_KEY, now).compile(dialect=postgresql.dialect())
    sql = " ".join(str(compiled).split())
    assert "INSERT INTO rate_counters" in sql
    assert "ON CONFLICT (key) DO UPDATE" in sql
    assert "RETURNING rate_counters.count, rate_counters.expires_at" in sql
    assert compiled.params["expires_at"] == next_utc_midnight(now)


def test_increment_resets_count_only_once_expired(now):
    compiled = increment_statement(DAILY_LIMIT_KEY, now).compile(dialect=postgresql.dialect())
    sql = " ".join(str(compiled).split())

    match = _COUNT_SET.search(sql)
    assert match is not None, sql
    cutoff, reset_to, step = (_bound_value(compiled, token) for token in match.groups())
    assert cutoff == now
    assert reset_to == 1
    assert step == 1


def test_increment_keeps_window_end_until_expired(now):
    compiled = increment_statement(DAILY_LIMIT_KEY, now).compile(dialect=postgresql.dialect())
    sql = " ".join(str(compiled).split())

    match = _EXPIRES_SET.search(sql)
    assert match is not None, sql
    assert _bound_value(compiled, match.group(1)) == now


@pytest.mark.asyncio
async def test_expired_counter_reads_as_zero(mock_db, now):
    mock_db.execute.return_value = _result(SimpleNamespace(count=7, expires_at=now - timedelta(seconds=1)))
    assert await read_counter(mock_db, DAILY_LIMIT_KEY, now) == (0, None)


@pytest.mark.asyncio
async def test_check_daily_limit_under_quota(mock_db, now):
    midnight = next_utc_midnight(now)
    mock_db.execute.return_value = _result(SimpleNamespace(count=3, expires_at=midnight))
    limiter = DailyRateLimiter(50, clock=_clock(now))

    status = await limiter.check_daily_limit(mock_db)

    assert status.is_allowed is True
    assert status.current_count == 3
    assert status.remaining == 47
    assert status.resets_at == midnight


@pytest.mark.asyncio
async def test_check_daily_limit_at_quota(mock_db, now):
    mock_db.execute.return_value = _result(SimpleNamespace(count=50, expires_at=next_utc_midnight(now)))
    limiter = DailyRateLimiter(50, clock=_clock(now))

    status = await limiter.check_daily_limit(mock_db)

    assert status.is_allowed is False
    assert status.remaining == 0
    assert status.resets_at > now


@pytest.mark.asyncio
async def test_increment_returns_new_count(mock_db, now):
    mock_db.execute.return_value = _result(SimpleNamespace(count=1, expires_at=next_utc_midnight(now)))
    limiter = DailyRateLimiter(50, clock=_clock(now))
    assert await limiter.increment_daily_counter(mock_db) == 1
    mock_db.execute.assert_awaited_once()


@pytest.mark.asyncio
async def test_time_until_reset(mock_db, now):
    midnight = next_utc_midnight(now)
    mock_db.execute.return_value = _result(SimpleNamespace(count=4, expires_at=midnight))
    limiter = DailyRateLimiter(50, clock=_clock(now))
    assert await limiter.get_time_until_reset(mock_db) == midnight - now


@pytest.mark.asyncio
async def test_time_until_reset_without_counter(mock_db, now):
    mock_db.execute.return_value = _result(None)
    limiter = DailyRateLimiter(50, clock=_clock(now))
    assert await limiter.get_time_until_reset(mock_db) == timedelta(0)


@pytest.mark.asyncio
async def test_reset_deletes_the_daily_key(mock_db, now):
    limiter = DailyRateLimiter(50, clock=_clock(now))
    await limiter.reset_daily_counter(mock_db)
    stmt = mock_db.execute.await_args.args[0]
    sql = str(stmt.compile(dialect=postgresql.dialect()))
    assert sql.startswith("DELETE FROM rate_counters")


def test_caller_keys_are_namespaced_and_bounded():
    assert CallerRateLimiter.key_for("10.0.0.1") == CALLER_KEY_PREFIX + "10.0.0.1"
    assert CallerRateLimiter.key_for("") == CALLER_KEY_PREFIX + "unknown"
    assert len(CallerRateLimiter.key_for("x" * 1000)) == len(CALLER_KEY_PREFIX) + 200


@pytest.mark.asyncio
async def test_caller_limit_is_independent_per_caller(mock_db, now):
    limiter = CallerRateLimiter(2, clock=_clock(now))
    counts = {CallerRateLimiter.key_for("1.1.1.1"): 2}

    async def fake_read(db, key, at):
        count = counts.get(key, 0)
        return count, (next_utc_midnight(at) if count else None)

    with patch("jobs.rate_limit.read_counter", side_effect=fake_read):
        blocked = await limiter.check(mock_db, "1.1.1.1")
        other = await limiter.check(mock_db, "2.2.2.2")

    assert blocked.is_allowed is False
    assert other.is_allowed is True
    assert other.current_count == 0


@pytest.mark.asyncio
async def test_sweep_is_time_gated(mock_db, now):
    moment = {"now": now}
    limiter = CallerRateLimiter(10, sweep_interval_seconds=3600, clock=lambda: moment["now"])
    mock_db.execute = AsyncMock(return_value=SimpleNamespace(rowcount=4))

    assert await limiter.maybe_sweep(mock_db) == 4
    moment["now"] = now + timedelta(minutes=30)
    assert await limiter.maybe_sweep(mock_db) == 0
    moment["now"] = now + timedelta(hours=1, seconds=1)
    assert await limiter.maybe_sweep(mock_db) == 4
    assert mock_db.execute.await_count == 2
