# tests/test_status.py
from __future__ import annotations

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from jobs.errors import JobNotFoundError
from jobs.status import get_job_status, list_jobs, normalize_status, to_status_view
from models.job import ACTIVE, COMPLETED, FAILED, PENDING


def _scalars(*groups):
    """db.scalars side effect returning each group in call order."""
    results = []
    for group in groups:
        result = MagicMock()
        result.all.return_value = list(group)
        results.append(result)
    return AsyncMock(side_effect=results)


def test_completed_view_exposes_result_only(job_factory, now):
    job = job_factory(
        status=COMPLETED,
        progress=100.0,
        result={"video_url": "http://x/v.mp4"},
        last_error="Error: flaky",
        attempts=2,
        finished_at=now,
    )
    view = to_status_view(job)
    assert view.result == {"video_url": "http://x/v.mp4"}
    assert view.error is None
    assert view.last_error is None
    assert view.city == "Curitiba"


def test_failed_view_exposes_error_not_result(job_factory):
    job = job_factory(status=FAILED, error="RenderError: boom", error_kind="render", result={"x": 1})
    view = to_status_view(job)
    assert view.error == "RenderError: boom"
    assert view.error_kind == "render"
    assert view.result is None


def test_retrying_job_shows_last_error(job_factory):
    job = job_factory(status=PENDING, attempts=1, last_error="ConnectionError: reset", progress=40.0)
    view = to_status_view(job)
    assert view.last_error == "ConnectionError: reset"
    assert view.error is None
    assert view.progress == 40.0


def test_normalize_status_aliases_and_rejects_unknown():
    assert normalize_status(None) is None
    assert normalize_status("") is None
    assert normalize_status("waiting") == PENDING
    assert normalize_status("active") == ACTIVE
    with pytest.raises(ValueError):
        normalize_status("paused")


@pytest.mark.asyncio
async def test_get_job_status_missing_raises(mock_db):
    with patch("jobs.status.get_job", new=AsyncMock(return_value=None)):
        with pytest.raises(JobNotFoundError):
            await get_job_status(mock_db, "nope-1")


@pytest.mark.asyncio
async def test_get_job_status_returns_view(mock_db, job_factory):
    job = job_factory(status=ACTIVE, progress=55.0, stage="rendering")
    with patch("jobs.status.get_job", new=AsyncMock(return_value=job)):
        view = await get_job_status(mock_db, job.id)
    assert view.status == ACTIVE
    assert view.stage == "rendering"


@pytest.mark.asyncio
async def test_filtered_list_uses_single_status(mock_db, job_factory, now):
    jobs = [job_factory(id=f"c-{i}", status=FAILED, created_at=now - timedelta(minutes=i)) for i in range(2)]
    mock_db.scalars = _scalars(jobs)

    views = await list_jobs(mock_db, status=FAILED, limit=5)

    assert [v.id for v in views] == ["c-0", "c-1"]
    assert mock_db.scalars.await_count == 1


@pytest.mark.asyncio
async def test_waiting_alias_lists_pending(mock_db, job_factory):
    mock_db.scalars = _scalars([job_factory(id="p-1", status=PENDING)])
    views = await list_jobs(mock_db, status="waiting")
    assert views[0].status == PENDING


@pytest.mark.asyncio
async def test_invalid_status_filter_raises(mock_db):
    with pytest.raises(ValueError):
        await list_jobs(mock_db, status="bogus")


@pytest.mark.asyncio
async def test_unfiltered_list_orders_groups_and_truncates(mock_db, job_factory):
    active = [job_factory(id="a-1", status=ACTIVE)]
    pending = [job_factory(id=f"p-{i}", status=PENDING) for i in range(3)]
    completed = [job_factory(id=f"c-{i}", status=COMPLETED) for i in range(5)]
    failed = [job_factory(id=f"f-{i}", status=FAILED) for i in range(2)]
    mock_db.scalars = _scalars(active, pending, completed, failed)

    views = await list_jobs(mock_db, limit=8)

    assert [v.id for v in views] == ["a-1", "p-0", "p-1", "p-2", "c-0", "c-1", "c-2", "c-3"]


@pytest.mark.asyncio
@pytest.mark.parametrize("limit, completed_limit", [(10, 6), (8, 4), (4, 1), (1, 1)])
async def test_unfiltered_list_sizes_completed_group_from_limit(mock_db, limit, completed_limit):
    recent = AsyncMock(return_value=[])
    with patch("jobs.status._recent", new=recent):
        await list_jobs(mock_db, limit=limit)

    sizes = {call.args[1]: call.args[2] for call in recent.await_args_list}
    assert sizes == {ACTIVE: 3, PENDING: 3, COMPLETED: completed_limit, FAILED: 3}
