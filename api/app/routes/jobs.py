# api/app/routes/jobs.py
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from api.app.dependencies import client_ip, get_job_context, get_session
from api.app.schemas.jobs import (
    JobEventOut,
    JobListResponse,
    JobSubmittedResponse,
    RenderJobRequest,
)
from jobs.context import JobContext
from jobs.errors import AdmissionError, GenerationLimitError, JobNotFoundError
from jobs.rate_limit import LimitStatus
from jobs.status import JobStatusView, get_job_status, list_jobs
from jobs.submission import check_admission, prepare_render_payload, submit_render_job
from services.observability import recent_events
from services.weather import WeatherReport

logger = logging.getLogger(__name__)

router = APIRouter(tags=["jobs"])


def _rate_limit_headers(limit: int, remaining: int, resets_at) -> dict[str, str]:
    return {
        "X-RateLimit-Limit": str(limit),
        "X-RateLimit-Remaining": str(max(remaining, 0)),
        "X-RateLimit-Reset": str(int(resets_at.timestamp())),
    }


def _admission_rejected(exc: AdmissionError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        detail={
            "error": "Rate limit exceeded",
            "scope": exc.scope,
            "limit": exc.limit,
            "current": exc.current,
            "remaining": 0,
            "resets_at": exc.resets_at.isoformat(),
        },
        headers=_rate_limit_headers(exc.limit, 0, exc.resets_at),
    )


@router.post("/jobs", response_model=JobSubmittedResponse, status_code=status.HTTP_202_ACCEPTED)
async def submit_job(
    body: RenderJobRequest,
    request: Request,
    response: Response,
    ctx: JobContext = Depends(get_job_context),
    db: AsyncSession = Depends(get_session),
):
    """Queue a weather video render. Rejected with 429 when a quota is spent."""
    caller = client_ip(request)
    try:
        await check_admission(ctx, db, caller)
        weather = None
        if body.weather_data is not None:
            data = body.weather_data
            weather = WeatherReport(
                city=data.city,
                temperature=round(data.temperature),
                condition=data.condition,
                description=data.description,
                date=data.date,
            )
        payload = await prepare_render_payload(
            ctx,
            db,
            body.city,
            language=body.language,
            weather=weather,
            image_filename=body.image_filename,
        )
        job_id = await submit_render_job(ctx, db, payload, caller=caller)
        await db.commit()
    except AdmissionError as exc:
        raise _admission_rejected(exc) from exc
    except GenerationLimitError as exc:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={"error": "Image generation limit reached", "limit": exc.limit},
        ) from exc

    caller_status: LimitStatus = await ctx.caller_limiter.check(db, caller)
    response.headers.update(
        _rate_limit_headers(caller_status.limit, caller_status.remaining, caller_status.resets_at)
    )
    logger.info("Render job %s accepted for %s", job_id, body.city)
    return JobSubmittedResponse(
        job_id=job_id,
        message=f"Video render queued for {body.city}",
    )


@router.get("/jobs/{job_id}", response_model=JobStatusView)
async def get_job(job_id: str, db: AsyncSession = Depends(get_session)):
    try:
        return await get_job_status(db, job_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@router.get("/jobs", response_model=JobListResponse)
async def get_jobs(
    status_filter: str | None = Query(None, alias="status"),
    limit: int = Query(10, ge=1, le=100),
    db: AsyncSession = Depends(get_session),
):
    try:
        jobs = await list_jobs(db, status=status_filter, limit=limit)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return JobListResponse(jobs=jobs, count=len(jobs))


@router.get("/jobs/{job_id}/events", response_model=list[JobEventOut])
async def get_job_events(
    job_id: str,
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_session),
):
    """Audit trail for one job (submission, failures, stalls), newest first."""
    try:
        await get_job_status(db, job_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    events = await recent_events(db, job_id=job_id, limit=limit)
    return [JobEventOut.model_validate(e) for e in events]
