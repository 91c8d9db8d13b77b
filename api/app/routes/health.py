# api/app/routes/health.py
from __future__ import annotations

from fastapi import APIRouter, Request

from db.engine import check_database

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check(request: Request):
    database_ok = await check_database()
    pool = getattr(request.app.state, "worker_pool", None)
    return {
        "status": "ok" if database_ok else "degraded",
        "service": "weathercast-api",
        "database": "ok" if database_ok else "unreachable",
        "embedded_worker": pool is not None and not pool.is_stopping,
    }
