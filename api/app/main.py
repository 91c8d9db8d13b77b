# api/app/main.py
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from api.app.config import get_settings
from api.app.middleware.request_logging import RequestLoggingMiddleware
from api.app.routes import events, health, jobs, rate_limit, videos, weather
from db.engine import check_database
from db.session import close_sessions
from jobs.cleanup import CleanupScheduler
from jobs.context import get_context
from jobs.events import EventBus
from services.weather import close_weather_client
from worker.pool import WorkerPool

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    ctx = get_context()

    bus = EventBus(max_queue_size=settings.event_queue_size)
    ctx.events.bind(bus)
    app.state.event_bus = bus
    app.state.worker_pool = None
    app.state.cleanup_scheduler = None
    worker_task: asyncio.Task | None = None

    if settings.embedded_worker:
        if await check_database():
            pool = WorkerPool(ctx)
            worker_task = asyncio.create_task(pool.run())
            scheduler = CleanupScheduler(ctx)
            scheduler.start()
            app.state.worker_pool = pool
            app.state.cleanup_scheduler = scheduler
            logger.info("Embedded worker %s and cleanup scheduler started", pool.worker_id)
        else:
            logger.warning("Database unreachable: embedded worker and scheduler not started (degraded)")

    yield

    if app.state.cleanup_scheduler is not None:
        app.state.cleanup_scheduler.stop()
    if app.state.worker_pool is not None:
        await app.state.worker_pool.stop()
    if worker_task is not None:
        await worker_task
    await close_weather_client()
    await close_sessions()


app = FastAPI(
    title="Weathercast API",
    description="Weather video job submission, status and live progress",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestLoggingMiddleware)

app.include_router(health.router)
app.include_router(events.router)
app.include_router(jobs.router, prefix="/v1")
app.include_router(rate_limit.router, prefix="/v1")
app.include_router(videos.router, prefix="/v1")
app.include_router(weather.router, prefix="/v1")

# Local artifact store contents, served at ARTIFACT_BASE_URL
app.mount(
    "/artifacts",
    StaticFiles(directory=get_settings().artifact_storage_path, check_dir=False),
    name="artifacts",
)
