# worker/main.py
"""
Standalone worker process: runs the worker pool and the cleanup
scheduler until SIGINT/SIGTERM.
"""
from __future__ import annotations

import asyncio
import logging
import signal

from db.engine import check_database
from db.session import close_sessions
from jobs.cleanup import CleanupScheduler
from jobs.context import get_context
from services.weather import close_weather_client
from worker.pool import WorkerPool

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("worker")

DB_WAIT_ATTEMPTS = 10
DB_WAIT_SECONDS = 3.0


async def wait_for_database(attempts: int = DB_WAIT_ATTEMPTS, delay: float = DB_WAIT_SECONDS) -> bool:
    for attempt in range(1, attempts + 1):
        if await check_database():
            return True
        logger.warning("Database not reachable (attempt %d/%d), retrying in %.0fs", attempt, attempts, delay)
        await asyncio.sleep(delay)
    return False


async def run_worker() -> None:
    ctx = get_context()
    if not await wait_for_database():
        logger.error("Database unavailable, worker not started")
        await close_sessions()
        return

    pool = WorkerPool(ctx)
    scheduler = CleanupScheduler(ctx)
    scheduler.start()

    loop = asyncio.get_running_loop()
    stop_requested = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_requested.set)

    runner = asyncio.create_task(pool.run())
    await stop_requested.wait()

    logger.info("Shutdown requested, stopping worker %s", pool.worker_id)
    scheduler.stop()
    await pool.stop()
    await runner
    await close_weather_client()
    await close_sessions()
    logger.info("Worker shut down cleanly")


def main() -> None:
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
