"""Standalone job worker pool.

Drains the job queue with ``worker_concurrency`` cooperative workers until
SIGINT/SIGTERM. Any number of these processes can run side by side.

Usage: python -m coinbook.workers.runner
"""

from __future__ import annotations

import asyncio
import signal

import structlog

from coinbook.config import get_settings
from coinbook.database import close_db, get_session_factory, init_db
from coinbook.jobs.handlers import DEAD_LETTER_HOOKS, HANDLERS
from coinbook.jobs.worker import WorkerPool
from coinbook.middleware.logging import setup_logging
from coinbook.redis_client import close_redis, get_redis, init_redis

logger = structlog.get_logger()


async def main() -> None:
    """Run the worker pool."""
    settings = get_settings()
    setup_logging(settings)
    await init_db(settings.database_url)
    await init_redis(settings.redis_url)

    pool = WorkerPool(get_session_factory(), HANDLERS, dead_letter_hooks=DEAD_LETTER_HOOKS, redis=get_redis())

    # Handle graceful shutdown
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, pool.stop)

    logger.info("worker_runner_starting", concurrency=pool.concurrency, kinds=pool.kinds)
    try:
        await pool.run()
    finally:
        await close_redis()
        await close_db()
        logger.info("worker_runner_stopped", processed=pool.processed)


if __name__ == "__main__":
    asyncio.run(main())
