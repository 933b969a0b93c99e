from __future__ import annotations

import asyncio
import logging

from settlement.config import settings
from settlement.db.session import dispose_database, ping_database
from settlement.infra.redis_client import close_redis, ping_redis
from settlement.logging_setup import configure_logging
from settlement.services.settlement_watcher import (
    cancel_watcher,
    run_evaluation_watcher,
    run_refund_watcher,
)

logger = logging.getLogger(__name__)


async def startup_checks() -> None:
    await ping_database()
    await ping_redis()
    logger.info("Startup checks passed: database and redis are available")


async def run() -> None:
    configure_logging(settings.log_level)
    await startup_checks()

    refund_task: asyncio.Task[None] | None = asyncio.create_task(run_refund_watcher())
    evaluation_task: asyncio.Task[None] | None = asyncio.create_task(run_evaluation_watcher())
    try:
        await asyncio.gather(refund_task, evaluation_task)
    finally:
        await cancel_watcher(refund_task)
        await cancel_watcher(evaluation_task)
        await close_redis()
        await dispose_database()


def main() -> None:
    asyncio.run(run())


if __name__ == "__main__":
    main()
