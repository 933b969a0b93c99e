from __future__ import annotations

import asyncio
import logging

from settlement.db.session import dispose_database, ping_database
from settlement.infra.redis_client import close_redis, ping_redis

logger = logging.getLogger(__name__)

PROBES = (
    ("database", ping_database),
    ("redis", ping_redis),
)


async def check() -> int:
    failed: list[str] = []
    for name, probe in PROBES:
        try:
            await probe()
        except Exception as exc:
            logger.error("Healthcheck: %s is unavailable: %s", name, exc)
            failed.append(name)
    await close_redis()
    await dispose_database()
    return 1 if failed else 0


def main() -> None:
    raise SystemExit(asyncio.run(check()))


if __name__ == "__main__":
    main()
