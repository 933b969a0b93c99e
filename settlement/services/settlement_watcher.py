from __future__ import annotations

import asyncio
import contextlib
import logging
from datetime import datetime

from sqlalchemy import select

from settlement.config import settings
from settlement.db.base import utc_now
from settlement.db.enums import AuctionStatus
from settlement.db.models import Auction
from settlement.db.session import SessionFactory
from settlement.services.auto_refund_service import run_refund_batch
from settlement.services.evaluation_service import EvaluationResult, load_evaluation

logger = logging.getLogger(__name__)


async def evaluate_awaiting_auctions(now: datetime | None = None) -> list[EvaluationResult]:
    """Evaluate ended auctions that nobody has finalized yet."""
    now = now or utc_now()
    limit = max(settings.evaluation_sweep_batch_size, 1)
    async with SessionFactory() as session:
        auction_ids = (
            await session.execute(
                select(Auction.id)
                .where(
                    Auction.status.in_([AuctionStatus.SCHEDULED, AuctionStatus.LIVE]),
                    Auction.auction_end_at <= now,
                )
                .order_by(Auction.auction_end_at.asc())
                .limit(limit)
            )
        ).scalars().all()

        results = []
        for auction_id in auction_ids:
            evaluation = await load_evaluation(session, auction_id, now=now)
            results.append(evaluation)
            logger.info(
                "Auction %s awaits finalization: recommended %s, issues: %s",
                auction_id,
                evaluation.recommended_status,
                "; ".join(evaluation.issue_messages) or "none",
            )
    return results


async def run_refund_watcher() -> None:
    interval = max(settings.refund_watcher_interval_seconds, 1)
    while True:
        try:
            result = await run_refund_batch()
            if result.processed:
                logger.info("Refund watcher settled %s deposit(s)", result.processed)
            await asyncio.sleep(interval)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Refund watcher failed: %s", exc)
            await asyncio.sleep(interval)


async def run_evaluation_watcher() -> None:
    interval = max(settings.evaluation_sweep_interval_seconds, 1)
    while True:
        try:
            await evaluate_awaiting_auctions()
            await asyncio.sleep(interval)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Evaluation watcher failed: %s", exc)
            await asyncio.sleep(interval)


async def cancel_watcher(task: asyncio.Task[None] | None) -> None:
    if task is None:
        return
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task
