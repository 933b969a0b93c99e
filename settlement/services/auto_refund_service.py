from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from sqlalchemy import exists, or_, select

from settlement.config import settings
from settlement.db.base import ensure_utc, utc_now
from settlement.db.enums import AuctionStatus, AuditAction, DisqualificationReason, RefundStatus
from settlement.db.models import Auction, Bid, Participant
from settlement.db.session import SessionFactory
from settlement.services.audit_service import log_audit_action
from settlement.services.auction_service import get_user_by_id, require_auction
from settlement.services.notifier import (
    Notification,
    NotificationKind,
    NotificationRecipient,
    Notifier,
    auction_notification_data,
    get_notifier,
    notify_safely,
)
from settlement.services.payment_gateway import PaymentGateway, get_payment_gateway
from settlement.services.refund_service import (
    TERMINAL_REFUND_STATUSES,
    apply_disqualification,
    holds_winning_bid,
    refund_deposit_payment,
)

logger = logging.getLogger(__name__)

BATCH_AUCTION_STATUSES = (AuctionStatus.SUCCESS, AuctionStatus.FAILED)

OUTCOME_REFUNDED = "refunded"
OUTCOME_FORFEITED = "forfeited"
OUTCOME_SKIPPED = "skipped"


@dataclass(slots=True)
class RefundBatchResult:
    auctions_scanned: int = 0
    refunded: int = 0
    forfeited: int = 0
    skipped: int = 0
    errors: int = 0

    @property
    def processed(self) -> int:
        return self.refunded + self.forfeited


def business_days_before(now: datetime, days: int) -> datetime:
    """Start of the day that lies ``days`` business days before ``now``.

    Saturdays and Sundays are not counted.
    """
    current = ensure_utc(now)
    counted = 0
    while counted < max(days, 0):
        current -= timedelta(days=1)
        if current.weekday() < 5:
            counted += 1
    return datetime(current.year, current.month, current.day, tzinfo=UTC)


async def _eligible_auction_ids(cutoff: datetime) -> list[uuid.UUID]:
    async with SessionFactory() as session:
        rows = await session.execute(
            select(Auction.id)
            .where(
                Auction.status.in_(BATCH_AUCTION_STATUSES),
                Auction.finalized_at.is_not(None),
                Auction.finalized_at <= cutoff,
            )
            .order_by(Auction.finalized_at.asc())
        )
        return list(rows.scalars().all())


async def _candidate_participant_ids(auction_id: uuid.UUID) -> list[uuid.UUID]:
    has_winning_bid = exists().where(Bid.participant_id == Participant.id, Bid.is_winning_bid.is_(True))
    async with SessionFactory() as session:
        rows = await session.execute(
            select(Participant.id)
            .where(
                Participant.auction_id == auction_id,
                Participant.deposit_paid_at.is_not(None),
                Participant.is_disqualified.is_(False),
                or_(
                    Participant.refund_status.is_(None),
                    Participant.refund_status.not_in(list(TERMINAL_REFUND_STATUSES)),
                ),
                ~has_winning_bid,
            )
            .order_by(Participant.id.asc())
        )
        return list(rows.scalars().all())


def _forfeit_reason(participant: Participant, auction: Auction) -> DisqualificationReason | None:
    if (
        participant.withdrawn_at is not None
        and auction.sale_end_at is not None
        and ensure_utc(participant.withdrawn_at) > ensure_utc(auction.sale_end_at)
    ):
        return DisqualificationReason.LATE_WITHDRAWAL
    if (
        auction.status == AuctionStatus.SUCCESS
        and participant.checked_in_at is None
        and participant.withdrawn_at is None
    ):
        return DisqualificationReason.CHECK_IN_FAILURE
    return None


async def _settle_participant(
    participant_id: uuid.UUID,
    *,
    gateway: PaymentGateway,
    now: datetime,
) -> tuple[str, Notification | None]:
    async with SessionFactory() as session:
        async with session.begin():
            participant = await session.scalar(
                select(Participant).where(Participant.id == participant_id).with_for_update()
            )
            if (
                participant is None
                or participant.is_disqualified
                or participant.refund_status in TERMINAL_REFUND_STATUSES
                or await holds_winning_bid(session, participant.id)
            ):
                return OUTCOME_SKIPPED, None

            auction = await require_auction(session, participant.auction_id)
            previous_refund_status = str(participant.refund_status) if participant.refund_status else None
            forfeit_reason = _forfeit_reason(participant, auction)

            if forfeit_reason is not None:
                apply_disqualification(
                    participant,
                    reason=forfeit_reason,
                    note=f"Deposit forfeited automatically: {forfeit_reason}",
                    now=now,
                )
                outcome = OUTCOME_FORFEITED
                action = AuditAction.DEPOSIT_FORFEITED
            else:
                await refund_deposit_payment(
                    session,
                    participant=participant,
                    gateway=gateway,
                    reason=f"Automatic deposit refund for auction {auction.code}",
                    now=now,
                )
                participant.refund_status = RefundStatus.AUTO_PROCESSED
                participant.refund_processed_at = now
                participant.updated_at = now
                outcome = OUTCOME_REFUNDED
                action = AuditAction.REFUND_AUTO_PROCESSED

            await log_audit_action(
                session,
                auction_id=auction.id,
                action=action,
                performed_by=None,
                previous_status=previous_refund_status,
                new_status=str(participant.refund_status),
                reason=str(forfeit_reason) if forfeit_reason is not None else None,
                payload={
                    "participant_id": str(participant.id),
                    "amount": str(participant.deposit_amount or 0),
                },
                now=now,
            )

            user = await get_user_by_id(session, participant.user_id)
            notification = None
            if user is not None:
                notification = Notification(
                    NotificationRecipient.from_user(user),
                    {
                        **auction_notification_data(auction),
                        "participant_id": str(participant.id),
                        "refund_status": str(participant.refund_status),
                        "amount": str(participant.deposit_amount or 0),
                        "reason": str(forfeit_reason) if forfeit_reason is not None else None,
                    },
                )
    return outcome, notification


async def run_refund_batch(
    now: datetime | None = None,
    *,
    business_days: int | None = None,
    gateway: PaymentGateway | None = None,
    notifier: Notifier | None = None,
) -> RefundBatchResult:
    """Settle deposits of finished auctions older than the refund delay.

    Every participant is handled in its own transaction and re-checked under
    lock, so the batch can be re-run or overlap with manual refunds.
    """
    now = ensure_utc(now) if now is not None else utc_now()
    delay = business_days if business_days is not None else settings.refund_business_days_delay
    cutoff = business_days_before(now, delay)
    gateway = gateway or get_payment_gateway()
    notifier = notifier or get_notifier()

    result = RefundBatchResult()
    for auction_id in await _eligible_auction_ids(cutoff):
        result.auctions_scanned += 1
        for participant_id in await _candidate_participant_ids(auction_id):
            try:
                outcome, notification = await _settle_participant(participant_id, gateway=gateway, now=now)
            except Exception as exc:
                result.errors += 1
                logger.exception("Refund batch failed for participant %s: %s", participant_id, exc)
                continue

            if outcome == OUTCOME_REFUNDED:
                result.refunded += 1
            elif outcome == OUTCOME_FORFEITED:
                result.forfeited += 1
            else:
                result.skipped += 1

            if notification is not None:
                await notify_safely(notifier, NotificationKind.REFUND_UPDATE, notification)

    if result.processed or result.errors:
        logger.info(
            "Refund batch: %s auction(s), %s refunded, %s forfeited, %s error(s)",
            result.auctions_scanned,
            result.refunded,
            result.forfeited,
            result.errors,
        )
    return result
