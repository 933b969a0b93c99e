from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from settlement.db.base import ensure_utc, utc_now
from settlement.db.enums import (
    TERMINAL_AUCTION_STATUSES,
    AuctionStatus,
    AuditAction,
    ContractStatus,
    ParticipantState,
    RefundStatus,
)
from settlement.db.models import Auction, AuditLogEntry, Bid, Contract, Participant, User
from settlement.db.session import SessionFactory
from settlement.errors import InvalidStateError, NotFoundError, ValidationError
from settlement.services.audit_service import list_audit_entries, log_audit_action
from settlement.services.auction_service import (
    assign_winning_bid,
    clear_winning_bids,
    count_bids,
    get_contract,
    get_winning_bid,
    list_eligible_bids,
    list_participants,
    list_users_by_ids,
    require_auction,
)
from settlement.services.broadcast_service import (
    EVENT_AUCTION_FINALIZED,
    BroadcastEvent,
    Broadcaster,
    get_broadcaster,
    publish_safely,
)
from settlement.services.contract_service import cancel_contracts, ensure_contract
from settlement.services.evaluation_service import EvaluationPolicy, EvaluationResult, evaluate
from settlement.services.notifier import (
    Notification,
    NotificationKind,
    NotificationRecipient,
    Notifier,
    auction_notification_data,
    get_notifier,
    notify_safely,
)
from settlement.services.participant_state import derive_participant_state, is_confirmed_participant
from settlement.services.rbac_service import require_auction_manager, require_elevated
from settlement.services.winner_payment_service import (
    compute_payment_requirements,
    payment_request_notification,
)

logger = logging.getLogger(__name__)

OVERRIDE_STATUSES = frozenset({AuctionStatus.SUCCESS, AuctionStatus.FAILED, AuctionStatus.CANCELLED})


@dataclass(slots=True)
class FinalizationResult:
    auction_id: uuid.UUID
    previous_status: AuctionStatus
    status: AuctionStatus
    winning_bid_id: uuid.UUID | None
    winning_amount: Decimal | None
    winner_user_id: uuid.UUID | None
    contract_id: uuid.UUID | None
    contract_created: bool
    overridden: bool
    evaluation: EvaluationResult | None = None
    notifications: list[tuple[NotificationKind, Notification]] = field(default_factory=list, repr=False)


@dataclass(slots=True)
class BidView:
    id: uuid.UUID
    participant_id: uuid.UUID
    user_id: uuid.UUID | None
    bidder_name: str
    amount: Decimal
    bid_at: datetime
    is_winning_bid: bool
    is_denied: bool
    is_withdrawn: bool


@dataclass(slots=True)
class ParticipantSummary:
    id: uuid.UUID
    user_id: uuid.UUID
    full_name: str
    email: str
    state: ParticipantState
    deposit_amount: Decimal | None
    deposit_paid_at: datetime | None
    checked_in_at: datetime | None
    withdrawn_at: datetime | None
    is_disqualified: bool
    disqualified_reason: str | None
    refund_status: RefundStatus | None
    total_bids: int
    highest_bid: Decimal | None


@dataclass(slots=True)
class ManagementDetail:
    auction: Auction
    bids: list[BidView]
    participants: list[ParticipantSummary]
    winning_bid_id: uuid.UUID | None
    contract_id: uuid.UUID | None
    contract_status: ContractStatus | None
    evaluation: EvaluationResult
    summary: dict


def select_outcome(
    bids: list[Bid],
    *,
    winning_bid_id: uuid.UUID | None,
    evaluation: EvaluationResult | None,
) -> tuple[Bid | None, AuctionStatus]:
    """Pick the winning bid and resulting status for a finalization.

    ``bids`` must be sorted highest first. An explicit choice wins, then the
    evaluation recommendation, then the highest bid.
    """
    if winning_bid_id is not None:
        for bid in bids:
            if bid.id == winning_bid_id:
                return bid, AuctionStatus.SUCCESS
        raise NotFoundError(f"Bid {winning_bid_id} is not a valid bid of this auction")

    if evaluation is not None:
        if evaluation.recommended_status == AuctionStatus.SUCCESS and bids:
            return bids[0], AuctionStatus.SUCCESS
        return None, AuctionStatus.FAILED

    if bids:
        return bids[0], AuctionStatus.SUCCESS
    return None, AuctionStatus.FAILED


async def _apply_outcome(
    session: AsyncSession,
    *,
    auction: Auction,
    status: AuctionStatus,
    winning_bid: Bid | None,
    participants: dict[uuid.UUID, Participant],
    reason: str,
    now: datetime,
) -> tuple[Contract | None, bool]:
    auction.status = status
    auction.finalized_at = now
    auction.updated_at = now

    if status == AuctionStatus.SUCCESS and winning_bid is not None:
        await assign_winning_bid(session, auction_id=auction.id, bid=winning_bid)
        buyer_user_id = participants[winning_bid.participant_id].user_id
        return await ensure_contract(
            session,
            auction=auction,
            winning_bid=winning_bid,
            buyer_user_id=buyer_user_id,
            now=now,
        )

    await clear_winning_bids(session, auction.id)
    await cancel_contracts(session, auction.id, reason=reason, now=now)
    return None, False


async def _outcome_notifications(
    session: AsyncSession,
    *,
    auction: Auction,
    participants: dict[uuid.UUID, Participant],
    winning_bid: Bid | None,
    total_bids: int,
) -> list[tuple[NotificationKind, Notification]]:
    users = await list_users_by_ids(session, [participant.user_id for participant in participants.values()])
    winner_participant = participants.get(winning_bid.participant_id) if winning_bid is not None else None
    base = {
        **auction_notification_data(auction),
        "status": str(auction.status),
        "total_bids": total_bids,
        "winning_amount": str(winning_bid.amount) if winning_bid is not None else None,
    }

    notifications: list[tuple[NotificationKind, Notification]] = []
    for participant in participants.values():
        if not is_confirmed_participant(participant):
            continue
        user = users.get(participant.user_id)
        if user is None:
            continue
        is_winner = winner_participant is not None and participant.id == winner_participant.id
        notifications.append(
            (
                NotificationKind.AUCTION_RESULT,
                Notification(NotificationRecipient.from_user(user), {**base, "is_winner": is_winner}),
            )
        )

    if winning_bid is not None and winner_participant is not None:
        winner = users.get(winner_participant.user_id)
        if winner is not None:
            requirements = compute_payment_requirements(auction, winning_bid, winner_participant)
            notifications.append(
                (
                    NotificationKind.WINNER_PAYMENT_REQUEST,
                    payment_request_notification(auction, requirements, winner),
                )
            )
    return notifications


async def _dispatch(
    result: FinalizationResult,
    *,
    notifier: Notifier | None,
    broadcaster: Broadcaster | None,
) -> None:
    notifier = notifier or get_notifier()
    for kind, notification in result.notifications:
        await notify_safely(notifier, kind, notification)
    await publish_safely(
        broadcaster or get_broadcaster(),
        BroadcastEvent(
            auction_id=result.auction_id,
            event=EVENT_AUCTION_FINALIZED,
            data={
                "status": str(result.status),
                "winning_bid_id": str(result.winning_bid_id) if result.winning_bid_id else None,
                "winning_amount": str(result.winning_amount) if result.winning_amount is not None else None,
                "overridden": result.overridden,
            },
        ),
    )


async def finalize(
    auction_id: uuid.UUID,
    *,
    actor_id: uuid.UUID,
    winning_bid_id: uuid.UUID | None = None,
    notes: str | None = None,
    skip_evaluation: bool = False,
    policy: EvaluationPolicy | None = None,
    notifier: Notifier | None = None,
    broadcaster: Broadcaster | None = None,
    now: datetime | None = None,
) -> FinalizationResult:
    """Close an ended auction, lock in the winning bid and open its contract.

    Evaluation issues are recorded in the audit entry but never block the
    owner or an administrator from finalizing.
    """
    now = ensure_utc(now) if now is not None else utc_now()

    async with SessionFactory() as session:
        async with session.begin():
            auction = await require_auction(session, auction_id, for_update=True)
            await require_auction_manager(session, auction=auction, actor_id=actor_id)

            if auction.status in TERMINAL_AUCTION_STATUSES:
                raise InvalidStateError(f"Auction is already finalized (status: {auction.status})")
            if now < ensure_utc(auction.auction_end_at):
                raise InvalidStateError("Auction has not ended yet")

            participants = {participant.id: participant for participant in await list_participants(session, auction.id)}
            bids = await list_eligible_bids(session, auction.id)

            evaluation = None
            if not skip_evaluation:
                confirmed = [participant for participant in participants.values() if is_confirmed_participant(participant)]
                evaluation = evaluate(auction, bids, confirmed, policy=policy, now=now)
                if evaluation.issues:
                    logger.warning(
                        "Finalizing auction %s with evaluation issues: %s",
                        auction.id,
                        "; ".join(evaluation.issue_messages),
                    )

            winning_bid, status = select_outcome(bids, winning_bid_id=winning_bid_id, evaluation=evaluation)
            previous_status = AuctionStatus(auction.status)
            contract, created = await _apply_outcome(
                session,
                auction=auction,
                status=status,
                winning_bid=winning_bid,
                participants=participants,
                reason="Auction finalized without a winner",
                now=now,
            )
            total_bids = await count_bids(session, auction.id)

            await log_audit_action(
                session,
                auction_id=auction.id,
                action=AuditAction.AUCTION_FINALIZED,
                performed_by=actor_id,
                previous_status=str(previous_status),
                new_status=str(status),
                reason="Auction finalized",
                notes=notes,
                payload={
                    "winning_bid_id": str(winning_bid.id) if winning_bid is not None else None,
                    "contract_id": str(contract.id) if contract is not None else None,
                    "total_bids": total_bids,
                    "total_participants": len(participants),
                    "explicit_winner": winning_bid_id is not None,
                    "evaluation": evaluation.summary() if evaluation is not None else None,
                },
                now=now,
            )

            result = FinalizationResult(
                auction_id=auction.id,
                previous_status=previous_status,
                status=status,
                winning_bid_id=winning_bid.id if winning_bid is not None else None,
                winning_amount=Decimal(winning_bid.amount) if winning_bid is not None else None,
                winner_user_id=participants[winning_bid.participant_id].user_id if winning_bid is not None else None,
                contract_id=contract.id if contract is not None else None,
                contract_created=created,
                overridden=False,
                evaluation=evaluation,
                notifications=await _outcome_notifications(
                    session,
                    auction=auction,
                    participants=participants,
                    winning_bid=winning_bid,
                    total_bids=total_bids,
                ),
            )

    logger.info("Auction %s finalized as %s (winning bid %s)", auction_id, result.status, result.winning_bid_id)
    await _dispatch(result, notifier=notifier, broadcaster=broadcaster)
    return result


async def override_status(
    auction_id: uuid.UUID,
    *,
    actor_id: uuid.UUID,
    new_status: AuctionStatus,
    reason: str,
    winning_bid_id: uuid.UUID | None = None,
    notes: str | None = None,
    notifier: Notifier | None = None,
    broadcaster: Broadcaster | None = None,
    now: datetime | None = None,
) -> FinalizationResult:
    normalized_reason = (reason or "").strip()
    if not normalized_reason:
        raise ValidationError("Override reason is required")
    try:
        new_status = AuctionStatus(new_status)
    except ValueError as exc:
        raise ValidationError(f"Unknown auction status: {new_status}") from exc
    if new_status not in OVERRIDE_STATUSES:
        raise ValidationError(f"Cannot override auction status to {new_status}")

    now = ensure_utc(now) if now is not None else utc_now()

    async with SessionFactory() as session:
        async with session.begin():
            auction = await require_auction(session, auction_id, for_update=True)
            await require_auction_manager(session, auction=auction, actor_id=actor_id)

            participants = {participant.id: participant for participant in await list_participants(session, auction.id)}
            winning_bid: Bid | None = None
            if new_status == AuctionStatus.SUCCESS:
                bids = await list_eligible_bids(session, auction.id)
                if winning_bid_id is None:
                    current = await get_winning_bid(session, auction.id)
                    if current is not None and any(bid.id == current.id for bid in bids):
                        winning_bid_id = current.id
                winning_bid, _ = select_outcome(bids, winning_bid_id=winning_bid_id, evaluation=None)
                if winning_bid is None:
                    raise InvalidStateError("Cannot override to success without a valid bid")

            previous_status = AuctionStatus(auction.status)
            contract, created = await _apply_outcome(
                session,
                auction=auction,
                status=new_status,
                winning_bid=winning_bid,
                participants=participants,
                reason=normalized_reason,
                now=now,
            )
            total_bids = await count_bids(session, auction.id)

            await log_audit_action(
                session,
                auction_id=auction.id,
                action=AuditAction.STATUS_OVERRIDE,
                performed_by=actor_id,
                previous_status=str(previous_status),
                new_status=str(new_status),
                reason=normalized_reason,
                notes=notes,
                payload={
                    "winning_bid_id": str(winning_bid.id) if winning_bid is not None else None,
                    "contract_id": str(contract.id) if contract is not None else None,
                    "contract_created": created,
                    "total_bids": total_bids,
                },
                now=now,
            )

            notifications: list[tuple[NotificationKind, Notification]] = []
            if new_status in {AuctionStatus.SUCCESS, AuctionStatus.FAILED}:
                notifications = await _outcome_notifications(
                    session,
                    auction=auction,
                    participants=participants,
                    winning_bid=winning_bid,
                    total_bids=total_bids,
                )

            result = FinalizationResult(
                auction_id=auction.id,
                previous_status=previous_status,
                status=new_status,
                winning_bid_id=winning_bid.id if winning_bid is not None else None,
                winning_amount=Decimal(winning_bid.amount) if winning_bid is not None else None,
                winner_user_id=participants[winning_bid.participant_id].user_id if winning_bid is not None else None,
                contract_id=contract.id if contract is not None else None,
                contract_created=created,
                overridden=True,
                notifications=notifications,
            )

    logger.warning(
        "Auction %s status overridden %s -> %s by %s: %s",
        auction_id,
        result.previous_status,
        result.status,
        actor_id,
        normalized_reason,
    )
    await _dispatch(result, notifier=notifier, broadcaster=broadcaster)
    return result


async def get_audit_logs(auction_id: uuid.UUID, *, actor_id: uuid.UUID) -> list[AuditLogEntry]:
    async with SessionFactory() as session:
        auction = await require_auction(session, auction_id)
        await require_auction_manager(session, auction=auction, actor_id=actor_id)
        return await list_audit_entries(session, auction.id)


def _participant_summary(
    participant: Participant,
    user: User | None,
    bids: list[Bid],
) -> ParticipantSummary:
    own_bids = [bid for bid in bids if bid.participant_id == participant.id]
    return ParticipantSummary(
        id=participant.id,
        user_id=participant.user_id,
        full_name=user.full_name if user is not None else "",
        email=user.email if user is not None else "",
        state=derive_participant_state(participant),
        deposit_amount=participant.deposit_amount,
        deposit_paid_at=participant.deposit_paid_at,
        checked_in_at=participant.checked_in_at,
        withdrawn_at=participant.withdrawn_at,
        is_disqualified=participant.is_disqualified,
        disqualified_reason=str(participant.disqualified_reason) if participant.disqualified_reason else None,
        refund_status=participant.refund_status,
        total_bids=len(own_bids),
        highest_bid=max((Decimal(bid.amount) for bid in own_bids), default=None),
    )


async def get_management_detail(
    auction_id: uuid.UUID,
    *,
    actor_id: uuid.UUID,
    policy: EvaluationPolicy | None = None,
    now: datetime | None = None,
) -> ManagementDetail:
    async with SessionFactory() as session:
        await require_elevated(session, actor_id=actor_id)
        auction = await require_auction(session, auction_id)
        participants = await list_participants(session, auction.id)
        participants_by_id = {participant.id: participant for participant in participants}
        all_bids = list(
            (
                await session.execute(
                    select(Bid).where(Bid.auction_id == auction.id).order_by(Bid.amount.desc(), Bid.bid_at.asc())
                )
            )
            .scalars()
            .all()
        )
        valid_bids = await list_eligible_bids(session, auction.id)
        users = await list_users_by_ids(session, [participant.user_id for participant in participants])
        contract = await get_contract(session, auction.id)

    confirmed = [participant for participant in participants if is_confirmed_participant(participant)]
    evaluation = evaluate(auction, valid_bids, confirmed, policy=policy, now=now)

    bid_views = []
    for bid in all_bids:
        participant = participants_by_id.get(bid.participant_id)
        user = users.get(participant.user_id) if participant is not None else None
        bid_views.append(
            BidView(
                id=bid.id,
                participant_id=bid.participant_id,
                user_id=participant.user_id if participant is not None else None,
                bidder_name=user.full_name if user is not None else "",
                amount=Decimal(bid.amount),
                bid_at=bid.bid_at,
                is_winning_bid=bid.is_winning_bid,
                is_denied=bid.is_denied,
                is_withdrawn=bid.is_withdrawn,
            )
        )

    summaries = [
        _participant_summary(participant, users.get(participant.user_id), all_bids) for participant in participants
    ]
    winning_bid_id = next((bid.id for bid in all_bids if bid.is_winning_bid), None)
    return ManagementDetail(
        auction=auction,
        bids=bid_views,
        participants=summaries,
        winning_bid_id=winning_bid_id,
        contract_id=contract.id if contract is not None else None,
        contract_status=ContractStatus(contract.status) if contract is not None else None,
        evaluation=evaluation,
        summary={
            "total_participants": len(participants),
            "confirmed_participants": len(confirmed),
            "checked_in_participants": sum(1 for p in participants if p.checked_in_at is not None),
            "disqualified_participants": sum(1 for p in participants if p.is_disqualified),
            "total_bids": len(all_bids),
            "valid_bids": len(valid_bids),
        },
    )
