from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from settlement.db.base import ensure_utc, utc_now
from settlement.db.enums import (
    AuditAction,
    DisqualificationReason,
    ParticipantState,
    PaymentStatus,
    PaymentType,
    RefundStatus,
    UserRole,
)
from settlement.db.models import Auction, Bid, Participant, Payment, User
from settlement.db.session import SessionFactory
from settlement.errors import (
    ConflictError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    RefundNotEligibleError,
    ValidationError,
)
from settlement.services.audit_service import log_audit_action
from settlement.services.auction_service import (
    find_participant,
    get_participant_by_id,
    get_payment_by_id,
    get_user_by_id,
    list_users_by_roles,
    require_auction,
    require_user,
)
from settlement.services.notifier import (
    Notification,
    NotificationKind,
    NotificationRecipient,
    Notifier,
    auction_notification_data,
    get_notifier,
    notify_safely,
)
from settlement.services.participant_state import derive_participant_state
from settlement.services.payment_gateway import PaymentGateway, bounded_gateway_call, get_payment_gateway
from settlement.services.rbac_service import is_elevated, require_elevated

logger = logging.getLogger(__name__)

REFUND_NOTICE_ROLES = (UserRole.ADMIN, UserRole.SUPER_ADMIN)
TERMINAL_REFUND_STATUSES = frozenset(
    {RefundStatus.PROCESSED, RefundStatus.FORFEITED, RefundStatus.AUTO_PROCESSED}
)

RULE_DISQUALIFIED = "disqualified"
RULE_WINNER = "winner"
RULE_CHECK_IN_FAILURE = "check_in_failure"
RULE_LATE_WITHDRAWAL = "late_withdrawal"
RULE_NO_DEPOSIT = "no_deposit"
RULE_ELIGIBLE = "eligible"


@dataclass(slots=True)
class RefundEligibility:
    eligible: bool
    rule: str
    reason: str
    refund_amount: Decimal
    refund_percentage: int


@dataclass(slots=True)
class RefundView:
    participant_id: uuid.UUID
    auction_id: uuid.UUID
    auction_code: str
    user_id: uuid.UUID
    full_name: str
    email: str
    refund_status: RefundStatus | None
    deposit_amount: Decimal | None
    refund_requested_at: datetime | None
    refund_processed_at: datetime | None
    refund_note: str | None
    is_disqualified: bool
    disqualified_reason: DisqualificationReason | None


@dataclass(slots=True)
class RefundDetail:
    refund: RefundView
    participant_state: ParticipantState
    eligibility: RefundEligibility
    holds_winning_bid: bool


@dataclass(slots=True)
class RefundPage:
    items: list[RefundView]
    total: int
    page: int
    limit: int


def _ineligible(rule: str, reason: str) -> RefundEligibility:
    return RefundEligibility(eligible=False, rule=rule, reason=reason, refund_amount=Decimal("0"), refund_percentage=0)


def evaluate_refund_eligibility(
    participant,
    auction,
    *,
    holds_winning_bid: bool,
    now: datetime,
) -> RefundEligibility:
    """Apply the deposit refund rules in order; the first matching rule decides."""
    if participant.is_disqualified:
        reason = participant.disqualified_reason or "unspecified"
        return _ineligible(RULE_DISQUALIFIED, f"Disqualified: {reason}")

    if holds_winning_bid:
        return _ineligible(RULE_WINNER, "Winner must complete purchase; deposit is applied to the winning payment")

    if (
        participant.confirmed_at is not None
        and participant.checked_in_at is None
        and participant.withdrawn_at is None
        and ensure_utc(now) >= ensure_utc(auction.auction_end_at)
    ):
        return _ineligible(RULE_CHECK_IN_FAILURE, "Did not check in for the auction")

    if (
        participant.withdrawn_at is not None
        and auction.sale_end_at is not None
        and ensure_utc(participant.withdrawn_at) > ensure_utc(auction.sale_end_at)
    ):
        return _ineligible(RULE_LATE_WITHDRAWAL, "Withdrew after the registration deadline")

    if participant.deposit_paid_at is None:
        return _ineligible(RULE_NO_DEPOSIT, "No deposit paid")

    return RefundEligibility(
        eligible=True,
        rule=RULE_ELIGIBLE,
        reason="Eligible for full deposit refund",
        refund_amount=Decimal(participant.deposit_amount or 0),
        refund_percentage=100,
    )


async def holds_winning_bid(session: AsyncSession, participant_id: uuid.UUID) -> bool:
    winning_id = await session.scalar(
        select(Bid.id).where(Bid.participant_id == participant_id, Bid.is_winning_bid.is_(True)).limit(1)
    )
    return winning_id is not None


def _refund_view(participant: Participant, auction: Auction, user: User | None) -> RefundView:
    return RefundView(
        participant_id=participant.id,
        auction_id=auction.id,
        auction_code=auction.code,
        user_id=participant.user_id,
        full_name=user.full_name if user is not None else "",
        email=user.email if user is not None else "",
        refund_status=participant.refund_status,
        deposit_amount=participant.deposit_amount,
        refund_requested_at=participant.refund_requested_at,
        refund_processed_at=participant.refund_processed_at,
        refund_note=participant.refund_note,
        is_disqualified=participant.is_disqualified,
        disqualified_reason=participant.disqualified_reason,
    )


def _refund_notification(
    auction: Auction,
    user: User,
    participant: Participant,
    *,
    reason: str | None = None,
) -> Notification:
    return Notification(
        NotificationRecipient.from_user(user),
        {
            **auction_notification_data(auction),
            "participant_id": str(participant.id),
            "refund_status": str(participant.refund_status) if participant.refund_status else None,
            "amount": str(participant.deposit_amount or 0),
            "reason": reason,
        },
    )


async def _lock_participant(session: AsyncSession, participant_id: uuid.UUID) -> Participant:
    participant = await get_participant_by_id(session, participant_id, for_update=True)
    if participant is None:
        raise NotFoundError(f"Participant {participant_id} not found")
    return participant


def _require_refund_status(participant: Participant, expected: RefundStatus) -> None:
    if participant.refund_status != expected:
        current = participant.refund_status or "not requested"
        raise ConflictError(f"Refund is {current}, expected {expected}")


async def request_refund(
    auction_id: uuid.UUID,
    *,
    user_id: uuid.UUID,
    reason: str | None = None,
    notifier: Notifier | None = None,
    now: datetime | None = None,
) -> RefundView:
    now = now or utc_now()
    async with SessionFactory() as session:
        async with session.begin():
            auction = await require_auction(session, auction_id)
            found = await find_participant(session, auction_id=auction.id, user_id=user_id)
            if found is None:
                raise NotFoundError("You are not registered for this auction")
            participant = await _lock_participant(session, found.id)

            if participant.refund_status is not None:
                raise ConflictError(f"Refund already {participant.refund_status}")

            eligibility = evaluate_refund_eligibility(
                participant,
                auction,
                holds_winning_bid=await holds_winning_bid(session, participant.id),
                now=now,
            )
            if not eligibility.eligible:
                raise RefundNotEligibleError(eligibility.reason)

            participant.refund_status = RefundStatus.PENDING
            participant.refund_requested_at = now
            participant.refund_note = (reason or "").strip() or None
            participant.updated_at = now

            user = await require_user(session, user_id)
            admins = await list_users_by_roles(session, REFUND_NOTICE_ROLES)
            view = _refund_view(participant, auction, user)
            notifications = [_refund_notification(auction, admin, participant, reason=reason) for admin in admins]

    logger.info("Refund requested for participant %s in auction %s", view.participant_id, auction_id)
    notifier = notifier or get_notifier()
    for notification in notifications:
        await notify_safely(notifier, NotificationKind.REFUND_UPDATE, notification)
    return view


async def approve_refund(
    participant_id: uuid.UUID,
    *,
    admin_id: uuid.UUID,
    note: str | None = None,
    notifier: Notifier | None = None,
    now: datetime | None = None,
) -> RefundView:
    now = now or utc_now()
    async with SessionFactory() as session:
        async with session.begin():
            await require_elevated(session, actor_id=admin_id)
            participant = await _lock_participant(session, participant_id)
            _require_refund_status(participant, RefundStatus.PENDING)
            auction = await require_auction(session, participant.auction_id)

            eligibility = evaluate_refund_eligibility(
                participant,
                auction,
                holds_winning_bid=await holds_winning_bid(session, participant.id),
                now=now,
            )
            if not eligibility.eligible:
                raise RefundNotEligibleError(eligibility.reason)

            participant.refund_status = RefundStatus.APPROVED
            if note and note.strip():
                participant.refund_note = note.strip()
            participant.updated_at = now

            await log_audit_action(
                session,
                auction_id=auction.id,
                action=AuditAction.REFUND_APPROVED,
                performed_by=admin_id,
                previous_status=str(RefundStatus.PENDING),
                new_status=str(RefundStatus.APPROVED),
                notes=note,
                payload={"participant_id": str(participant.id), "amount": str(eligibility.refund_amount)},
                now=now,
            )
            user = await get_user_by_id(session, participant.user_id)
            view = _refund_view(participant, auction, user)
            notification = _refund_notification(auction, user, participant) if user is not None else None

    if notification is not None:
        await notify_safely(notifier or get_notifier(), NotificationKind.REFUND_UPDATE, notification)
    return view


async def reject_refund(
    participant_id: uuid.UUID,
    *,
    admin_id: uuid.UUID,
    reason: str,
    notifier: Notifier | None = None,
    now: datetime | None = None,
) -> RefundView:
    normalized_reason = (reason or "").strip()
    if not normalized_reason:
        raise ValidationError("Rejection reason is required")

    now = now or utc_now()
    async with SessionFactory() as session:
        async with session.begin():
            await require_elevated(session, actor_id=admin_id)
            participant = await _lock_participant(session, participant_id)
            _require_refund_status(participant, RefundStatus.PENDING)
            auction = await require_auction(session, participant.auction_id)

            participant.refund_status = RefundStatus.REJECTED
            participant.refund_note = normalized_reason
            participant.updated_at = now

            await log_audit_action(
                session,
                auction_id=auction.id,
                action=AuditAction.REFUND_REJECTED,
                performed_by=admin_id,
                previous_status=str(RefundStatus.PENDING),
                new_status=str(RefundStatus.REJECTED),
                reason=normalized_reason,
                payload={"participant_id": str(participant.id)},
                now=now,
            )
            user = await get_user_by_id(session, participant.user_id)
            view = _refund_view(participant, auction, user)
            notification = (
                _refund_notification(auction, user, participant, reason=normalized_reason) if user is not None else None
            )

    if notification is not None:
        await notify_safely(notifier or get_notifier(), NotificationKind.REFUND_UPDATE, notification)
    return view


async def refund_deposit_payment(
    session: AsyncSession,
    *,
    participant: Participant,
    gateway: PaymentGateway,
    reason: str,
    now: datetime,
) -> Payment | None:
    """Refund the participant's deposit through the gateway and record it.

    Returns None when the participant has no deposit payment on file.
    """
    if participant.deposit_payment_id is None:
        return None
    deposit = await get_payment_by_id(session, participant.deposit_payment_id, for_update=True)
    if deposit is None or not deposit.transaction_id:
        return None
    if deposit.status == PaymentStatus.REFUNDED:
        return deposit

    amount = Decimal(participant.deposit_amount if participant.deposit_amount is not None else deposit.amount)
    receipt = await bounded_gateway_call(
        gateway.refund(payment_ref=deposit.transaction_id, amount=amount, reason=reason)
    )
    deposit.status = PaymentStatus.REFUNDED
    deposit.updated_at = now
    session.add(
        Payment(
            auction_id=participant.auction_id,
            user_id=participant.user_id,
            payment_type=PaymentType.REFUND,
            amount=amount,
            status=PaymentStatus.COMPLETED,
            paid_at=now,
            payload={
                "refund_id": receipt.refund_id,
                "refund_status": receipt.status,
                "deposit_payment_id": str(deposit.id),
            },
            created_at=now,
            updated_at=now,
        )
    )
    return deposit


async def process_refund(
    participant_id: uuid.UUID,
    *,
    admin_id: uuid.UUID,
    gateway: PaymentGateway | None = None,
    notifier: Notifier | None = None,
    now: datetime | None = None,
) -> RefundView:
    now = now or utc_now()
    gateway = gateway or get_payment_gateway()
    async with SessionFactory() as session:
        async with session.begin():
            await require_elevated(session, actor_id=admin_id)
            participant = await _lock_participant(session, participant_id)
            _require_refund_status(participant, RefundStatus.APPROVED)
            auction = await require_auction(session, participant.auction_id)

            deposit = await refund_deposit_payment(
                session,
                participant=participant,
                gateway=gateway,
                reason=f"Deposit refund for auction {auction.code}",
                now=now,
            )
            if deposit is None:
                raise InvalidStateError("Participant has no deposit payment to refund")

            participant.refund_status = RefundStatus.PROCESSED
            participant.refund_processed_at = now
            participant.updated_at = now

            await log_audit_action(
                session,
                auction_id=auction.id,
                action=AuditAction.REFUND_PROCESSED,
                performed_by=admin_id,
                previous_status=str(RefundStatus.APPROVED),
                new_status=str(RefundStatus.PROCESSED),
                payload={
                    "participant_id": str(participant.id),
                    "deposit_payment_id": str(deposit.id),
                    "amount": str(participant.deposit_amount or deposit.amount),
                },
                now=now,
            )
            user = await get_user_by_id(session, participant.user_id)
            view = _refund_view(participant, auction, user)
            notification = _refund_notification(auction, user, participant) if user is not None else None

    logger.info("Refund processed for participant %s", participant_id)
    if notification is not None:
        await notify_safely(notifier or get_notifier(), NotificationKind.REFUND_UPDATE, notification)
    return view


async def list_refunds(
    *,
    actor_id: uuid.UUID,
    auction_id: uuid.UUID | None = None,
    status: RefundStatus | None = None,
    page: int = 1,
    limit: int = 20,
) -> RefundPage:
    page = max(page, 1)
    limit = min(max(limit, 1), 100)

    filters = [Participant.refund_status.is_not(None)]
    if auction_id is not None:
        filters.append(Participant.auction_id == auction_id)
    if status is not None:
        filters.append(Participant.refund_status == RefundStatus(status))

    async with SessionFactory() as session:
        await require_elevated(session, actor_id=actor_id)
        total = int(await session.scalar(select(func.count(Participant.id)).where(*filters)) or 0)
        rows = await session.execute(
            select(Participant, Auction, User)
            .join(Auction, Auction.id == Participant.auction_id)
            .join(User, User.id == Participant.user_id)
            .where(*filters)
            .order_by(Participant.refund_requested_at.desc(), Participant.id.asc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        items = [_refund_view(participant, auction, user) for participant, auction, user in rows.all()]

    return RefundPage(items=items, total=total, page=page, limit=limit)


async def get_refund_detail(
    participant_id: uuid.UUID,
    *,
    actor_id: uuid.UUID,
    now: datetime | None = None,
) -> RefundDetail:
    now = now or utc_now()
    async with SessionFactory() as session:
        participant = await get_participant_by_id(session, participant_id)
        if participant is None:
            raise NotFoundError(f"Participant {participant_id} not found")
        actor = await get_user_by_id(session, actor_id)
        if actor is None or not (actor.id == participant.user_id or is_elevated(actor)):
            raise ForbiddenError("Not allowed to view this refund")

        auction = await require_auction(session, participant.auction_id)
        user = await get_user_by_id(session, participant.user_id)
        is_winner = await holds_winning_bid(session, participant.id)

    return RefundDetail(
        refund=_refund_view(participant, auction, user),
        participant_state=derive_participant_state(participant),
        eligibility=evaluate_refund_eligibility(participant, auction, holds_winning_bid=is_winner, now=now),
        holds_winning_bid=is_winner,
    )


def apply_disqualification(
    participant: Participant,
    *,
    reason: DisqualificationReason,
    note: str | None,
    now: datetime,
) -> None:
    participant.is_disqualified = True
    participant.disqualified_at = now
    participant.disqualified_reason = reason
    if participant.deposit_paid_at is not None and participant.refund_status not in TERMINAL_REFUND_STATUSES:
        participant.refund_status = RefundStatus.FORFEITED
        participant.refund_processed_at = now
    if note:
        participant.refund_note = note
    participant.updated_at = now


async def disqualify_participant(
    participant_id: uuid.UUID,
    *,
    reason: DisqualificationReason,
    admin_id: uuid.UUID,
    notes: str | None = None,
    notifier: Notifier | None = None,
    now: datetime | None = None,
) -> RefundView:
    try:
        reason = DisqualificationReason(reason)
    except ValueError as exc:
        raise ValidationError(f"Unknown disqualification reason: {reason}") from exc

    now = now or utc_now()
    async with SessionFactory() as session:
        async with session.begin():
            await require_elevated(session, actor_id=admin_id)
            participant = await _lock_participant(session, participant_id)
            if participant.is_disqualified:
                raise ConflictError("Participant is already disqualified")
            auction = await require_auction(session, participant.auction_id)

            previous_refund_status = participant.refund_status
            apply_disqualification(participant, reason=reason, note=(notes or "").strip() or None, now=now)

            await log_audit_action(
                session,
                auction_id=auction.id,
                action=AuditAction.PARTICIPANT_DISQUALIFIED,
                performed_by=admin_id,
                previous_status=str(previous_refund_status) if previous_refund_status else None,
                new_status=str(participant.refund_status) if participant.refund_status else None,
                reason=str(reason),
                notes=notes,
                payload={"participant_id": str(participant.id), "user_id": str(participant.user_id)},
                now=now,
            )
            user = await get_user_by_id(session, participant.user_id)
            view = _refund_view(participant, auction, user)
            notification = (
                _refund_notification(auction, user, participant, reason=str(reason)) if user is not None else None
            )

    logger.warning("Participant %s disqualified: %s", participant_id, reason)
    if notification is not None:
        await notify_safely(notifier or get_notifier(), NotificationKind.PARTICIPANT_DISQUALIFIED, notification)
    return view
