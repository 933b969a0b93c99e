from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from settlement.config import settings
from settlement.db.base import ensure_utc, utc_now
from settlement.db.enums import (
    AuctionStatus,
    AuditAction,
    ContractStatus,
    DisqualificationReason,
    PaymentStatus,
    PaymentType,
    RefundStatus,
    UserRole,
)
from settlement.db.models import Auction, Bid, Participant, Payment, User
from settlement.db.session import SessionFactory
from settlement.errors import (
    ForbiddenError,
    GatewayError,
    InvalidStateError,
    NotFoundError,
    PaymentForfeitedError,
)
from settlement.services.audit_service import log_audit_action
from settlement.services.auction_service import (
    assign_winning_bid,
    get_contract,
    get_participant_by_id,
    get_user_by_id,
    get_winning_bid,
    list_participants,
    list_users_by_ids,
    list_users_by_roles,
    list_valid_bids,
    require_auction,
    require_user,
)
from settlement.services.broadcast_service import (
    EVENT_CONTRACT_SIGNED,
    EVENT_WINNER_CHANGED,
    BroadcastEvent,
    Broadcaster,
    get_broadcaster,
    publish_safely,
)
from settlement.services.contract_service import (
    ContractDocumentData,
    build_contract_document,
    cancel_contracts,
    ensure_contract,
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
from settlement.services.payment_gateway import (
    PaymentBreakdown,
    PaymentGateway,
    PaymentPayer,
    bounded_gateway_call,
    failure_reason_for,
    get_payment_gateway,
)
from settlement.services.rbac_service import is_elevated, require_elevated

logger = logging.getLogger(__name__)

PAYMENT_NOTICE_ROLES = (UserRole.AUCTIONEER, UserRole.ADMIN, UserRole.SUPER_ADMIN)


@dataclass(slots=True)
class PaymentRequirements:
    auction_id: uuid.UUID
    winning_bid_id: uuid.UUID
    participant_id: uuid.UUID
    winner_user_id: uuid.UUID
    winning_amount: Decimal
    deposit_paid: Decimal
    remaining_amount: Decimal
    dossier_fee_due: Decimal
    total_due: Decimal
    payment_deadline: datetime
    currency: str

    def is_overdue(self, now: datetime) -> bool:
        return ensure_utc(now) > self.payment_deadline

    def notification_data(self) -> dict:
        return {
            "winning_bid_id": str(self.winning_bid_id),
            "winning_amount": str(self.winning_amount),
            "deposit_paid": str(self.deposit_paid),
            "remaining_amount": str(self.remaining_amount),
            "dossier_fee_due": str(self.dossier_fee_due),
            "total_due": str(self.total_due),
            "payment_deadline": self.payment_deadline.isoformat(),
            "currency": self.currency,
        }


@dataclass(slots=True)
class PaymentInitiation:
    payment_id: uuid.UUID
    transaction_id: str
    payment_url: str | None
    requirements: PaymentRequirements


@dataclass(slots=True)
class PaymentVerificationOutcome:
    payment_id: uuid.UUID
    transaction_id: str
    payment_status: PaymentStatus
    already_processed: bool
    contract_id: uuid.UUID | None = None
    contract_status: ContractStatus | None = None
    document: ContractDocumentData | None = None


@dataclass(slots=True)
class ForfeitureOutcome:
    applied: bool
    auction_status: AuctionStatus
    defaulted_bid_id: uuid.UUID
    defaulted_user_id: uuid.UUID | None = None
    promoted_bid_id: uuid.UUID | None = None
    promoted_user_id: uuid.UUID | None = None
    notifications: list[tuple[NotificationKind, Notification]] = field(default_factory=list)


@dataclass(slots=True)
class PaymentFailureOutcome:
    payment_id: uuid.UUID
    payment_status: PaymentStatus
    failure_reason: str
    forfeited: bool
    forfeiture: ForfeitureOutcome | None = None


def payment_deadline_for(auction: Auction, winning_bid: Bid, *, deadline_days: int | None = None) -> datetime:
    """Deadline for the current holder of the winning bid.

    The original winner is measured from the auction end; a bidder promoted
    after a default gets a fresh window from the promotion time.
    """
    days = deadline_days if deadline_days is not None else settings.winner_payment_deadline_days
    base = winning_bid.promoted_at or auction.auction_end_at
    return ensure_utc(base) + timedelta(days=max(days, 0))


def compute_payment_requirements(
    auction: Auction,
    winning_bid: Bid,
    participant: Participant,
    *,
    deadline_days: int | None = None,
) -> PaymentRequirements:
    winning_amount = Decimal(winning_bid.amount)
    deposit_paid = Decimal("0")
    if participant.deposit_paid_at is not None and participant.deposit_amount is not None:
        deposit_paid = Decimal(participant.deposit_amount)
    remaining = max(winning_amount - deposit_paid, Decimal("0"))
    # dossier fee is collected at registration time
    dossier_fee_due = Decimal("0")
    return PaymentRequirements(
        auction_id=auction.id,
        winning_bid_id=winning_bid.id,
        participant_id=participant.id,
        winner_user_id=participant.user_id,
        winning_amount=winning_amount,
        deposit_paid=deposit_paid,
        remaining_amount=remaining,
        dossier_fee_due=dossier_fee_due,
        total_due=remaining + dossier_fee_due,
        payment_deadline=payment_deadline_for(auction, winning_bid, deadline_days=deadline_days),
        currency=settings.payment_gateway_currency,
    )


def payment_request_notification(
    auction: Auction,
    requirements: PaymentRequirements,
    winner: User,
) -> Notification:
    return Notification(
        recipient=NotificationRecipient.from_user(winner),
        data={**auction_notification_data(auction), **requirements.notification_data()},
    )


async def _load_requirements(
    session: AsyncSession,
    auction_id: uuid.UUID,
) -> tuple[Auction, Bid, Participant, User, PaymentRequirements]:
    auction = await require_auction(session, auction_id)
    if auction.status != AuctionStatus.SUCCESS:
        raise InvalidStateError(f"Auction is not successful (status: {auction.status})")

    winning_bid = await get_winning_bid(session, auction.id)
    if winning_bid is None:
        raise NotFoundError("Auction has no winning bid")

    participant = await get_participant_by_id(session, winning_bid.participant_id)
    if participant is None:
        raise NotFoundError("Winning participant not found")
    winner = await require_user(session, participant.user_id)
    return auction, winning_bid, participant, winner, compute_payment_requirements(auction, winning_bid, participant)


async def get_payment_requirements(
    auction_id: uuid.UUID,
    *,
    notify: bool = True,
    notifier: Notifier | None = None,
) -> PaymentRequirements:
    async with SessionFactory() as session:
        auction, _, _, winner, requirements = await _load_requirements(session, auction_id)

    if notify:
        await notify_safely(
            notifier or get_notifier(),
            NotificationKind.WINNER_PAYMENT_REQUEST,
            payment_request_notification(auction, requirements, winner),
        )
    return requirements


async def initiate_winner_payment(
    auction_id: uuid.UUID,
    *,
    winner_id: uuid.UUID,
    gateway: PaymentGateway | None = None,
    now: datetime | None = None,
) -> PaymentInitiation:
    now = now or utc_now()
    gateway = gateway or get_payment_gateway()

    async with SessionFactory() as session:
        auction, _, _, winner, requirements = await _load_requirements(session, auction_id)

    if requirements.winner_user_id != winner_id:
        raise ForbiddenError("Only the auction winner can initiate the winning payment")
    if requirements.is_overdue(now):
        raise PaymentForfeitedError("Payment deadline has passed")

    handle = await bounded_gateway_call(
        gateway.create_payment(
            payer=PaymentPayer(user_id=winner.id, full_name=winner.full_name, email=winner.email),
            breakdown=PaymentBreakdown(
                auction_id=auction.id,
                payment_type=PaymentType.WINNING_PAYMENT,
                amount=requirements.total_due,
                currency=requirements.currency,
                description=f"Winning payment for auction {auction.code}",
            ),
        )
    )

    async with SessionFactory() as session:
        async with session.begin():
            payment = Payment(
                auction_id=auction.id,
                user_id=winner.id,
                payment_type=PaymentType.WINNING_PAYMENT,
                amount=requirements.total_due,
                status=PaymentStatus.PENDING,
                transaction_id=handle.transaction_id,
                payment_url=handle.payment_url,
                payload={"breakdown": requirements.notification_data(), "gateway_status": handle.status},
                created_at=now,
                updated_at=now,
            )
            session.add(payment)
            await session.flush()

    logger.info(
        "Winner payment %s initiated for auction %s, amount %s",
        handle.transaction_id,
        auction.id,
        requirements.total_due,
    )
    return PaymentInitiation(
        payment_id=payment.id,
        transaction_id=handle.transaction_id,
        payment_url=handle.payment_url,
        requirements=requirements,
    )


async def _get_winning_payment(
    session: AsyncSession,
    *,
    transaction_id: str,
    auction_id: uuid.UUID,
    for_update: bool = False,
) -> Payment | None:
    stmt = select(Payment).where(
        Payment.transaction_id == transaction_id,
        Payment.auction_id == auction_id,
        Payment.payment_type == PaymentType.WINNING_PAYMENT,
    )
    if for_update:
        stmt = stmt.with_for_update()
    return await session.scalar(stmt)


async def _winning_user_id(session: AsyncSession, auction_id: uuid.UUID) -> uuid.UUID | None:
    winning_bid = await get_winning_bid(session, auction_id)
    if winning_bid is None:
        return None
    participant = await get_participant_by_id(session, winning_bid.participant_id)
    return participant.user_id if participant is not None else None


async def _cached_outcome(session: AsyncSession, payment: Payment) -> PaymentVerificationOutcome:
    contract = await get_contract(session, payment.auction_id)
    document = None
    if contract is not None:
        auction = await require_auction(session, payment.auction_id)
        buyer = await require_user(session, contract.buyer_user_id)
        document = build_contract_document(contract, auction=auction, buyer=buyer)
    return PaymentVerificationOutcome(
        payment_id=payment.id,
        transaction_id=payment.transaction_id or "",
        payment_status=PaymentStatus(payment.status),
        already_processed=True,
        contract_id=contract.id if contract is not None else None,
        contract_status=ContractStatus(contract.status) if contract is not None else None,
        document=document,
    )


async def verify_winner_payment(
    transaction_id: str,
    *,
    auction_id: uuid.UUID,
    actor_id: uuid.UUID,
    gateway: PaymentGateway | None = None,
    notifier: Notifier | None = None,
    broadcaster: Broadcaster | None = None,
    now: datetime | None = None,
) -> PaymentVerificationOutcome:
    """Confirm the winner's payment with the gateway and sign the contract.

    Safe to call repeatedly: once the payment row is completed every later call
    returns the stored contract state without touching the gateway.
    """
    now = now or utc_now()
    gateway = gateway or get_payment_gateway()

    async with SessionFactory() as session:
        payment = await _get_winning_payment(session, transaction_id=transaction_id, auction_id=auction_id)
        if payment is None:
            raise NotFoundError(f"Payment {transaction_id} not found for auction {auction_id}")

        actor = await get_user_by_id(session, actor_id)
        winner_user_id = await _winning_user_id(session, auction_id)
        if actor is None or not (
            actor.id == payment.user_id or actor.id == winner_user_id or is_elevated(actor)
        ):
            raise ForbiddenError("Not allowed to verify this payment")

        if payment.status == PaymentStatus.COMPLETED:
            return await _cached_outcome(session, payment)
        payment_id = payment.id

    verification = await bounded_gateway_call(gateway.verify_payment(transaction_id))
    if not verification.is_paid:
        failure = await handle_payment_failure(
            auction_id,
            payment_id=payment_id,
            failure_status=verification.status,
            notifier=notifier,
            broadcaster=broadcaster,
            now=now,
        )
        if failure.forfeited:
            raise PaymentForfeitedError(
                f"Payment deadline has passed; winning bid forfeited ({failure.failure_reason})"
            )
        raise GatewayError(failure.failure_reason, retryable=True)

    notifications: list[tuple[NotificationKind, Notification]] = []
    async with SessionFactory() as session:
        async with session.begin():
            auction = await require_auction(session, auction_id, for_update=True)
            payment = await _get_winning_payment(
                session,
                transaction_id=transaction_id,
                auction_id=auction_id,
                for_update=True,
            )
            if payment is None:
                raise NotFoundError(f"Payment {transaction_id} not found for auction {auction_id}")
            if payment.status == PaymentStatus.COMPLETED:
                return await _cached_outcome(session, payment)
            if verification.amount is not None and Decimal(verification.amount) != Decimal(payment.amount):
                logger.warning(
                    "Gateway reported amount %s for payment %s, expected %s",
                    verification.amount,
                    transaction_id,
                    payment.amount,
                )

            winning_bid = await get_winning_bid(session, auction.id, for_update=True)
            winner_participant = (
                await get_participant_by_id(session, winning_bid.participant_id) if winning_bid else None
            )
            if winning_bid is None or winner_participant is None or winner_participant.user_id != payment.user_id:
                raise InvalidStateError("Payer no longer holds the winning bid")

            payment.status = PaymentStatus.COMPLETED
            payment.paid_at = now
            payment.failure_reason = None
            payment.updated_at = now

            contract, created = await ensure_contract(
                session,
                auction=auction,
                winning_bid=winning_bid,
                buyer_user_id=payment.user_id,
                now=now,
            )
            previous_contract_status = str(contract.status)
            contract.status = ContractStatus.SIGNED
            contract.signed_at = now
            contract.updated_at = now

            await log_audit_action(
                session,
                auction_id=auction.id,
                action=AuditAction.CONTRACT_SIGNED,
                performed_by=actor_id,
                previous_status=previous_contract_status,
                new_status=str(ContractStatus.SIGNED),
                reason="Winner payment verified",
                payload={
                    "payment_id": str(payment.id),
                    "transaction_id": transaction_id,
                    "contract_id": str(contract.id),
                    "contract_created": created,
                    "winning_bid_id": str(winning_bid.id),
                    "amount": str(payment.amount),
                    "gateway_amount": str(verification.amount) if verification.amount is not None else None,
                },
                now=now,
            )

            buyer = await require_user(session, payment.user_id)
            seller = await get_user_by_id(session, auction.owner_user_id)
            admins = await list_users_by_roles(session, PAYMENT_NOTICE_ROLES)
            document = build_contract_document(contract, auction=auction, buyer=buyer)

            data = {
                **auction_notification_data(auction),
                "amount": str(payment.amount),
                "contract_id": str(contract.id),
                "contract_status": str(contract.status),
            }
            notifications.append(
                (NotificationKind.WINNER_PAYMENT_CONFIRMED, Notification(NotificationRecipient.from_user(buyer), data))
            )
            if seller is not None:
                notifications.append(
                    (
                        NotificationKind.SELLER_PAYMENT_CONFIRMED,
                        Notification(NotificationRecipient.from_user(seller), data),
                    )
                )
            for admin in admins:
                if seller is not None and admin.id == seller.id:
                    continue
                notifications.append(
                    (NotificationKind.ADMIN_PAYMENT_CONFIRMED, Notification(NotificationRecipient.from_user(admin), data))
                )

            outcome = PaymentVerificationOutcome(
                payment_id=payment.id,
                transaction_id=transaction_id,
                payment_status=PaymentStatus.COMPLETED,
                already_processed=False,
                contract_id=contract.id,
                contract_status=ContractStatus.SIGNED,
                document=document,
            )

    logger.info("Winner payment %s verified, contract %s signed", transaction_id, outcome.contract_id)
    notifier = notifier or get_notifier()
    for kind, notification in notifications:
        await notify_safely(notifier, kind, notification)
    await publish_safely(
        broadcaster or get_broadcaster(),
        BroadcastEvent(
            auction_id=auction_id,
            event=EVENT_CONTRACT_SIGNED,
            data={"contract_id": str(outcome.contract_id)},
        ),
    )
    return outcome


def _next_candidate(
    bids: list[Bid],
    participants: dict[uuid.UUID, Participant],
    *,
    excluded_participant_id: uuid.UUID,
) -> Bid | None:
    for bid in bids:
        if bid.participant_id == excluded_participant_id:
            continue
        participant = participants.get(bid.participant_id)
        if participant is None or participant.is_disqualified:
            continue
        return bid
    return None


async def run_forfeiture_cascade(
    session: AsyncSession,
    *,
    auction: Auction,
    bid: Bid,
    performed_by: uuid.UUID | None,
    reason: str,
    offer_to_next: bool = True,
    mark_withdrawn: bool = False,
    now: datetime,
) -> ForfeitureOutcome:
    """Take the winning bid away from a defaulting winner.

    Must run inside the caller's transaction with the auction row locked.
    A bid that is no longer winning is left untouched, so repeated runs are
    harmless.
    """
    if not bid.is_winning_bid:
        return ForfeitureOutcome(applied=False, auction_status=AuctionStatus(auction.status), defaulted_bid_id=bid.id)

    previous_status = str(auction.status)
    defaulter = await get_participant_by_id(session, bid.participant_id, for_update=True)
    if defaulter is None:
        raise NotFoundError("Winning participant not found")

    bid.is_winning_bid = False
    if mark_withdrawn:
        bid.is_withdrawn = True
        bid.withdrawn_at = now
    await session.flush()

    forfeited_deposit = Decimal(defaulter.deposit_amount or 0) if defaulter.deposit_paid_at else Decimal("0")
    defaulter.is_disqualified = True
    defaulter.disqualified_at = now
    defaulter.disqualified_reason = DisqualificationReason.PAYMENT_DEFAULT
    defaulter.refund_status = RefundStatus.FORFEITED
    defaulter.refund_note = reason
    defaulter.updated_at = now

    promoted: Bid | None = None
    if offer_to_next:
        bids = await list_valid_bids(session, auction.id)
        participants = {participant.id: participant for participant in await list_participants(session, auction.id)}
        promoted = _next_candidate(bids, participants, excluded_participant_id=defaulter.id)

    promoted_participant: Participant | None = None
    if promoted is not None:
        promoted.promoted_at = now
        await assign_winning_bid(session, auction_id=auction.id, bid=promoted)
        promoted_participant = await get_participant_by_id(session, promoted.participant_id)
    else:
        auction.status = AuctionStatus.FAILED
        await cancel_contracts(session, auction.id, reason=reason, now=now)
    auction.updated_at = now

    await log_audit_action(
        session,
        auction_id=auction.id,
        action=AuditAction.PAYMENT_DEFAULT,
        performed_by=performed_by,
        previous_status=previous_status,
        new_status=str(auction.status),
        reason=reason,
        payload={
            "defaulted_bid_id": str(bid.id),
            "defaulted_participant_id": str(defaulter.id),
            "forfeited_deposit": str(forfeited_deposit),
            "promoted_bid_id": str(promoted.id) if promoted is not None else None,
            "offer_to_next": offer_to_next,
        },
        now=now,
    )

    outcome = ForfeitureOutcome(
        applied=True,
        auction_status=AuctionStatus(auction.status),
        defaulted_bid_id=bid.id,
        defaulted_user_id=defaulter.user_id,
        promoted_bid_id=promoted.id if promoted is not None else None,
        promoted_user_id=promoted_participant.user_id if promoted_participant is not None else None,
    )

    users = await list_users_by_ids(
        session,
        [user_id for user_id in (outcome.defaulted_user_id, outcome.promoted_user_id) if user_id is not None],
    )
    defaulter_user = users.get(defaulter.user_id)
    if defaulter_user is not None:
        outcome.notifications.append(
            (
                NotificationKind.PARTICIPANT_DISQUALIFIED,
                Notification(
                    NotificationRecipient.from_user(defaulter_user),
                    {
                        **auction_notification_data(auction),
                        "reason": reason,
                        "disqualified_reason": str(DisqualificationReason.PAYMENT_DEFAULT),
                        "forfeited_deposit": str(forfeited_deposit),
                    },
                ),
            )
        )
    if promoted is not None and promoted_participant is not None:
        promoted_user = users.get(promoted_participant.user_id)
        if promoted_user is not None:
            requirements = compute_payment_requirements(auction, promoted, promoted_participant)
            outcome.notifications.append(
                (NotificationKind.SECOND_BIDDER_OFFER, payment_request_notification(auction, requirements, promoted_user))
            )

    logger.warning(
        "Winner of auction %s defaulted (bid %s); promoted bid %s, auction status %s",
        auction.id,
        bid.id,
        outcome.promoted_bid_id,
        outcome.auction_status,
    )
    return outcome


async def _dispatch_forfeiture(
    outcome: ForfeitureOutcome,
    *,
    auction_id: uuid.UUID,
    notifier: Notifier | None,
    broadcaster: Broadcaster | None,
) -> None:
    if not outcome.applied:
        return
    notifier = notifier or get_notifier()
    for kind, notification in outcome.notifications:
        await notify_safely(notifier, kind, notification)
    await publish_safely(
        broadcaster or get_broadcaster(),
        BroadcastEvent(
            auction_id=auction_id,
            event=EVENT_WINNER_CHANGED,
            data={
                "defaulted_bid_id": str(outcome.defaulted_bid_id),
                "winning_bid_id": str(outcome.promoted_bid_id) if outcome.promoted_bid_id else None,
                "status": str(outcome.auction_status),
            },
        ),
    )


async def _payer_winning_bid(session: AsyncSession, *, auction_id: uuid.UUID, payer_id: uuid.UUID) -> Bid | None:
    winning_bid = await get_winning_bid(session, auction_id, for_update=True)
    if winning_bid is None:
        return None
    participant = await get_participant_by_id(session, winning_bid.participant_id)
    if participant is None or participant.user_id != payer_id:
        return None
    return winning_bid


async def handle_payment_failure(
    auction_id: uuid.UUID,
    *,
    payment_id: uuid.UUID,
    failure_status: str,
    notifier: Notifier | None = None,
    broadcaster: Broadcaster | None = None,
    now: datetime | None = None,
) -> PaymentFailureOutcome:
    now = now or utc_now()
    failure_reason = failure_reason_for(failure_status)
    retry_notification: Notification | None = None
    forfeiture: ForfeitureOutcome | None = None

    async with SessionFactory() as session:
        async with session.begin():
            auction = await require_auction(session, auction_id, for_update=True)
            payment = await session.scalar(
                select(Payment).where(Payment.id == payment_id, Payment.auction_id == auction_id).with_for_update()
            )
            if payment is None:
                raise NotFoundError(f"Payment {payment_id} not found")
            if payment.status == PaymentStatus.COMPLETED:
                raise InvalidStateError("Payment is already completed")

            payment.status = PaymentStatus.FAILED
            payment.failure_reason = failure_reason
            payment.updated_at = now

            winning_bid = await _payer_winning_bid(session, auction_id=auction.id, payer_id=payment.user_id)
            deadline = (
                payment_deadline_for(auction, winning_bid)
                if winning_bid is not None
                else ensure_utc(auction.auction_end_at)
                + timedelta(days=max(settings.winner_payment_deadline_days, 0))
            )

            if ensure_utc(now) <= deadline:
                payer = await get_user_by_id(session, payment.user_id)
                if payer is not None:
                    retry_notification = Notification(
                        NotificationRecipient.from_user(payer),
                        {
                            **auction_notification_data(auction),
                            "failure_reason": failure_reason,
                            "payment_deadline": deadline.isoformat(),
                        },
                    )
            elif winning_bid is not None:
                forfeiture = await run_forfeiture_cascade(
                    session,
                    auction=auction,
                    bid=winning_bid,
                    performed_by=None,
                    reason=f"Winner payment not completed before deadline: {failure_reason}",
                    now=now,
                )

    if retry_notification is not None:
        await notify_safely(notifier or get_notifier(), NotificationKind.WINNER_PAYMENT_FAILED, retry_notification)
        return PaymentFailureOutcome(
            payment_id=payment_id,
            payment_status=PaymentStatus.FAILED,
            failure_reason=failure_reason,
            forfeited=False,
        )

    if forfeiture is not None:
        await _dispatch_forfeiture(forfeiture, auction_id=auction_id, notifier=notifier, broadcaster=broadcaster)
    return PaymentFailureOutcome(
        payment_id=payment_id,
        payment_status=PaymentStatus.FAILED,
        failure_reason=failure_reason,
        forfeited=True,
        forfeiture=forfeiture,
    )


async def handle_winner_payment_default(
    auction_id: uuid.UUID,
    *,
    admin_id: uuid.UUID,
    offer_to_second_bidder: bool = False,
    reason: str | None = None,
    notifier: Notifier | None = None,
    broadcaster: Broadcaster | None = None,
    now: datetime | None = None,
) -> ForfeitureOutcome:
    now = now or utc_now()
    async with SessionFactory() as session:
        async with session.begin():
            auction = await require_auction(session, auction_id, for_update=True)
            await require_elevated(session, actor_id=admin_id)
            if auction.status != AuctionStatus.SUCCESS:
                raise InvalidStateError(f"Auction is not successful (status: {auction.status})")

            winning_bid = await get_winning_bid(session, auction.id, for_update=True)
            if winning_bid is None:
                raise NotFoundError("Auction has no winning bid")

            outcome = await run_forfeiture_cascade(
                session,
                auction=auction,
                bid=winning_bid,
                performed_by=admin_id,
                reason=(reason or "").strip() or "Winner failed to pay",
                offer_to_next=offer_to_second_bidder,
                mark_withdrawn=True,
                now=now,
            )

    await _dispatch_forfeiture(outcome, auction_id=auction_id, notifier=notifier, broadcaster=broadcaster)
    return outcome
