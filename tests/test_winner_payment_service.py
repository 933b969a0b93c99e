from __future__ import annotations

import logging
import uuid
from datetime import timedelta
from decimal import Decimal
from types import SimpleNamespace

import pytest
from sqlalchemy import select

from settlement.db.enums import (
    AuctionStatus,
    AuditAction,
    ContractStatus,
    DisqualificationReason,
    PaymentStatus,
    PaymentType,
    RefundStatus,
)
from settlement.db.models import Auction, AuditLogEntry, Bid, Contract, Participant, Payment
from settlement.errors import ForbiddenError, GatewayError, InvalidStateError, PaymentForfeitedError
from settlement.services import winner_payment_service
from settlement.services.broadcast_service import EVENT_CONTRACT_SIGNED, EVENT_WINNER_CHANGED
from settlement.services.notifier import NotificationKind
from tests.support import NOW, FakeGateway, RecordingBroadcaster, RecordingNotifier, finalize_seeded, seed_auction

pytest.importorskip("aiosqlite")

LATE = NOW + timedelta(days=8)


async def _finalized(factory, *, bids=((2, 1000), (1, 1100), (0, 1200)), participant_count: int = 3):
    seeded = await seed_auction(factory, bids=list(bids), participant_count=participant_count)
    await finalize_seeded(seeded)
    return seeded


async def _load(factory, model, object_id):
    async with factory() as session:
        return await session.get(model, object_id)


async def _audit_actions(factory, auction_id: uuid.UUID) -> list[AuditAction]:
    async with factory() as session:
        rows = await session.execute(
            select(AuditLogEntry.action).where(AuditLogEntry.auction_id == auction_id).order_by(AuditLogEntry.id.asc())
        )
        return list(rows.scalars().all())


async def _initiate(seeded, gateway: FakeGateway):
    return await winner_payment_service.initiate_winner_payment(
        seeded.auction_id,
        winner_id=seeded.user_ids[0],
        gateway=gateway,
        now=NOW,
    )


def test_deadline_restarts_from_promotion() -> None:
    auction = SimpleNamespace(auction_end_at=NOW)
    original = SimpleNamespace(promoted_at=None)
    promoted = SimpleNamespace(promoted_at=NOW + timedelta(days=3))

    assert winner_payment_service.payment_deadline_for(auction, original, deadline_days=7) == NOW + timedelta(days=7)
    assert winner_payment_service.payment_deadline_for(auction, promoted, deadline_days=7) == NOW + timedelta(days=10)


def test_requirements_subtract_paid_deposit_only() -> None:
    auction = SimpleNamespace(id=uuid.uuid4(), auction_end_at=NOW)
    bid = SimpleNamespace(id=uuid.uuid4(), amount=Decimal("1200"), promoted_at=None)
    paid = SimpleNamespace(id=uuid.uuid4(), user_id=uuid.uuid4(), deposit_paid_at=NOW, deposit_amount=Decimal("200"))
    unpaid = SimpleNamespace(id=uuid.uuid4(), user_id=uuid.uuid4(), deposit_paid_at=None, deposit_amount=Decimal("200"))

    with_deposit = winner_payment_service.compute_payment_requirements(auction, bid, paid, deadline_days=7)
    without_deposit = winner_payment_service.compute_payment_requirements(auction, bid, unpaid, deadline_days=7)

    assert with_deposit.remaining_amount == Decimal("1000")
    assert with_deposit.dossier_fee_due == Decimal("0")
    assert with_deposit.total_due == Decimal("1000")
    assert without_deposit.total_due == Decimal("1200")
    assert with_deposit.is_overdue(NOW + timedelta(days=7, seconds=1)) is True
    assert with_deposit.is_overdue(NOW + timedelta(days=7)) is False


@pytest.mark.asyncio
async def test_payment_requirements_notify_the_winner(session_factory, notifier) -> None:
    seeded = await _finalized(session_factory)

    requirements = await winner_payment_service.get_payment_requirements(seeded.auction_id, notifier=notifier)

    assert requirements.winner_user_id == seeded.user_ids[0]
    assert requirements.winning_amount == Decimal("1200")
    assert requirements.deposit_paid == Decimal("200")
    assert requirements.total_due == Decimal("1000")
    assert notifier.recipients(NotificationKind.WINNER_PAYMENT_REQUEST) == [seeded.user_ids[0]]


@pytest.mark.asyncio
async def test_payment_requirements_need_successful_auction(session_factory) -> None:
    seeded = await seed_auction(session_factory, bids=[(0, 1200)])

    with pytest.raises(InvalidStateError):
        await winner_payment_service.get_payment_requirements(seeded.auction_id, notify=False)


@pytest.mark.asyncio
async def test_initiate_records_pending_payment(session_factory, gateway) -> None:
    seeded = await _finalized(session_factory)

    initiation = await _initiate(seeded, gateway)

    assert initiation.transaction_id == "txn-1"
    assert gateway.created[0].amount == Decimal("1000")
    payment = await _load(session_factory, Payment, initiation.payment_id)
    assert payment.status == PaymentStatus.PENDING
    assert payment.payment_type == PaymentType.WINNING_PAYMENT
    assert payment.user_id == seeded.user_ids[0]


@pytest.mark.asyncio
async def test_only_the_winner_can_initiate(session_factory, gateway) -> None:
    seeded = await _finalized(session_factory)

    with pytest.raises(ForbiddenError):
        await winner_payment_service.initiate_winner_payment(
            seeded.auction_id, winner_id=seeded.user_ids[1], gateway=gateway, now=NOW
        )
    assert gateway.created == []


@pytest.mark.asyncio
async def test_initiate_after_deadline_is_forfeited(session_factory, gateway) -> None:
    seeded = await _finalized(session_factory)

    with pytest.raises(PaymentForfeitedError):
        await winner_payment_service.initiate_winner_payment(
            seeded.auction_id, winner_id=seeded.user_ids[0], gateway=gateway, now=LATE
        )


@pytest.mark.asyncio
async def test_verify_signs_contract_once(session_factory, gateway, notifier, broadcaster) -> None:
    seeded = await _finalized(session_factory)
    initiation = await _initiate(seeded, gateway)

    first = await winner_payment_service.verify_winner_payment(
        initiation.transaction_id,
        auction_id=seeded.auction_id,
        actor_id=seeded.user_ids[0],
        gateway=gateway,
        notifier=notifier,
        broadcaster=broadcaster,
        now=NOW,
    )
    second = await winner_payment_service.verify_winner_payment(
        initiation.transaction_id,
        auction_id=seeded.auction_id,
        actor_id=seeded.user_ids[0],
        gateway=gateway,
        notifier=notifier,
        broadcaster=broadcaster,
        now=NOW,
    )

    assert first.already_processed is False
    assert second.already_processed is True
    assert first.contract_id == second.contract_id
    assert second.contract_status == ContractStatus.SIGNED
    assert first.document is not None and first.document.price == Decimal("1200")
    assert gateway.verified == [initiation.transaction_id]

    async with session_factory() as session:
        contracts = (await session.execute(select(Contract).where(Contract.auction_id == seeded.auction_id))).scalars().all()
    assert len(contracts) == 1
    assert contracts[0].signed_at == NOW

    payment = await _load(session_factory, Payment, initiation.payment_id)
    assert payment.status == PaymentStatus.COMPLETED
    assert (await _audit_actions(session_factory, seeded.auction_id)).count(AuditAction.CONTRACT_SIGNED) == 1

    assert notifier.recipients(NotificationKind.WINNER_PAYMENT_CONFIRMED) == [seeded.user_ids[0]]
    assert notifier.recipients(NotificationKind.SELLER_PAYMENT_CONFIRMED) == [seeded.owner_id]
    assert seeded.admin_id in notifier.recipients(NotificationKind.ADMIN_PAYMENT_CONFIRMED)
    assert [event.event for event in broadcaster.events] == [EVENT_CONTRACT_SIGNED]


@pytest.mark.asyncio
async def test_outsider_cannot_verify(session_factory, gateway) -> None:
    seeded = await _finalized(session_factory)
    initiation = await _initiate(seeded, gateway)

    with pytest.raises(ForbiddenError):
        await winner_payment_service.verify_winner_payment(
            initiation.transaction_id,
            auction_id=seeded.auction_id,
            actor_id=seeded.outsider_id,
            gateway=gateway,
            now=NOW,
        )
    assert gateway.verified == []


@pytest.mark.asyncio
async def test_unpaid_verification_within_deadline_is_retryable(session_factory, notifier, broadcaster) -> None:
    seeded = await _finalized(session_factory)
    gateway = FakeGateway(status="failed")
    initiation = await _initiate(seeded, gateway)

    with pytest.raises(GatewayError) as exc_info:
        await winner_payment_service.verify_winner_payment(
            initiation.transaction_id,
            auction_id=seeded.auction_id,
            actor_id=seeded.user_ids[0],
            gateway=gateway,
            notifier=notifier,
            broadcaster=broadcaster,
            now=NOW,
        )

    assert exc_info.value.retryable is True
    payment = await _load(session_factory, Payment, initiation.payment_id)
    assert payment.status == PaymentStatus.FAILED
    assert payment.failure_reason == "Payment failed"
    assert notifier.recipients(NotificationKind.WINNER_PAYMENT_FAILED) == [seeded.user_ids[0]]
    assert (await _load(session_factory, Bid, seeded.bid_ids[2])).is_winning_bid is True
    assert broadcaster.events == []


@pytest.mark.asyncio
async def test_unpaid_verification_after_deadline_promotes_second_bidder(session_factory, notifier, broadcaster) -> None:
    seeded = await _finalized(session_factory)
    gateway = FakeGateway(status="expired")
    initiation = await _initiate(seeded, gateway)

    with pytest.raises(PaymentForfeitedError):
        await winner_payment_service.verify_winner_payment(
            initiation.transaction_id,
            auction_id=seeded.auction_id,
            actor_id=seeded.user_ids[0],
            gateway=gateway,
            notifier=notifier,
            broadcaster=broadcaster,
            now=LATE,
        )

    defaulted = await _load(session_factory, Bid, seeded.bid_ids[2])
    promoted = await _load(session_factory, Bid, seeded.bid_ids[1])
    assert defaulted.is_winning_bid is False
    assert promoted.is_winning_bid is True
    assert promoted.promoted_at == LATE

    defaulter = await _load(session_factory, Participant, seeded.participant_ids[0])
    assert defaulter.is_disqualified is True
    assert defaulter.disqualified_reason == DisqualificationReason.PAYMENT_DEFAULT
    assert defaulter.refund_status == RefundStatus.FORFEITED

    assert (await _load(session_factory, Auction, seeded.auction_id)).status == AuctionStatus.SUCCESS
    assert notifier.recipients(NotificationKind.PARTICIPANT_DISQUALIFIED) == [seeded.user_ids[0]]
    assert notifier.recipients(NotificationKind.SECOND_BIDDER_OFFER) == [seeded.user_ids[1]]
    assert [event.event for event in broadcaster.events] == [EVENT_WINNER_CHANGED]
    assert (await _audit_actions(session_factory, seeded.auction_id))[-1] == AuditAction.PAYMENT_DEFAULT

    requirements = await winner_payment_service.get_payment_requirements(seeded.auction_id, notify=False)
    assert requirements.winner_user_id == seeded.user_ids[1]
    assert requirements.payment_deadline == LATE + timedelta(days=7)


@pytest.mark.asyncio
async def test_default_without_second_bidder_fails_auction(session_factory, notifier, broadcaster) -> None:
    seeded = await _finalized(session_factory, bids=((0, 1200),), participant_count=2)

    outcome = await winner_payment_service.handle_winner_payment_default(
        seeded.auction_id,
        admin_id=seeded.admin_id,
        offer_to_second_bidder=True,
        reason="Buyer refused to pay",
        notifier=notifier,
        broadcaster=broadcaster,
        now=LATE,
    )

    assert outcome.applied is True
    assert outcome.auction_status == AuctionStatus.FAILED
    assert outcome.promoted_bid_id is None
    assert (await _load(session_factory, Auction, seeded.auction_id)).status == AuctionStatus.FAILED

    async with session_factory() as session:
        contract = await session.scalar(select(Contract).where(Contract.auction_id == seeded.auction_id))
    assert contract.status == ContractStatus.CANCELLED
    assert contract.cancel_reason == "Buyer refused to pay"

    bid = await _load(session_factory, Bid, seeded.bid_ids[0])
    assert bid.is_winning_bid is False
    assert bid.is_withdrawn is True


@pytest.mark.asyncio
async def test_admin_default_without_offer_fails_even_with_second_bidder(session_factory) -> None:
    seeded = await _finalized(session_factory)

    outcome = await winner_payment_service.handle_winner_payment_default(
        seeded.auction_id,
        admin_id=seeded.admin_id,
        notifier=RecordingNotifier(),
        broadcaster=RecordingBroadcaster(),
        now=NOW,
    )

    assert outcome.auction_status == AuctionStatus.FAILED
    async with session_factory() as session:
        winners = (
            await session.execute(
                select(Bid).where(Bid.auction_id == seeded.auction_id, Bid.is_winning_bid.is_(True))
            )
        ).scalars().all()
    assert winners == []


@pytest.mark.asyncio
async def test_admin_default_requires_elevated_role(session_factory) -> None:
    seeded = await _finalized(session_factory)

    with pytest.raises(ForbiddenError):
        await winner_payment_service.handle_winner_payment_default(seeded.auction_id, admin_id=seeded.owner_id)

    assert (await _load(session_factory, Bid, seeded.bid_ids[2])).is_winning_bid is True


@pytest.mark.asyncio
async def test_forfeiture_rerun_is_a_no_op(session_factory, notifier, broadcaster) -> None:
    seeded = await _finalized(session_factory)
    initiation = await _initiate(seeded, FakeGateway())

    first = await winner_payment_service.handle_payment_failure(
        seeded.auction_id,
        payment_id=initiation.payment_id,
        failure_status="expired",
        notifier=notifier,
        broadcaster=broadcaster,
        now=LATE,
    )
    assert first.forfeiture is not None and first.forfeiture.applied is True
    sent_before = len(notifier.sent)

    second = await winner_payment_service.handle_payment_failure(
        seeded.auction_id,
        payment_id=initiation.payment_id,
        failure_status="expired",
        notifier=notifier,
        broadcaster=broadcaster,
        now=LATE + timedelta(hours=1),
    )
    assert second.forfeited is True
    assert second.forfeiture is None

    async with session_factory() as session:
        async with session.begin():
            auction = await session.get(Auction, seeded.auction_id)
            defaulted = await session.get(Bid, seeded.bid_ids[2])
            rerun = await winner_payment_service.run_forfeiture_cascade(
                session,
                auction=auction,
                bid=defaulted,
                performed_by=seeded.admin_id,
                reason="Repeated default",
                now=LATE + timedelta(hours=2),
            )
    assert rerun.applied is False
    assert rerun.promoted_bid_id is None
    assert rerun.auction_status == AuctionStatus.SUCCESS

    assert (await _audit_actions(session_factory, seeded.auction_id)).count(AuditAction.PAYMENT_DEFAULT) == 1
    assert (await _load(session_factory, Bid, seeded.bid_ids[1])).is_winning_bid is True
    assert (await _load(session_factory, Bid, seeded.bid_ids[1])).promoted_at == LATE
    assert len(notifier.sent) == sent_before
    assert [event.event for event in broadcaster.events] == [EVENT_WINNER_CHANGED]


@pytest.mark.asyncio
async def test_verify_warns_when_gateway_amount_differs(session_factory, caplog: pytest.LogCaptureFixture) -> None:
    seeded = await _finalized(session_factory)
    gateway = FakeGateway(amount=Decimal("999"))
    initiation = await _initiate(seeded, gateway)
    caplog.set_level(logging.WARNING)

    outcome = await winner_payment_service.verify_winner_payment(
        initiation.transaction_id,
        auction_id=seeded.auction_id,
        actor_id=seeded.user_ids[0],
        gateway=gateway,
        notifier=RecordingNotifier(),
        broadcaster=RecordingBroadcaster(),
        now=NOW,
    )

    assert outcome.contract_status == ContractStatus.SIGNED
    assert "Gateway reported amount 999" in caplog.text
    async with session_factory() as session:
        entry = await session.scalar(
            select(AuditLogEntry).where(
                AuditLogEntry.auction_id == seeded.auction_id,
                AuditLogEntry.action == AuditAction.CONTRACT_SIGNED,
            )
        )
    assert entry.payload["gateway_amount"] == "999"


@pytest.mark.asyncio
async def test_verify_is_quiet_when_gateway_amount_matches(
    session_factory, caplog: pytest.LogCaptureFixture
) -> None:
    seeded = await _finalized(session_factory)
    gateway = FakeGateway(amount=Decimal("1000"))
    initiation = await _initiate(seeded, gateway)
    caplog.set_level(logging.WARNING)

    await winner_payment_service.verify_winner_payment(
        initiation.transaction_id,
        auction_id=seeded.auction_id,
        actor_id=seeded.user_ids[0],
        gateway=gateway,
        notifier=RecordingNotifier(),
        broadcaster=RecordingBroadcaster(),
        now=NOW,
    )

    assert "Gateway reported amount" not in caplog.text
