from __future__ import annotations

import uuid
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select, update

from settlement.db.enums import AuctionStatus, AuditAction, ContractStatus
from settlement.db.models import Auction, Bid, Contract, Participant
from settlement.errors import ForbiddenError, InvalidStateError, NotFoundError, ValidationError
from settlement.services import evaluation_service, finalization_service, results_service
from settlement.services.broadcast_service import EVENT_AUCTION_FINALIZED
from settlement.services.notifier import NotificationKind
from tests.support import NOW, RecordingBroadcaster, RecordingNotifier, finalize_seeded, seed_auction

pytest.importorskip("aiosqlite")


async def _seed_a1(factory):
    return await seed_auction(
        factory,
        bids=[(2, 1_000_000_000), (1, 1_050_000_000), (0, 1_100_000_000)],
        participant_count=3,
        starting_price=900_000_000,
        bid_increment=50_000_000,
        reserve_price=1_000_000_000,
        deposit_amount=100_000_000,
    )


async def _winning_bids(factory, auction_id: uuid.UUID) -> list[Bid]:
    async with factory() as session:
        rows = await session.execute(select(Bid).where(Bid.auction_id == auction_id, Bid.is_winning_bid.is_(True)))
        return list(rows.scalars().all())


async def _contracts(factory, auction_id: uuid.UUID) -> list[Contract]:
    async with factory() as session:
        rows = await session.execute(select(Contract).where(Contract.auction_id == auction_id))
        return list(rows.scalars().all())


async def _auction(factory, auction_id: uuid.UUID) -> Auction:
    async with factory() as session:
        return await session.get(Auction, auction_id)


@pytest.mark.asyncio
async def test_finalize_reference_auction_creates_single_draft_contract(session_factory, notifier, broadcaster) -> None:
    seeded = await _seed_a1(session_factory)

    result = await finalize_seeded(seeded, notifier=notifier, broadcaster=broadcaster)

    assert result.status == AuctionStatus.SUCCESS
    assert result.winning_amount == Decimal("1100000000")
    assert result.winner_user_id == seeded.user_ids[0]
    assert result.contract_created is True
    assert result.evaluation is not None and result.evaluation.issues == []

    winners = await _winning_bids(session_factory, seeded.auction_id)
    assert [bid.id for bid in winners] == [seeded.bid_ids[2]]

    contracts = await _contracts(session_factory, seeded.auction_id)
    assert len(contracts) == 1
    assert contracts[0].status == ContractStatus.DRAFT
    assert contracts[0].price == Decimal("1100000000")
    assert contracts[0].buyer_user_id == seeded.user_ids[0]

    auction = await _auction(session_factory, seeded.auction_id)
    assert auction.status == AuctionStatus.SUCCESS
    assert auction.finalized_at == NOW

    assert notifier.kinds().count(NotificationKind.AUCTION_RESULT) == 3
    assert notifier.recipients(NotificationKind.WINNER_PAYMENT_REQUEST) == [seeded.user_ids[0]]
    assert [event.event for event in broadcaster.events] == [EVENT_AUCTION_FINALIZED]

    logs = await finalization_service.get_audit_logs(seeded.auction_id, actor_id=seeded.owner_id)
    assert [entry.action for entry in logs] == [AuditAction.AUCTION_FINALIZED]
    assert logs[0].payload["evaluation"]["recommended_status"] == "success"


@pytest.mark.asyncio
async def test_finalize_twice_is_rejected_and_keeps_one_contract(session_factory) -> None:
    seeded = await _seed_a1(session_factory)
    await finalize_seeded(seeded)

    with pytest.raises(InvalidStateError):
        await finalize_seeded(seeded)

    assert len(await _contracts(session_factory, seeded.auction_id)) == 1
    assert len(await _winning_bids(session_factory, seeded.auction_id)) == 1


@pytest.mark.asyncio
async def test_finalize_requires_owner_or_elevated_role(session_factory) -> None:
    seeded = await _seed_a1(session_factory)

    with pytest.raises(ForbiddenError):
        await finalization_service.finalize(
            seeded.auction_id,
            actor_id=seeded.outsider_id,
            notifier=RecordingNotifier(),
            broadcaster=RecordingBroadcaster(),
            now=NOW,
        )

    auction = await _auction(session_factory, seeded.auction_id)
    assert auction.status == AuctionStatus.LIVE
    assert auction.finalized_at is None


@pytest.mark.asyncio
async def test_finalize_before_end_is_rejected(session_factory) -> None:
    seeded = await seed_auction(session_factory, bids=[(0, 1200)], auction_end_at=NOW.replace(hour=18))

    with pytest.raises(InvalidStateError):
        await finalize_seeded(seeded)


@pytest.mark.asyncio
async def test_finalize_below_reserve_fails_without_contract(session_factory, notifier) -> None:
    seeded = await seed_auction(session_factory, bids=[(0, 1100), (1, 1200)], reserve_price=5000)

    result = await finalize_seeded(seeded, notifier=notifier)

    assert result.status == AuctionStatus.FAILED
    assert result.winning_bid_id is None
    assert await _contracts(session_factory, seeded.auction_id) == []
    assert await _winning_bids(session_factory, seeded.auction_id) == []
    assert NotificationKind.WINNER_PAYMENT_REQUEST not in notifier.kinds()


@pytest.mark.asyncio
async def test_explicit_winning_bid_overrides_recommendation(session_factory) -> None:
    seeded = await seed_auction(session_factory, bids=[(0, 1100), (1, 1200)])

    result = await finalize_seeded(seeded, winning_bid_id=seeded.bid_ids[0], notes="Higher bidder withdrew documents")

    assert result.status == AuctionStatus.SUCCESS
    assert result.winning_bid_id == seeded.bid_ids[0]
    assert result.winner_user_id == seeded.user_ids[0]


@pytest.mark.asyncio
async def test_unknown_explicit_winning_bid_is_not_found(session_factory) -> None:
    seeded = await seed_auction(session_factory, bids=[(0, 1100)])

    with pytest.raises(NotFoundError):
        await finalize_seeded(seeded, winning_bid_id=uuid.uuid4())

    assert (await _auction(session_factory, seeded.auction_id)).status == AuctionStatus.LIVE


@pytest.mark.asyncio
async def test_notification_and_broadcast_failures_do_not_abort_finalize(session_factory) -> None:
    seeded = await _seed_a1(session_factory)
    notifier = RecordingNotifier(fail=True)
    broadcaster = RecordingBroadcaster(fail=True)

    result = await finalize_seeded(seeded, notifier=notifier, broadcaster=broadcaster)

    assert result.status == AuctionStatus.SUCCESS
    assert len(notifier.sent) == 4
    assert len(broadcaster.events) == 1
    assert (await _auction(session_factory, seeded.auction_id)).status == AuctionStatus.SUCCESS


@pytest.mark.asyncio
async def test_override_requires_reason(session_factory) -> None:
    seeded = await _seed_a1(session_factory)

    with pytest.raises(ValidationError):
        await finalization_service.override_status(
            seeded.auction_id,
            actor_id=seeded.admin_id,
            new_status=AuctionStatus.CANCELLED,
            reason="   ",
        )


@pytest.mark.asyncio
async def test_override_rejects_non_terminal_status(session_factory) -> None:
    seeded = await _seed_a1(session_factory)

    with pytest.raises(ValidationError):
        await finalization_service.override_status(
            seeded.auction_id,
            actor_id=seeded.admin_id,
            new_status=AuctionStatus.LIVE,
            reason="Reopen",
        )


@pytest.mark.asyncio
async def test_override_to_cancelled_then_success_reuses_contract(session_factory, notifier, broadcaster) -> None:
    seeded = await _seed_a1(session_factory)
    first = await finalize_seeded(seeded)

    cancelled = await finalization_service.override_status(
        seeded.auction_id,
        actor_id=seeded.admin_id,
        new_status=AuctionStatus.CANCELLED,
        reason="Court order",
        notifier=notifier,
        broadcaster=broadcaster,
        now=NOW,
    )
    assert cancelled.status == AuctionStatus.CANCELLED
    assert cancelled.overridden is True
    assert await _winning_bids(session_factory, seeded.auction_id) == []
    contracts = await _contracts(session_factory, seeded.auction_id)
    assert [contract.status for contract in contracts] == [ContractStatus.CANCELLED]
    assert notifier.sent == []

    restored = await finalization_service.override_status(
        seeded.auction_id,
        actor_id=seeded.admin_id,
        new_status=AuctionStatus.SUCCESS,
        reason="Court order lifted",
        winning_bid_id=seeded.bid_ids[1],
        notifier=notifier,
        broadcaster=broadcaster,
        now=NOW,
    )
    assert restored.winning_bid_id == seeded.bid_ids[1]
    assert restored.contract_id == first.contract_id
    assert restored.contract_created is False

    contracts = await _contracts(session_factory, seeded.auction_id)
    assert len(contracts) == 1
    assert contracts[0].status == ContractStatus.DRAFT
    assert contracts[0].price == Decimal("1050000000")
    assert contracts[0].buyer_user_id == seeded.user_ids[1]
    assert [bid.id for bid in await _winning_bids(session_factory, seeded.auction_id)] == [seeded.bid_ids[1]]

    logs = await finalization_service.get_audit_logs(seeded.auction_id, actor_id=seeded.admin_id)
    assert [entry.action for entry in logs] == [
        AuditAction.STATUS_OVERRIDE,
        AuditAction.STATUS_OVERRIDE,
        AuditAction.AUCTION_FINALIZED,
    ]
    assert logs[0].reason == "Court order lifted"


@pytest.mark.asyncio
async def test_override_to_success_without_bids_is_invalid(session_factory) -> None:
    seeded = await seed_auction(session_factory, bids=[])

    with pytest.raises(InvalidStateError):
        await finalization_service.override_status(
            seeded.auction_id,
            actor_id=seeded.admin_id,
            new_status=AuctionStatus.SUCCESS,
            reason="Manual close",
        )


@pytest.mark.asyncio
async def test_management_detail_is_elevated_only(session_factory) -> None:
    seeded = await _seed_a1(session_factory)
    await finalize_seeded(seeded)

    with pytest.raises(ForbiddenError):
        await finalization_service.get_management_detail(seeded.auction_id, actor_id=seeded.owner_id)

    detail = await finalization_service.get_management_detail(seeded.auction_id, actor_id=seeded.admin_id, now=NOW)

    assert detail.winning_bid_id == seeded.bid_ids[2]
    assert detail.contract_status == ContractStatus.DRAFT
    assert [view.amount for view in detail.bids] == [
        Decimal("1100000000"),
        Decimal("1050000000"),
        Decimal("1000000000"),
    ]
    assert detail.summary["total_participants"] == 3
    assert detail.summary["checked_in_participants"] == 3
    assert {summary.total_bids for summary in detail.participants} == {1}


@pytest.mark.asyncio
async def test_audit_logs_are_forbidden_for_outsiders(session_factory) -> None:
    seeded = await _seed_a1(session_factory)

    with pytest.raises(ForbiddenError):
        await finalization_service.get_audit_logs(seeded.auction_id, actor_id=seeded.outsider_id)


@pytest.mark.asyncio
async def test_at_most_one_winning_bid_after_every_operation(session_factory) -> None:
    seeded = await _seed_a1(session_factory)
    await finalize_seeded(seeded)
    for bid_id in (seeded.bid_ids[0], seeded.bid_ids[1], seeded.bid_ids[2]):
        await finalization_service.override_status(
            seeded.auction_id,
            actor_id=seeded.admin_id,
            new_status=AuctionStatus.SUCCESS,
            reason="Re-assign winner",
            winning_bid_id=bid_id,
            notifier=RecordingNotifier(),
            broadcaster=RecordingBroadcaster(),
            now=NOW,
        )
        async with session_factory() as session:
            count = await session.scalar(
                select(func.count(Bid.id)).where(Bid.auction_id == seeded.auction_id, Bid.is_winning_bid.is_(True))
            )
        assert count == 1
    assert len(await _contracts(session_factory, seeded.auction_id)) == 1


async def _disqualify(factory, participant_id: uuid.UUID) -> None:
    async with factory() as session:
        async with session.begin():
            await session.execute(
                update(Participant)
                .where(Participant.id == participant_id)
                .values(is_disqualified=True, disqualified_at=NOW - timedelta(minutes=5))
            )


@pytest.mark.asyncio
async def test_disqualified_top_bidder_is_ignored_everywhere(session_factory, notifier) -> None:
    seeded = await seed_auction(
        session_factory,
        bids=[(2, 1000), (1, 1100), (0, 5000)],
        participant_count=3,
        reserve_price=3000,
    )
    await _disqualify(session_factory, seeded.participant_ids[0])

    async with session_factory() as session:
        preview = await evaluation_service.load_evaluation(session, seeded.auction_id, now=NOW)
    assert preview.recommended_status == AuctionStatus.FAILED
    assert preview.highest_bid_id == seeded.bid_ids[1]
    assert preview.total_valid_bids == 2

    detail = await finalization_service.get_management_detail(seeded.auction_id, actor_id=seeded.admin_id, now=NOW)
    assert detail.evaluation.recommended_status == AuctionStatus.FAILED
    assert detail.evaluation.highest_bid_amount == Decimal("1100")
    assert len(detail.bids) == 3

    result = await finalize_seeded(seeded, notifier=notifier)
    assert result.status == AuctionStatus.FAILED
    assert result.evaluation.recommended_status == preview.recommended_status
    assert seeded.user_ids[0] not in notifier.recipients(NotificationKind.AUCTION_RESULT)

    full = await results_service.get_results(seeded.auction_id, caller_id=seeded.admin_id, now=NOW)
    assert full.evaluation["recommended_status"] == "failed"
    assert Decimal(full.evaluation["highest_bid_amount"]) == Decimal("1100")

    overridden = await finalization_service.override_status(
        seeded.auction_id,
        actor_id=seeded.admin_id,
        new_status=AuctionStatus.SUCCESS,
        reason="Accept the best remaining offer",
        notifier=RecordingNotifier(),
        broadcaster=RecordingBroadcaster(),
        now=NOW,
    )
    assert overridden.winning_bid_id == seeded.bid_ids[1]


@pytest.mark.asyncio
async def test_result_notices_skip_withdrawn_participants(session_factory, notifier) -> None:
    seeded = await seed_auction(session_factory, bids=[(1, 1100), (0, 1200)], participant_count=3)
    async with session_factory() as session:
        async with session.begin():
            await session.execute(
                update(Participant)
                .where(Participant.id == seeded.participant_ids[2])
                .values(withdrawn_at=NOW - timedelta(days=1))
            )

    result = await finalize_seeded(seeded, notifier=notifier)

    assert result.status == AuctionStatus.SUCCESS
    assert sorted(notifier.recipients(NotificationKind.AUCTION_RESULT)) == sorted(seeded.user_ids[:2])
    assert seeded.user_ids[2] not in notifier.recipients(NotificationKind.AUCTION_RESULT)
    assert notifier.recipients(NotificationKind.WINNER_PAYMENT_REQUEST) == [seeded.user_ids[0]]
