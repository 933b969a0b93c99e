from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from decimal import Decimal

from settlement.db.enums import AuctionStatus, PaymentStatus, PaymentType, UserRole
from settlement.db.models import Auction, Bid, Participant, Payment, User
from settlement.services import (
    auto_refund_service,
    finalization_service,
    refund_service,
    results_service,
    settlement_watcher,
    winner_payment_service,
)
from settlement.services.broadcast_service import BroadcastEvent, Broadcaster
from settlement.services.notifier import Notification, NotificationKind, Notifier
from settlement.services.payment_gateway import (
    PaymentBreakdown,
    PaymentGateway,
    PaymentHandle,
    PaymentPayer,
    PaymentVerification,
    RefundReceipt,
)

# Tuesday
NOW = datetime(2026, 3, 10, 12, 0, tzinfo=UTC)

SESSION_MODULES = (
    auto_refund_service,
    finalization_service,
    refund_service,
    results_service,
    settlement_watcher,
    winner_payment_service,
)


class RecordingNotifier(Notifier):
    def __init__(self, *, fail: bool = False) -> None:
        self.sent: list[tuple[NotificationKind, Notification]] = []
        self.fail = fail

    async def send(self, kind: NotificationKind, notification: Notification) -> None:
        self.sent.append((kind, notification))
        if self.fail:
            raise RuntimeError("notifier is down")

    def kinds(self) -> list[NotificationKind]:
        return [kind for kind, _ in self.sent]

    def recipients(self, kind: NotificationKind) -> list[uuid.UUID | None]:
        return [notification.recipient.user_id for sent_kind, notification in self.sent if sent_kind == kind]


class RecordingBroadcaster(Broadcaster):
    def __init__(self, *, fail: bool = False) -> None:
        self.events: list[BroadcastEvent] = []
        self.fail = fail

    async def publish(self, event: BroadcastEvent) -> None:
        self.events.append(event)
        if self.fail:
            raise RuntimeError("redis is down")


class FakeGateway(PaymentGateway):
    def __init__(self, *, status: str = "paid", amount: Decimal | None = None) -> None:
        self.status = status
        self.amount = amount
        self.created: list[PaymentBreakdown] = []
        self.verified: list[str] = []
        self.refunds: list[tuple[str, Decimal, str]] = []

    async def create_payment(self, *, payer: PaymentPayer, breakdown: PaymentBreakdown) -> PaymentHandle:
        self.created.append(breakdown)
        transaction_id = f"txn-{len(self.created)}"
        return PaymentHandle(
            transaction_id=transaction_id,
            payment_url=f"https://pay.example.test/{transaction_id}",
            status="pending",
        )

    async def verify_payment(self, transaction_id: str) -> PaymentVerification:
        self.verified.append(transaction_id)
        return PaymentVerification(transaction_id=transaction_id, status=self.status, amount=self.amount)

    async def refund(self, *, payment_ref: str, amount: Decimal, reason: str) -> RefundReceipt:
        self.refunds.append((payment_ref, amount, reason))
        return RefundReceipt(refund_id=f"refund-{len(self.refunds)}", status="succeeded")


@dataclass(slots=True)
class SeededAuction:
    auction_id: uuid.UUID
    owner_id: uuid.UUID
    admin_id: uuid.UUID
    outsider_id: uuid.UUID
    user_ids: list[uuid.UUID] = field(default_factory=list)
    participant_ids: list[uuid.UUID] = field(default_factory=list)
    bid_ids: list[uuid.UUID] = field(default_factory=list)


def _user(name: str, role: UserRole = UserRole.BIDDER) -> User:
    return User(
        id=uuid.uuid4(),
        email=f"{name.lower().replace(' ', '.')}-{uuid.uuid4().hex[:6]}@example.test",
        full_name=name,
        role=role,
    )


async def seed_auction(
    factory,
    *,
    bids: list[tuple[int, Decimal | int]] = (),
    participant_count: int = 2,
    starting_price: Decimal | int = Decimal("1000"),
    bid_increment: Decimal | int = Decimal("100"),
    reserve_price: Decimal | int | None = None,
    deposit_amount: Decimal | int = Decimal("200"),
    commission_rate: Decimal = Decimal("0.05"),
    auction_costs: Decimal = Decimal("0"),
    status: AuctionStatus = AuctionStatus.LIVE,
    auction_start_at: datetime | None = None,
    auction_end_at: datetime | None = None,
    sale_end_at: datetime | None = None,
    finalized_at: datetime | None = None,
    checked_in: bool = True,
) -> SeededAuction:
    """Create an auction with confirmed, checked-in participants and their bids.

    ``bids`` lists ``(participant_index, amount)`` pairs in the order they
    were placed.
    """
    end_at = auction_end_at or NOW - timedelta(hours=1)
    start_at = auction_start_at or end_at - timedelta(days=1)
    owner = _user("Owner Seller")
    admin = _user("Ada Admin", UserRole.ADMIN)
    outsider = _user("Otto Outsider")
    bidders = [_user(f"Bidder {index + 1}") for index in range(participant_count)]

    auction = Auction(
        id=uuid.uuid4(),
        code=f"A-{uuid.uuid4().hex[:8]}",
        name="Land lot 42",
        sale_start_at=start_at - timedelta(days=20),
        sale_end_at=sale_end_at or start_at - timedelta(days=5),
        deposit_start_at=start_at - timedelta(days=20),
        deposit_end_at=start_at - timedelta(days=3),
        auction_start_at=start_at,
        auction_end_at=end_at,
        starting_price=Decimal(starting_price),
        bid_increment=Decimal(bid_increment),
        reserve_price=Decimal(reserve_price) if reserve_price is not None else None,
        deposit_amount_required=Decimal(deposit_amount),
        dossier_fee=Decimal("50"),
        commission_rate=commission_rate,
        auction_costs=auction_costs,
        status=status,
        finalized_at=finalized_at,
        owner_user_id=owner.id,
        owner_full_name=owner.full_name,
        owner_email=owner.email,
    )

    seeded = SeededAuction(auction_id=auction.id, owner_id=owner.id, admin_id=admin.id, outsider_id=outsider.id)
    async with factory() as session:
        async with session.begin():
            session.add_all([owner, admin, outsider, *bidders, auction])
            await session.flush()

            participants = []
            for index, bidder in enumerate(bidders):
                deposit = Payment(
                    auction_id=auction.id,
                    user_id=bidder.id,
                    payment_type=PaymentType.DEPOSIT,
                    amount=Decimal(deposit_amount),
                    status=PaymentStatus.COMPLETED,
                    transaction_id=f"dep-{auction.code}-{index}",
                    paid_at=start_at - timedelta(days=4),
                )
                session.add(deposit)
                await session.flush()
                participant = Participant(
                    auction_id=auction.id,
                    user_id=bidder.id,
                    registered_at=start_at - timedelta(days=10, minutes=-index),
                    submitted_at=start_at - timedelta(days=9),
                    documents_verified_at=start_at - timedelta(days=8),
                    deposit_paid_at=start_at - timedelta(days=4),
                    confirmed_at=start_at - timedelta(days=2),
                    checked_in_at=start_at if checked_in else None,
                    deposit_amount=Decimal(deposit_amount),
                    deposit_payment_id=deposit.id,
                )
                session.add(participant)
                participants.append(participant)
            await session.flush()

            for position, (participant_index, amount) in enumerate(bids):
                bid = Bid(
                    auction_id=auction.id,
                    participant_id=participants[participant_index].id,
                    amount=Decimal(amount),
                    bid_at=start_at + timedelta(minutes=position + 1),
                )
                session.add(bid)
                await session.flush()
                seeded.bid_ids.append(bid.id)

            seeded.user_ids = [bidder.id for bidder in bidders]
            seeded.participant_ids = [participant.id for participant in participants]
    return seeded


async def finalize_seeded(seeded: SeededAuction, *, notifier=None, broadcaster=None, **kwargs):
    return await finalization_service.finalize(
        seeded.auction_id,
        actor_id=seeded.owner_id,
        notifier=notifier or RecordingNotifier(),
        broadcaster=broadcaster or RecordingBroadcaster(),
        now=NOW,
        **kwargs,
    )
