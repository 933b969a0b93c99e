from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import StrEnum

from settlement.db.enums import AuctionStatus, ContractStatus
from settlement.db.models import Auction, Bid, Contract, Participant, User
from settlement.db.session import SessionFactory
from settlement.errors import ForbiddenError
from settlement.services.auction_service import (
    get_contract,
    get_user_by_id,
    list_eligible_bids,
    list_participants,
    list_users_by_ids,
    list_valid_bids,
    require_auction,
)
from settlement.services.evaluation_service import EvaluationPolicy, EvaluationResult, evaluate
from settlement.services.participant_state import is_confirmed_participant
from settlement.services.rbac_service import can_manage_auction

HIDDEN = "[HIDDEN]"
PUBLIC_STATUSES = frozenset({AuctionStatus.SUCCESS, AuctionStatus.FAILED})
ZERO = Decimal("0")
CENT = Decimal("0.01")


class AccessLevel(StrEnum):
    FULL = "full"
    PARTICIPANT = "participant"
    PUBLIC = "public"


@dataclass(slots=True)
class ResultsSnapshot:
    auction: Auction
    bids: list[Bid]
    participants: dict[uuid.UUID, Participant]
    users: dict[uuid.UUID, User]
    contract: Contract | None
    evaluation: EvaluationResult | None = None

    @property
    def winning_bid(self) -> Bid | None:
        return next((bid for bid in self.bids if bid.is_winning_bid), None)


@dataclass(slots=True)
class WinnerView:
    user_id: uuid.UUID | None
    full_name: str
    email: str | None


@dataclass(slots=True)
class WinningBidView:
    bid_id: uuid.UUID
    amount: Decimal
    bid_at: datetime
    winner: WinnerView


@dataclass(slots=True)
class ResultBidView:
    bid_id: uuid.UUID
    bidder_name: str
    amount: Decimal
    bid_at: datetime
    is_winning_bid: bool


@dataclass(slots=True)
class ContractSummary:
    contract_id: uuid.UUID
    status: ContractStatus
    price: Decimal
    created_at: datetime | None
    signed_at: datetime | None


@dataclass(slots=True)
class FinancialSummary:
    final_sale_price: Decimal = ZERO
    starting_price: Decimal = ZERO
    commission_fee: Decimal = ZERO
    dossier_fee: Decimal = ZERO
    deposit_amount: Decimal = ZERO
    total_auction_costs: Decimal = ZERO
    total_fees_to_seller: Decimal = ZERO
    net_amount_to_seller: Decimal = ZERO


@dataclass(slots=True)
class AuctionResults:
    auction_id: uuid.UUID
    auction_code: str
    auction_name: str
    status: AuctionStatus
    access_level: AccessLevel
    starting_price: Decimal
    auction_start_at: datetime
    auction_end_at: datetime
    finalized_at: datetime | None
    total_bids: int
    total_participants: int
    financial_summary: FinancialSummary
    winning_bid: WinningBidView | None = None
    bids: list[ResultBidView] = field(default_factory=list)
    contract: ContractSummary | None = None
    evaluation: dict | None = None


def resolve_access_level(auction: Auction, caller: User | None, *, is_participant: bool) -> AccessLevel:
    if can_manage_auction(caller, auction):
        return AccessLevel.FULL
    if caller is not None and is_participant:
        return AccessLevel.PARTICIPANT
    return AccessLevel.PUBLIC


def compute_financial_summary(auction: Auction, winning_bid: Bid | None) -> FinancialSummary:
    final_sale_price = Decimal(winning_bid.amount) if winning_bid is not None else ZERO
    commission_fee = (final_sale_price * Decimal(auction.commission_rate or 0)).quantize(CENT, rounding=ROUND_HALF_UP)
    auction_costs = Decimal(auction.auction_costs or 0)
    total_fees = commission_fee + auction_costs
    net_amount = final_sale_price - total_fees if winning_bid is not None else ZERO
    return FinancialSummary(
        final_sale_price=final_sale_price,
        starting_price=Decimal(auction.starting_price),
        commission_fee=commission_fee,
        dossier_fee=Decimal(auction.dossier_fee or 0),
        deposit_amount=Decimal(auction.deposit_amount_required or 0),
        total_auction_costs=auction_costs,
        total_fees_to_seller=total_fees,
        net_amount_to_seller=net_amount,
    )


def _bidder_name(snapshot: ResultsSnapshot, bid: Bid) -> str:
    participant = snapshot.participants.get(bid.participant_id)
    user = snapshot.users.get(participant.user_id) if participant is not None else None
    return user.full_name if user is not None else ""


def project_results(snapshot: ResultsSnapshot, level: AccessLevel) -> AuctionResults:
    """Redact the results snapshot for the given access level."""
    auction = snapshot.auction
    winning_bid = snapshot.winning_bid
    full_financials = compute_financial_summary(auction, winning_bid)

    if level == AccessLevel.FULL:
        financial = full_financials
    elif level == AccessLevel.PARTICIPANT:
        financial = FinancialSummary(
            deposit_amount=full_financials.deposit_amount,
            dossier_fee=full_financials.dossier_fee,
        )
    else:
        financial = FinancialSummary()

    winning_view: WinningBidView | None = None
    winner_participant_id = winning_bid.participant_id if winning_bid is not None else None
    if winning_bid is not None:
        if level == AccessLevel.FULL:
            participant = snapshot.participants.get(winning_bid.participant_id)
            user = snapshot.users.get(participant.user_id) if participant is not None else None
            winner = WinnerView(
                user_id=user.id if user is not None else None,
                full_name=user.full_name if user is not None else "",
                email=user.email if user is not None else None,
            )
        else:
            winner = WinnerView(user_id=None, full_name=HIDDEN, email=None)
        winning_view = WinningBidView(
            bid_id=winning_bid.id,
            amount=Decimal(winning_bid.amount),
            bid_at=winning_bid.bid_at,
            winner=winner,
        )

    bids: list[ResultBidView] = []
    if level != AccessLevel.PUBLIC:
        for bid in snapshot.bids:
            name = _bidder_name(snapshot, bid)
            if level == AccessLevel.PARTICIPANT and bid.participant_id == winner_participant_id:
                name = HIDDEN
            bids.append(
                ResultBidView(
                    bid_id=bid.id,
                    bidder_name=name,
                    amount=Decimal(bid.amount),
                    bid_at=bid.bid_at,
                    is_winning_bid=bid.is_winning_bid,
                )
            )

    contract_view: ContractSummary | None = None
    evaluation: dict | None = None
    if level == AccessLevel.FULL:
        if snapshot.contract is not None:
            contract_view = ContractSummary(
                contract_id=snapshot.contract.id,
                status=ContractStatus(snapshot.contract.status),
                price=Decimal(snapshot.contract.price),
                created_at=snapshot.contract.created_at,
                signed_at=snapshot.contract.signed_at,
            )
        if snapshot.evaluation is not None:
            evaluation = snapshot.evaluation.summary()

    return AuctionResults(
        auction_id=auction.id,
        auction_code=auction.code,
        auction_name=auction.name,
        status=AuctionStatus(auction.status),
        access_level=level,
        starting_price=Decimal(auction.starting_price),
        auction_start_at=auction.auction_start_at,
        auction_end_at=auction.auction_end_at,
        finalized_at=auction.finalized_at,
        total_bids=len(snapshot.bids),
        total_participants=len(snapshot.participants),
        financial_summary=financial,
        winning_bid=winning_view,
        bids=bids,
        contract=contract_view,
        evaluation=evaluation,
    )


async def get_results(
    auction_id: uuid.UUID,
    *,
    caller_id: uuid.UUID | None = None,
    policy: EvaluationPolicy | None = None,
    now: datetime | None = None,
) -> AuctionResults:
    async with SessionFactory() as session:
        auction = await require_auction(session, auction_id)
        caller = await get_user_by_id(session, caller_id) if caller_id is not None else None
        participants = await list_participants(session, auction.id)
        is_participant = caller is not None and any(p.user_id == caller.id for p in participants)

        level = resolve_access_level(auction, caller, is_participant=is_participant)
        if level == AccessLevel.PUBLIC and auction.status not in PUBLIC_STATUSES:
            raise ForbiddenError("Auction results are not yet available")

        bids = await list_valid_bids(session, auction.id)
        users = await list_users_by_ids(session, [participant.user_id for participant in participants])
        contract = await get_contract(session, auction.id) if level == AccessLevel.FULL else None
        eligible_bids = await list_eligible_bids(session, auction.id) if level == AccessLevel.FULL else []

    snapshot = ResultsSnapshot(
        auction=auction,
        bids=bids,
        participants={participant.id: participant for participant in participants},
        users=users,
        contract=contract,
    )
    if level == AccessLevel.FULL:
        confirmed = [participant for participant in participants if is_confirmed_participant(participant)]
        snapshot.evaluation = evaluate(auction, eligible_bids, confirmed, policy=policy, now=now)
    return project_results(snapshot, level)
