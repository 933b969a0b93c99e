from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from decimal import Decimal

from sqlalchemy.ext.asyncio import AsyncSession

from settlement.config import settings
from settlement.db.base import ensure_utc
from settlement.db.enums import TERMINAL_AUCTION_STATUSES, AuctionStatus
from settlement.services.auction_service import list_eligible_bids, list_participants, require_auction
from settlement.services.participant_state import is_confirmed_participant

ISSUE_ALREADY_FINALIZED = "already_finalized"
ISSUE_NOT_ENDED = "not_ended"
ISSUE_MINIMUM_PARTICIPANTS = "minimum_participants"
ISSUE_NO_VALID_BIDS = "no_valid_bids"
ISSUE_RESERVE_NOT_MET = "reserve_not_met"
ISSUE_BID_INCREMENT_COMPLIANCE = "bid_increment_compliance"
ISSUE_DURATION_EXCEEDED = "duration_exceeded"


@dataclass(frozen=True, slots=True)
class EvaluationPolicy:
    minimum_participants: int = 2
    bid_increment_compliance: float = 0.95
    max_auction_duration: timedelta = timedelta(days=7)

    @classmethod
    def from_settings(cls) -> EvaluationPolicy:
        return cls(
            minimum_participants=max(settings.minimum_participants, 1),
            bid_increment_compliance=settings.bid_increment_compliance_threshold,
            max_auction_duration=timedelta(days=max(settings.max_auction_duration_days, 1)),
        )


@dataclass(slots=True)
class EvaluationIssue:
    code: str
    message: str


@dataclass(slots=True)
class EvaluationResult:
    auction_id: uuid.UUID
    is_ended: bool
    is_finalized: bool
    meets_reserve_price: bool
    has_minimum_participants: bool
    has_valid_bids: bool
    total_valid_bids: int
    total_participants: int
    highest_bid_id: uuid.UUID | None
    highest_bid_amount: Decimal | None
    reserve_price: Decimal
    bid_increment_compliance: float
    recommended_status: AuctionStatus
    can_finalize: bool
    evaluated_at: datetime
    issues: list[EvaluationIssue] = field(default_factory=list)

    @property
    def issue_messages(self) -> list[str]:
        return [issue.message for issue in self.issues]

    def summary(self) -> dict:
        return {
            "recommended_status": str(self.recommended_status),
            "can_finalize": self.can_finalize,
            "meets_reserve_price": self.meets_reserve_price,
            "has_minimum_participants": self.has_minimum_participants,
            "has_valid_bids": self.has_valid_bids,
            "total_valid_bids": self.total_valid_bids,
            "total_participants": self.total_participants,
            "highest_bid_id": str(self.highest_bid_id) if self.highest_bid_id else None,
            "highest_bid_amount": str(self.highest_bid_amount) if self.highest_bid_amount is not None else None,
            "reserve_price": str(self.reserve_price),
            "bid_increment_compliance": round(self.bid_increment_compliance * 100, 2),
            "issues": [{"code": issue.code, "message": issue.message} for issue in self.issues],
            "evaluated_at": self.evaluated_at.isoformat(),
        }


def _sorted_bids(bids) -> list:
    return sorted(bids, key=lambda bid: (-Decimal(bid.amount), ensure_utc(bid.bid_at)))


def bid_increment_compliance_ratio(bids, increment: Decimal) -> float:
    ordered = _sorted_bids(bids)
    if len(ordered) < 2 or increment <= 0:
        return 1.0

    compliant = 0
    pairs = len(ordered) - 1
    for higher, lower in zip(ordered, ordered[1:]):
        difference = Decimal(higher.amount) - Decimal(lower.amount)
        if difference % Decimal(increment) == 0:
            compliant += 1
    return compliant / pairs


def evaluate(
    auction,
    valid_bids,
    confirmed_participants,
    *,
    policy: EvaluationPolicy | None = None,
    now: datetime | None = None,
) -> EvaluationResult:
    """Decide whether an auction may be closed and what its outcome should be.

    Pure function of the supplied snapshot. Every rule is checked so the caller
    sees the complete list of issues, not only the first failing one.
    """
    policy = policy or EvaluationPolicy.from_settings()
    evaluated_at = ensure_utc(now) if now is not None else datetime.now(UTC)
    issues: list[EvaluationIssue] = []

    is_finalized = auction.status in TERMINAL_AUCTION_STATUSES
    if is_finalized:
        issues.append(EvaluationIssue(ISSUE_ALREADY_FINALIZED, f"Auction is already finalized ({auction.status})"))

    is_ended = evaluated_at >= ensure_utc(auction.auction_end_at)
    if not is_ended:
        issues.append(EvaluationIssue(ISSUE_NOT_ENDED, "Auction has not ended yet"))

    total_participants = len(confirmed_participants)
    has_minimum_participants = total_participants >= policy.minimum_participants
    if not has_minimum_participants:
        issues.append(
            EvaluationIssue(
                ISSUE_MINIMUM_PARTICIPANTS,
                f"Minimum {policy.minimum_participants} participants required, got {total_participants}",
            )
        )

    ordered = _sorted_bids(valid_bids)
    has_valid_bids = bool(ordered)
    if not has_valid_bids:
        issues.append(EvaluationIssue(ISSUE_NO_VALID_BIDS, "No valid bids placed"))

    reserve_price = Decimal(
        auction.reserve_price if auction.reserve_price is not None else auction.starting_price
    )
    highest = ordered[0] if ordered else None
    highest_amount = Decimal(highest.amount) if highest is not None else None
    meets_reserve_price = highest_amount is not None and highest_amount >= reserve_price
    if has_valid_bids and not meets_reserve_price:
        issues.append(
            EvaluationIssue(
                ISSUE_RESERVE_NOT_MET,
                f"Highest bid {highest_amount} does not meet reserve price {reserve_price}",
            )
        )

    compliance = bid_increment_compliance_ratio(ordered, Decimal(auction.bid_increment))
    if compliance < policy.bid_increment_compliance:
        issues.append(
            EvaluationIssue(
                ISSUE_BID_INCREMENT_COMPLIANCE,
                f"Bid increment compliance {compliance * 100:.1f}% is below "
                f"{policy.bid_increment_compliance * 100:.1f}%",
            )
        )

    duration = ensure_utc(auction.auction_end_at) - ensure_utc(auction.auction_start_at)
    if duration > policy.max_auction_duration:
        issues.append(
            EvaluationIssue(
                ISSUE_DURATION_EXCEEDED,
                f"Auction duration {duration} exceeds maximum {policy.max_auction_duration}",
            )
        )

    if not has_valid_bids or not has_minimum_participants:
        recommended_status = AuctionStatus.FAILED
    elif meets_reserve_price:
        recommended_status = AuctionStatus.SUCCESS
    else:
        recommended_status = AuctionStatus.FAILED

    return EvaluationResult(
        auction_id=auction.id,
        is_ended=is_ended,
        is_finalized=is_finalized,
        meets_reserve_price=meets_reserve_price,
        has_minimum_participants=has_minimum_participants,
        has_valid_bids=has_valid_bids,
        total_valid_bids=len(ordered),
        total_participants=total_participants,
        highest_bid_id=highest.id if highest is not None else None,
        highest_bid_amount=highest_amount,
        reserve_price=reserve_price,
        bid_increment_compliance=compliance,
        recommended_status=recommended_status,
        can_finalize=is_ended and not is_finalized and not issues,
        evaluated_at=evaluated_at,
        issues=issues,
    )


async def load_evaluation(
    session: AsyncSession,
    auction_id: uuid.UUID,
    *,
    policy: EvaluationPolicy | None = None,
    now: datetime | None = None,
) -> EvaluationResult:
    auction = await require_auction(session, auction_id)
    participants = await list_participants(session, auction.id)
    bids = await list_eligible_bids(session, auction.id)
    confirmed = [participant for participant in participants if is_confirmed_participant(participant)]
    return evaluate(auction, bids, confirmed, policy=policy, now=now)
