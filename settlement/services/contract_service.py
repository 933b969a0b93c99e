from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from settlement.db.enums import ContractStatus
from settlement.db.models import Auction, Bid, Contract, User

logger = logging.getLogger(__name__)

_REPOINTABLE_STATUSES = frozenset({ContractStatus.DRAFT, ContractStatus.CANCELLED})


@dataclass(slots=True)
class ContractDocumentData:
    """Data handed to the contract PDF renderer."""

    contract_id: uuid.UUID
    auction_id: uuid.UUID
    auction_code: str
    auction_name: str
    seller_full_name: str
    seller_email: str
    buyer_full_name: str
    buyer_email: str
    price: Decimal
    status: str
    signed_at: datetime | None


async def get_contract_for_update(session: AsyncSession, auction_id: uuid.UUID) -> Contract | None:
    return await session.scalar(
        select(Contract).where(Contract.auction_id == auction_id).with_for_update()
    )


def _point_contract_at(contract: Contract, *, winning_bid: Bid, buyer_user_id: uuid.UUID) -> None:
    contract.winning_bid_id = winning_bid.id
    contract.buyer_user_id = buyer_user_id
    contract.price = winning_bid.amount


async def ensure_contract(
    session: AsyncSession,
    *,
    auction: Auction,
    winning_bid: Bid,
    buyer_user_id: uuid.UUID,
    now: datetime,
) -> tuple[Contract, bool]:
    """Return the auction's single contract, creating a draft one if absent.

    A draft or cancelled contract that points at another bid is re-pointed at
    ``winning_bid``; a cancelled one is reopened as draft. Signed and completed
    contracts are returned untouched.
    """
    existing = await get_contract_for_update(session, auction.id)
    if existing is not None:
        if ContractStatus(existing.status) in _REPOINTABLE_STATUSES and (
            existing.winning_bid_id != winning_bid.id or existing.status == ContractStatus.CANCELLED
        ):
            _point_contract_at(existing, winning_bid=winning_bid, buyer_user_id=buyer_user_id)
            existing.status = ContractStatus.DRAFT
            existing.cancelled_at = None
            existing.cancel_reason = None
            existing.updated_at = now
        return existing, False

    try:
        async with session.begin_nested():
            contract = Contract(
                auction_id=auction.id,
                winning_bid_id=winning_bid.id,
                seller_user_id=auction.owner_user_id,
                seller_full_name=auction.owner_full_name,
                seller_email=auction.owner_email,
                buyer_user_id=buyer_user_id,
                price=winning_bid.amount,
                status=ContractStatus.DRAFT,
                created_at=now,
                updated_at=now,
            )
            session.add(contract)
            await session.flush()
            return contract, True
    except IntegrityError:
        contract = await get_contract_for_update(session, auction.id)
        if contract is None:
            raise
        logger.info("Contract for auction %s was created concurrently, reusing it", auction.id)
        return contract, False


async def cancel_contracts(
    session: AsyncSession,
    auction_id: uuid.UUID,
    *,
    reason: str,
    now: datetime,
) -> list[Contract]:
    rows = await session.execute(
        select(Contract)
        .where(
            Contract.auction_id == auction_id,
            Contract.status.not_in([ContractStatus.CANCELLED, ContractStatus.COMPLETED]),
        )
        .with_for_update()
    )
    cancelled = list(rows.scalars().all())
    for contract in cancelled:
        contract.status = ContractStatus.CANCELLED
        contract.cancelled_at = now
        contract.cancel_reason = reason
        contract.updated_at = now
    return cancelled


def build_contract_document(contract: Contract, *, auction: Auction, buyer: User) -> ContractDocumentData:
    return ContractDocumentData(
        contract_id=contract.id,
        auction_id=auction.id,
        auction_code=auction.code,
        auction_name=auction.name,
        seller_full_name=contract.seller_full_name,
        seller_email=contract.seller_email,
        buyer_full_name=buyer.full_name,
        buyer_email=buyer.email,
        price=Decimal(contract.price),
        status=str(contract.status),
        signed_at=contract.signed_at,
    )
