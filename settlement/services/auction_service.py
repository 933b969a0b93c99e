from __future__ import annotations

import uuid
from collections.abc import Iterable

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from settlement.db.enums import UserRole
from settlement.db.models import Auction, Bid, Contract, Participant, Payment, User
from settlement.errors import NotFoundError


def valid_bid_filters():
    return (Bid.is_denied.is_(False), Bid.is_withdrawn.is_(False))


async def get_auction_by_id(
    session: AsyncSession,
    auction_id: uuid.UUID,
    *,
    for_update: bool = False,
) -> Auction | None:
    stmt = select(Auction).where(Auction.id == auction_id)
    if for_update:
        stmt = stmt.with_for_update()
    return await session.scalar(stmt)


async def require_auction(
    session: AsyncSession,
    auction_id: uuid.UUID,
    *,
    for_update: bool = False,
) -> Auction:
    auction = await get_auction_by_id(session, auction_id, for_update=for_update)
    if auction is None:
        raise NotFoundError(f"Auction {auction_id} not found")
    return auction


async def get_user_by_id(session: AsyncSession, user_id: uuid.UUID) -> User | None:
    return await session.scalar(select(User).where(User.id == user_id))


async def require_user(session: AsyncSession, user_id: uuid.UUID) -> User:
    user = await get_user_by_id(session, user_id)
    if user is None:
        raise NotFoundError(f"User {user_id} not found")
    return user


async def list_users_by_ids(session: AsyncSession, user_ids: Iterable[uuid.UUID]) -> dict[uuid.UUID, User]:
    ids = list({user_id for user_id in user_ids})
    if not ids:
        return {}
    rows = await session.execute(select(User).where(User.id.in_(ids)))
    return {user.id: user for user in rows.scalars().all()}


async def list_users_by_roles(session: AsyncSession, roles: Iterable[UserRole]) -> list[User]:
    rows = await session.execute(select(User).where(User.role.in_(list(roles))).order_by(User.email.asc()))
    return list(rows.scalars().all())


async def list_participants(session: AsyncSession, auction_id: uuid.UUID) -> list[Participant]:
    rows = await session.execute(
        select(Participant)
        .where(Participant.auction_id == auction_id)
        .order_by(Participant.registered_at.asc(), Participant.id.asc())
    )
    return list(rows.scalars().all())


async def get_participant_by_id(
    session: AsyncSession,
    participant_id: uuid.UUID,
    *,
    for_update: bool = False,
) -> Participant | None:
    stmt = select(Participant).where(Participant.id == participant_id)
    if for_update:
        stmt = stmt.with_for_update()
    return await session.scalar(stmt)


async def find_participant(
    session: AsyncSession,
    *,
    auction_id: uuid.UUID,
    user_id: uuid.UUID,
) -> Participant | None:
    return await session.scalar(
        select(Participant).where(Participant.auction_id == auction_id, Participant.user_id == user_id)
    )


async def list_valid_bids(session: AsyncSession, auction_id: uuid.UUID) -> list[Bid]:
    rows = await session.execute(
        select(Bid)
        .where(Bid.auction_id == auction_id, *valid_bid_filters())
        .order_by(Bid.amount.desc(), Bid.bid_at.asc())
    )
    return list(rows.scalars().all())


async def list_eligible_bids(session: AsyncSession, auction_id: uuid.UUID) -> list[Bid]:
    """Valid bids whose participant is still in the running, highest first."""
    rows = await session.execute(
        select(Bid)
        .join(Participant, Participant.id == Bid.participant_id)
        .where(
            Bid.auction_id == auction_id,
            Participant.is_disqualified.is_(False),
            *valid_bid_filters(),
        )
        .order_by(Bid.amount.desc(), Bid.bid_at.asc())
    )
    return list(rows.scalars().all())


async def count_bids(session: AsyncSession, auction_id: uuid.UUID) -> int:
    value = await session.scalar(select(func.count(Bid.id)).where(Bid.auction_id == auction_id))
    return int(value or 0)


async def get_bid_by_id(
    session: AsyncSession,
    bid_id: uuid.UUID,
    *,
    for_update: bool = False,
) -> Bid | None:
    stmt = select(Bid).where(Bid.id == bid_id)
    if for_update:
        stmt = stmt.with_for_update()
    return await session.scalar(stmt)


async def get_winning_bid(
    session: AsyncSession,
    auction_id: uuid.UUID,
    *,
    for_update: bool = False,
) -> Bid | None:
    stmt = select(Bid).where(Bid.auction_id == auction_id, Bid.is_winning_bid.is_(True))
    if for_update:
        stmt = stmt.with_for_update()
    return await session.scalar(stmt)


async def get_contract(session: AsyncSession, auction_id: uuid.UUID) -> Contract | None:
    return await session.scalar(select(Contract).where(Contract.auction_id == auction_id))


async def get_payment_by_id(
    session: AsyncSession,
    payment_id: uuid.UUID,
    *,
    for_update: bool = False,
) -> Payment | None:
    stmt = select(Payment).where(Payment.id == payment_id)
    if for_update:
        stmt = stmt.with_for_update()
    return await session.scalar(stmt)


async def clear_winning_bids(session: AsyncSession, auction_id: uuid.UUID) -> list[Bid]:
    rows = await session.execute(
        select(Bid).where(Bid.auction_id == auction_id, Bid.is_winning_bid.is_(True)).with_for_update()
    )
    cleared = list(rows.scalars().all())
    for bid in cleared:
        bid.is_winning_bid = False
    if cleared:
        await session.flush()
    return cleared


async def assign_winning_bid(session: AsyncSession, *, auction_id: uuid.UUID, bid: Bid) -> None:
    """Make ``bid`` the only winning bid of the auction.

    Previous flags are flushed off first so the partial unique index never
    sees two winning rows inside one flush.
    """
    await clear_winning_bids(session, auction_id)
    bid.is_winning_bid = True
    await session.flush()
