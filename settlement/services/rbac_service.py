from __future__ import annotations

import uuid

from sqlalchemy.ext.asyncio import AsyncSession

from settlement.db.enums import ELEVATED_ROLES, UserRole
from settlement.db.models import Auction, User
from settlement.errors import ForbiddenError
from settlement.services.auction_service import get_user_by_id


def is_elevated(user: User | None) -> bool:
    return user is not None and UserRole(user.role) in ELEVATED_ROLES


def is_auction_owner(user: User | None, auction: Auction) -> bool:
    return user is not None and auction.owner_user_id == user.id


def can_manage_auction(user: User | None, auction: Auction) -> bool:
    return is_auction_owner(user, auction) or is_elevated(user)


async def require_auction_manager(
    session: AsyncSession,
    *,
    auction: Auction,
    actor_id: uuid.UUID,
) -> User:
    actor = await get_user_by_id(session, actor_id)
    if not can_manage_auction(actor, auction):
        raise ForbiddenError("Only the auction owner or an administrator can manage this auction")
    return actor


async def require_elevated(session: AsyncSession, *, actor_id: uuid.UUID) -> User:
    actor = await get_user_by_id(session, actor_id)
    if not is_elevated(actor):
        raise ForbiddenError("Administrator role is required")
    return actor
