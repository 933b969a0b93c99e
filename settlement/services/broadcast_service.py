from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from functools import lru_cache

from redis.asyncio import Redis

from settlement.config import settings
from settlement.db.base import utc_now

logger = logging.getLogger(__name__)

EVENT_AUCTION_FINALIZED = "auction.finalized"
EVENT_WINNER_CHANGED = "auction.winner_changed"
EVENT_CONTRACT_SIGNED = "auction.contract_signed"


@dataclass(slots=True)
class BroadcastEvent:
    auction_id: uuid.UUID
    event: str
    data: dict = field(default_factory=dict)
    emitted_at: datetime = field(default_factory=utc_now)

    def to_json(self) -> str:
        return json.dumps(
            {
                "event": self.event,
                "auction_id": str(self.auction_id),
                "emitted_at": self.emitted_at.isoformat(),
                "data": self.data,
            },
            default=str,
        )


class Broadcaster:
    async def publish(self, event: BroadcastEvent) -> None:
        raise NotImplementedError


class NullBroadcaster(Broadcaster):
    async def publish(self, event: BroadcastEvent) -> None:
        logger.debug("Broadcast %s for auction %s dropped", event.event, event.auction_id)


class RedisBroadcaster(Broadcaster):
    def __init__(self, *, client: Redis, channel_prefix: str) -> None:
        self._client = client
        self._channel_prefix = channel_prefix.strip() or "auction"

    @classmethod
    def from_settings(cls) -> RedisBroadcaster:
        from settlement.infra.redis_client import redis_client

        return cls(client=redis_client, channel_prefix=settings.broadcast_channel_prefix)

    def channel_for(self, auction_id: uuid.UUID) -> str:
        return f"{self._channel_prefix}:{auction_id}"

    async def publish(self, event: BroadcastEvent) -> None:
        await self._client.publish(self.channel_for(event.auction_id), event.to_json())


@lru_cache(1)
def get_broadcaster() -> Broadcaster:
    if not settings.redis_url.strip():
        logger.info("REDIS_URL is not set, auction events will not be broadcast")
        return NullBroadcaster()
    return RedisBroadcaster.from_settings()


async def publish_safely(broadcaster: Broadcaster, event: BroadcastEvent) -> bool:
    try:
        await broadcaster.publish(event)
    except Exception as exc:
        logger.exception("Failed to broadcast %s for auction %s: %s", event.event, event.auction_id, exc)
        return False
    return True
