from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from enum import StrEnum
from functools import lru_cache

from aiogram import Bot
from aiogram.client.default import DefaultBotProperties
from aiogram.enums import ParseMode

from settlement.config import settings

logger = logging.getLogger(__name__)


class NotificationKind(StrEnum):
    AUCTION_RESULT = "auction_result"
    WINNER_PAYMENT_REQUEST = "winner_payment_request"
    WINNER_PAYMENT_FAILED = "winner_payment_failed"
    WINNER_PAYMENT_CONFIRMED = "winner_payment_confirmed"
    SELLER_PAYMENT_CONFIRMED = "seller_payment_confirmed"
    ADMIN_PAYMENT_CONFIRMED = "admin_payment_confirmed"
    SECOND_BIDDER_OFFER = "second_bidder_offer"
    REFUND_UPDATE = "refund_update"
    PARTICIPANT_DISQUALIFIED = "participant_disqualified"


@dataclass(slots=True)
class NotificationRecipient:
    user_id: uuid.UUID | None
    full_name: str
    email: str
    tg_user_id: int | None = None

    @classmethod
    def from_user(cls, user) -> NotificationRecipient:
        return cls(
            user_id=user.id,
            full_name=user.full_name,
            email=user.email,
            tg_user_id=user.tg_user_id,
        )


@dataclass(slots=True)
class Notification:
    recipient: NotificationRecipient
    data: dict = field(default_factory=dict)


class Notifier:
    async def send(self, kind: NotificationKind, notification: Notification) -> None:
        raise NotImplementedError


class LoggingNotifier(Notifier):
    async def send(self, kind: NotificationKind, notification: Notification) -> None:
        logger.info(
            "Notification %s for %s: %s",
            kind,
            notification.recipient.email,
            notification.data,
        )


class TelegramNotifier(Notifier):
    def __init__(self, *, bot: Bot, admin_chat_id: int | None = None) -> None:
        self._bot = bot
        self._admin_chat_id = admin_chat_id

    @classmethod
    def from_settings(cls) -> TelegramNotifier:
        bot = Bot(
            token=settings.bot_token,
            default=DefaultBotProperties(parse_mode=ParseMode.HTML),
        )
        return cls(bot=bot, admin_chat_id=settings.parsed_admin_chat_id())

    def _resolve_chat_id(self, kind: NotificationKind, notification: Notification) -> int | None:
        if notification.recipient.tg_user_id is not None:
            return notification.recipient.tg_user_id
        if kind == NotificationKind.ADMIN_PAYMENT_CONFIRMED:
            return self._admin_chat_id
        return None

    async def send(self, kind: NotificationKind, notification: Notification) -> None:
        from settlement.services.notification_copy_service import render_notification_text

        chat_id = self._resolve_chat_id(kind, notification)
        if chat_id is None:
            logger.info("Skip %s notification for %s: no telegram chat", kind, notification.recipient.email)
            return
        await self._bot.send_message(chat_id=chat_id, text=render_notification_text(kind, notification))

    async def close(self) -> None:
        await self._bot.session.close()


@lru_cache(1)
def get_notifier() -> Notifier:
    if settings.bot_token.strip():
        return TelegramNotifier.from_settings()
    return LoggingNotifier()


async def notify_safely(notifier: Notifier, kind: NotificationKind, notification: Notification) -> bool:
    try:
        await notifier.send(kind, notification)
    except Exception as exc:
        logger.exception(
            "Failed to send %s notification to %s: %s",
            kind,
            notification.recipient.email,
            exc,
        )
        return False
    return True


def auction_notification_data(auction) -> dict:
    return {
        "auction_id": str(auction.id),
        "auction_code": auction.code,
        "auction_name": auction.name,
    }
