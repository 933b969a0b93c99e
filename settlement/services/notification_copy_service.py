from __future__ import annotations

from decimal import Decimal
from html import escape

from settlement.services.notifier import Notification, NotificationKind


def format_money(value: Decimal | int | str | None) -> str:
    if value is None:
        return "-"
    amount = Decimal(value).quantize(Decimal("1"))
    return f"{amount:,}"


def _auction_label(notification: Notification) -> str:
    code = notification.data.get("auction_code") or "-"
    name = notification.data.get("auction_name") or ""
    if name:
        return f"{escape(str(name))} ({escape(str(code))})"
    return escape(str(code))


def _auction_result_text(notification: Notification) -> str:
    data = notification.data
    label = _auction_label(notification)
    if data.get("is_winner"):
        return (
            f"<b>Congratulations!</b> You won auction {label} "
            f"with a bid of {format_money(data.get('winning_amount'))}."
        )
    if data.get("status") == "success":
        return (
            f"Auction {label} has ended. Your bid did not win. "
            f"Winning bid: {format_money(data.get('winning_amount'))}, total bids: {data.get('total_bids', 0)}."
        )
    return f"Auction {label} has ended without a winner."


def _payment_request_text(notification: Notification) -> str:
    data = notification.data
    return (
        f"Please complete payment for auction {_auction_label(notification)}.\n"
        f"Winning bid: {format_money(data.get('winning_amount'))}\n"
        f"Deposit paid: {format_money(data.get('deposit_paid'))}\n"
        f"Amount due: <b>{format_money(data.get('total_due'))}</b>\n"
        f"Deadline: {data.get('payment_deadline', '-')}"
    )


def _payment_failed_text(notification: Notification) -> str:
    data = notification.data
    return (
        f"Payment for auction {_auction_label(notification)} did not go through: "
        f"{escape(str(data.get('failure_reason', 'unknown error')))}. "
        f"You can retry until {data.get('payment_deadline', '-')}."
    )


def _payment_confirmed_text(notification: Notification) -> str:
    data = notification.data
    return (
        f"Payment of {format_money(data.get('amount'))} for auction {_auction_label(notification)} "
        f"is confirmed. Contract status: {data.get('contract_status', '-')}."
    )


def _second_bidder_offer_text(notification: Notification) -> str:
    data = notification.data
    return (
        f"The previous winner of auction {_auction_label(notification)} defaulted. "
        f"Your bid of {format_money(data.get('winning_amount'))} is now the winning bid. "
        f"Amount due: {format_money(data.get('total_due'))} before {data.get('payment_deadline', '-')}."
    )


def _refund_text(notification: Notification) -> str:
    data = notification.data
    status = str(data.get("refund_status", ""))
    label = _auction_label(notification)
    amount = format_money(data.get("amount"))
    if status == "pending":
        return f"Refund of {amount} requested for auction {label}."
    if status == "approved":
        return f"Your refund of {amount} for auction {label} was approved."
    if status == "rejected":
        reason = escape(str(data.get("reason") or "-"))
        return f"Your refund request for auction {label} was rejected: {reason}."
    if status == "forfeited":
        reason = escape(str(data.get("reason") or "-"))
        return f"Your deposit of {amount} for auction {label} was forfeited: {reason}."
    return f"Your deposit of {amount} for auction {label} has been refunded."


def _disqualified_text(notification: Notification) -> str:
    reason = escape(str(notification.data.get("reason") or "-"))
    return f"You were disqualified from auction {_auction_label(notification)}: {reason}."


_RENDERERS = {
    NotificationKind.AUCTION_RESULT: _auction_result_text,
    NotificationKind.WINNER_PAYMENT_REQUEST: _payment_request_text,
    NotificationKind.WINNER_PAYMENT_FAILED: _payment_failed_text,
    NotificationKind.WINNER_PAYMENT_CONFIRMED: _payment_confirmed_text,
    NotificationKind.SELLER_PAYMENT_CONFIRMED: _payment_confirmed_text,
    NotificationKind.ADMIN_PAYMENT_CONFIRMED: _payment_confirmed_text,
    NotificationKind.SECOND_BIDDER_OFFER: _second_bidder_offer_text,
    NotificationKind.REFUND_UPDATE: _refund_text,
    NotificationKind.PARTICIPANT_DISQUALIFIED: _disqualified_text,
}


def render_notification_text(kind: NotificationKind, notification: Notification) -> str:
    renderer = _RENDERERS.get(kind)
    if renderer is None:
        return f"Update for auction {_auction_label(notification)}."
    return renderer(notification)
