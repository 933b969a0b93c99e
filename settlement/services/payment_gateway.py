from __future__ import annotations

import asyncio
import json
import logging
import uuid
from collections.abc import Awaitable
from dataclasses import dataclass
from decimal import Decimal
from enum import StrEnum
from functools import lru_cache
from typing import TypeVar
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from settlement.config import settings
from settlement.errors import GatewayError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class GatewayPaymentStatus(StrEnum):
    PAID = "paid"
    PENDING = "pending"
    PROCESSING = "processing"
    FAILED = "failed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


FAILURE_REASONS: dict[str, str] = {
    GatewayPaymentStatus.FAILED: "Payment failed",
    GatewayPaymentStatus.CANCELLED: "Payment was cancelled",
    GatewayPaymentStatus.EXPIRED: "Payment session expired",
    GatewayPaymentStatus.PENDING: "Payment is still pending",
    GatewayPaymentStatus.PROCESSING: "Payment is still processing",
}


def failure_reason_for(status: str) -> str:
    return FAILURE_REASONS.get(status, f"Unexpected payment status: {status}")


@dataclass(slots=True)
class PaymentPayer:
    user_id: uuid.UUID
    full_name: str
    email: str


@dataclass(slots=True)
class PaymentBreakdown:
    auction_id: uuid.UUID
    payment_type: str
    amount: Decimal
    currency: str
    description: str


@dataclass(slots=True)
class PaymentHandle:
    transaction_id: str
    payment_url: str | None
    status: str


@dataclass(slots=True)
class PaymentVerification:
    transaction_id: str
    status: str
    amount: Decimal | None = None

    @property
    def is_paid(self) -> bool:
        return self.status == GatewayPaymentStatus.PAID


@dataclass(slots=True)
class RefundReceipt:
    refund_id: str
    status: str


class PaymentGateway:
    async def create_payment(self, *, payer: PaymentPayer, breakdown: PaymentBreakdown) -> PaymentHandle:
        raise NotImplementedError

    async def verify_payment(self, transaction_id: str) -> PaymentVerification:
        raise NotImplementedError

    async def refund(self, *, payment_ref: str, amount: Decimal, reason: str) -> RefundReceipt:
        raise NotImplementedError


class HttpPaymentGateway(PaymentGateway):
    def __init__(self, *, base_url: str, api_key: str, timeout_seconds: float) -> None:
        self._base_url = base_url.strip().rstrip("/")
        self._api_key = api_key.strip()
        self._timeout_seconds = max(timeout_seconds, 1.0)

    @classmethod
    def from_settings(cls) -> HttpPaymentGateway:
        return cls(
            base_url=settings.payment_gateway_base_url,
            api_key=settings.payment_gateway_api_key,
            timeout_seconds=settings.payment_gateway_timeout_seconds,
        )

    async def _request(self, method: str, path: str, payload: dict | None = None) -> dict:
        if not self._base_url:
            raise GatewayError("Payment gateway base URL is not configured", retryable=False)

        data = json.dumps(payload, default=str).encode("utf-8") if payload is not None else None
        headers = {
            "Accept": "application/json",
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
            "User-Agent": "AuctionSettlement/1.0",
        }
        request = Request(url=f"{self._base_url}{path}", data=data, headers=headers, method=method)

        def _send() -> tuple[int, str]:
            with urlopen(request, timeout=self._timeout_seconds) as response:  # noqa: S310
                return int(response.status), response.read().decode("utf-8")

        try:
            status, raw_body = await asyncio.to_thread(_send)
        except HTTPError as exc:
            error_body = exc.read().decode("utf-8", errors="replace")
            raise GatewayError(
                f"Payment gateway error: HTTP {exc.code}: {error_body[:400]}",
                retryable=exc.code >= 500,
            ) from exc
        except URLError as exc:
            raise GatewayError(f"Payment gateway unavailable: {exc}") from exc

        if status not in {200, 201}:
            raise GatewayError(f"Payment gateway unexpected status: {status}")

        try:
            body = json.loads(raw_body)
        except ValueError as exc:
            raise GatewayError("Payment gateway returned malformed JSON") from exc
        if not isinstance(body, dict):
            raise GatewayError("Payment gateway returned malformed payload")
        return body

    async def create_payment(self, *, payer: PaymentPayer, breakdown: PaymentBreakdown) -> PaymentHandle:
        body = await self._request(
            "POST",
            "/payments",
            {
                "amount": str(breakdown.amount),
                "currency": breakdown.currency,
                "description": breakdown.description,
                "reference": f"{breakdown.payment_type}:{breakdown.auction_id}:{payer.user_id}",
                "customer": {"name": payer.full_name, "email": payer.email},
            },
        )
        transaction_id = body.get("id") or body.get("transaction_id")
        if not isinstance(transaction_id, str) or not transaction_id:
            raise GatewayError("Payment gateway returned no transaction id")
        return PaymentHandle(
            transaction_id=transaction_id,
            payment_url=body.get("payment_url") or body.get("url"),
            status=str(body.get("status") or GatewayPaymentStatus.PENDING),
        )

    async def verify_payment(self, transaction_id: str) -> PaymentVerification:
        body = await self._request("GET", f"/payments/{transaction_id}")
        raw_amount = body.get("amount")
        return PaymentVerification(
            transaction_id=transaction_id,
            status=str(body.get("status") or GatewayPaymentStatus.PENDING).lower(),
            amount=Decimal(str(raw_amount)) if raw_amount is not None else None,
        )

    async def refund(self, *, payment_ref: str, amount: Decimal, reason: str) -> RefundReceipt:
        body = await self._request(
            "POST",
            f"/payments/{payment_ref}/refunds",
            {"amount": str(amount), "reason": reason},
        )
        return RefundReceipt(
            refund_id=str(body.get("id") or payment_ref),
            status=str(body.get("status") or "succeeded"),
        )


@lru_cache(1)
def get_payment_gateway() -> PaymentGateway:
    return HttpPaymentGateway.from_settings()


async def bounded_gateway_call(call: Awaitable[T], *, timeout: float | None = None) -> T:
    """Await a gateway call under a deadline, normalising failures to GatewayError."""
    limit = timeout if timeout is not None else settings.payment_gateway_timeout_seconds
    try:
        return await asyncio.wait_for(call, timeout=max(limit, 0.1))
    except TimeoutError as exc:
        raise GatewayError(f"Payment gateway timed out after {limit}s") from exc
    except GatewayError:
        raise
    except Exception as exc:
        logger.warning("Payment gateway call failed: %s", exc)
        raise GatewayError(f"Payment gateway call failed: {exc}") from exc
