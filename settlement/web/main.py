from __future__ import annotations

import dataclasses
import logging
import uuid
from datetime import date, datetime
from decimal import Decimal
from enum import Enum

import uvicorn
from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from settlement.config import settings
from settlement.db.enums import AuctionStatus, DisqualificationReason, RefundStatus
from settlement.db.models import AuditLogEntry, Auction
from settlement.db.session import SessionFactory
from settlement.errors import (
    ForbiddenError,
    GatewayError,
    InvalidStateError,
    NotFoundError,
    SettlementError,
    ValidationError,
)
from settlement.logging_setup import configure_logging
from settlement.services import (
    auto_refund_service,
    finalization_service,
    refund_service,
    results_service,
    winner_payment_service,
)
from settlement.services.auction_service import get_user_by_id, require_auction
from settlement.services.evaluation_service import load_evaluation
from settlement.services.rbac_service import can_manage_auction, require_auction_manager, require_elevated

app = FastAPI(title="Auction Settlement", version="0.1.0")
logger = logging.getLogger(__name__)

ERROR_STATUS_CODES: tuple[tuple[type[SettlementError], int], ...] = (
    (NotFoundError, 404),
    (ForbiddenError, 403),
    (InvalidStateError, 409),
    (ValidationError, 422),
    (GatewayError, 502),
)


class FinalizeRequest(BaseModel):
    winning_bid_id: uuid.UUID | None = None
    notes: str | None = None
    skip_evaluation: bool = False


class OverrideRequest(BaseModel):
    status: AuctionStatus
    reason: str = Field(min_length=1)
    winning_bid_id: uuid.UUID | None = None
    notes: str | None = None


class VerifyPaymentRequest(BaseModel):
    transaction_id: str = Field(min_length=1)


class PaymentDefaultRequest(BaseModel):
    offer_to_second_bidder: bool = False
    reason: str | None = None


class RefundRequestBody(BaseModel):
    reason: str | None = None


class RefundApproveBody(BaseModel):
    note: str | None = None


class RefundRejectBody(BaseModel):
    reason: str = Field(min_length=1)


class DisqualifyBody(BaseModel):
    reason: DisqualificationReason
    notes: str | None = None


def to_payload(value):
    """Convert service results into JSON-safe structures; money stays a string."""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Auction):
        return _auction_payload(value)
    if isinstance(value, AuditLogEntry):
        return _audit_payload(value)
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {
            item.name: to_payload(getattr(value, item.name))
            for item in dataclasses.fields(value)
            if item.name != "notifications"
        }
    if isinstance(value, dict):
        return {str(key): to_payload(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_payload(item) for item in value]
    return value


def _auction_payload(auction: Auction) -> dict:
    return to_payload(
        {
            "id": auction.id,
            "code": auction.code,
            "name": auction.name,
            "status": auction.status,
            "auction_start_at": auction.auction_start_at,
            "auction_end_at": auction.auction_end_at,
            "starting_price": auction.starting_price,
            "bid_increment": auction.bid_increment,
            "reserve_price": auction.reserve_price,
            "deposit_amount_required": auction.deposit_amount_required,
            "finalized_at": auction.finalized_at,
            "owner_user_id": auction.owner_user_id,
        }
    )


def _audit_payload(entry: AuditLogEntry) -> dict:
    return to_payload(
        {
            "id": entry.id,
            "auction_id": entry.auction_id,
            "performed_by": entry.performed_by,
            "action": entry.action,
            "previous_status": entry.previous_status,
            "new_status": entry.new_status,
            "reason": entry.reason,
            "notes": entry.notes,
            "metadata": entry.payload,
            "created_at": entry.created_at,
        }
    )


def status_code_for(exc: SettlementError) -> int:
    for error_cls, status_code in ERROR_STATUS_CODES:
        if isinstance(exc, error_cls):
            return status_code
    return 400


@app.exception_handler(SettlementError)
async def settlement_error_handler(request: Request, exc: SettlementError) -> JSONResponse:
    status_code = status_code_for(exc)
    if status_code >= 500:
        logger.warning("[web] %s %s failed: %s", request.method, request.url.path, exc.message)
    body = {"error": exc.code, "detail": exc.message}
    if isinstance(exc, GatewayError):
        body["retryable"] = exc.retryable
    return JSONResponse(status_code=status_code, content=body)


def _caller_id(raw: str | None) -> uuid.UUID:
    if raw is None or not raw.strip():
        raise HTTPException(status_code=401, detail="X-User-Id header is required")
    try:
        return uuid.UUID(raw.strip())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid X-User-Id header") from exc


def _optional_caller_id(raw: str | None) -> uuid.UUID | None:
    if raw is None or not raw.strip():
        return None
    return _caller_id(raw)


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/auctions/{auction_id}/evaluation")
async def auction_evaluation(auction_id: uuid.UUID, x_user_id: str | None = Header(default=None)) -> dict:
    actor_id = _caller_id(x_user_id)
    async with SessionFactory() as session:
        auction = await require_auction(session, auction_id)
        await require_auction_manager(session, auction=auction, actor_id=actor_id)
        evaluation = await load_evaluation(session, auction.id)
    return evaluation.summary()


@app.post("/auctions/{auction_id}/finalize")
async def finalize_auction(
    auction_id: uuid.UUID,
    body: FinalizeRequest,
    x_user_id: str | None = Header(default=None),
) -> dict:
    result = await finalization_service.finalize(
        auction_id,
        actor_id=_caller_id(x_user_id),
        winning_bid_id=body.winning_bid_id,
        notes=body.notes,
        skip_evaluation=body.skip_evaluation,
    )
    logger.info("[web] auction %s finalized as %s", auction_id, result.status)
    return to_payload(result)


@app.post("/auctions/{auction_id}/override")
async def override_auction_status(
    auction_id: uuid.UUID,
    body: OverrideRequest,
    x_user_id: str | None = Header(default=None),
) -> dict:
    result = await finalization_service.override_status(
        auction_id,
        actor_id=_caller_id(x_user_id),
        new_status=body.status,
        reason=body.reason,
        winning_bid_id=body.winning_bid_id,
        notes=body.notes,
    )
    return to_payload(result)


@app.get("/auctions/{auction_id}/results")
async def auction_results(auction_id: uuid.UUID, x_user_id: str | None = Header(default=None)) -> dict:
    results = await results_service.get_results(auction_id, caller_id=_optional_caller_id(x_user_id))
    return to_payload(results)


@app.get("/auctions/{auction_id}/audit-logs")
async def auction_audit_logs(auction_id: uuid.UUID, x_user_id: str | None = Header(default=None)) -> dict:
    entries = await finalization_service.get_audit_logs(auction_id, actor_id=_caller_id(x_user_id))
    return {"items": to_payload(entries), "total": len(entries)}


@app.get("/auctions/{auction_id}/management")
async def auction_management_detail(auction_id: uuid.UUID, x_user_id: str | None = Header(default=None)) -> dict:
    detail = await finalization_service.get_management_detail(auction_id, actor_id=_caller_id(x_user_id))
    return to_payload(detail)


@app.get("/auctions/{auction_id}/winner-payment")
async def winner_payment_requirements(auction_id: uuid.UUID, x_user_id: str | None = Header(default=None)) -> dict:
    actor_id = _caller_id(x_user_id)
    requirements = await winner_payment_service.get_payment_requirements(auction_id, notify=False)
    if requirements.winner_user_id != actor_id:
        async with SessionFactory() as session:
            auction = await require_auction(session, auction_id)
            actor = await get_user_by_id(session, actor_id)
        if not can_manage_auction(actor, auction):
            raise ForbiddenError("Only the winner or the auction manager can view payment requirements")
    return to_payload(requirements)


@app.post("/auctions/{auction_id}/winner-payment/initiate")
async def initiate_winner_payment(auction_id: uuid.UUID, x_user_id: str | None = Header(default=None)) -> dict:
    initiation = await winner_payment_service.initiate_winner_payment(auction_id, winner_id=_caller_id(x_user_id))
    return to_payload(initiation)


@app.post("/auctions/{auction_id}/winner-payment/verify")
async def verify_winner_payment(
    auction_id: uuid.UUID,
    body: VerifyPaymentRequest,
    x_user_id: str | None = Header(default=None),
) -> dict:
    outcome = await winner_payment_service.verify_winner_payment(
        body.transaction_id,
        auction_id=auction_id,
        actor_id=_caller_id(x_user_id),
    )
    return to_payload(outcome)


@app.post("/auctions/{auction_id}/winner-payment/default")
async def winner_payment_default(
    auction_id: uuid.UUID,
    body: PaymentDefaultRequest,
    x_user_id: str | None = Header(default=None),
) -> dict:
    outcome = await winner_payment_service.handle_winner_payment_default(
        auction_id,
        admin_id=_caller_id(x_user_id),
        offer_to_second_bidder=body.offer_to_second_bidder,
        reason=body.reason,
    )
    return to_payload(outcome)


@app.post("/auctions/{auction_id}/refunds")
async def request_refund(
    auction_id: uuid.UUID,
    body: RefundRequestBody,
    x_user_id: str | None = Header(default=None),
) -> dict:
    view = await refund_service.request_refund(auction_id, user_id=_caller_id(x_user_id), reason=body.reason)
    return to_payload(view)


@app.get("/refunds")
async def list_refunds(
    auction_id: uuid.UUID | None = None,
    status: RefundStatus | None = None,
    page: int = 1,
    limit: int = 20,
    x_user_id: str | None = Header(default=None),
) -> dict:
    result = await refund_service.list_refunds(
        actor_id=_caller_id(x_user_id),
        auction_id=auction_id,
        status=status,
        page=page,
        limit=limit,
    )
    return to_payload(result)


@app.get("/refunds/{participant_id}")
async def refund_detail(participant_id: uuid.UUID, x_user_id: str | None = Header(default=None)) -> dict:
    detail = await refund_service.get_refund_detail(participant_id, actor_id=_caller_id(x_user_id))
    return to_payload(detail)


@app.post("/refunds/{participant_id}/approve")
async def approve_refund(
    participant_id: uuid.UUID,
    body: RefundApproveBody,
    x_user_id: str | None = Header(default=None),
) -> dict:
    view = await refund_service.approve_refund(participant_id, admin_id=_caller_id(x_user_id), note=body.note)
    return to_payload(view)


@app.post("/refunds/{participant_id}/reject")
async def reject_refund(
    participant_id: uuid.UUID,
    body: RefundRejectBody,
    x_user_id: str | None = Header(default=None),
) -> dict:
    view = await refund_service.reject_refund(participant_id, admin_id=_caller_id(x_user_id), reason=body.reason)
    return to_payload(view)


@app.post("/refunds/{participant_id}/process")
async def process_refund(participant_id: uuid.UUID, x_user_id: str | None = Header(default=None)) -> dict:
    view = await refund_service.process_refund(participant_id, admin_id=_caller_id(x_user_id))
    return to_payload(view)


@app.post("/participants/{participant_id}/disqualify")
async def disqualify_participant(
    participant_id: uuid.UUID,
    body: DisqualifyBody,
    x_user_id: str | None = Header(default=None),
) -> dict:
    view = await refund_service.disqualify_participant(
        participant_id,
        reason=body.reason,
        admin_id=_caller_id(x_user_id),
        notes=body.notes,
    )
    return to_payload(view)


@app.post("/admin/refund-batch")
async def run_refund_batch(x_user_id: str | None = Header(default=None)) -> dict:
    actor_id = _caller_id(x_user_id)
    async with SessionFactory() as session:
        await require_elevated(session, actor_id=actor_id)
    result = await auto_refund_service.run_refund_batch()
    logger.info("[web] refund batch triggered by %s: %s processed", actor_id, result.processed)
    return {**to_payload(result), "processed": result.processed}


def main() -> None:
    configure_logging(settings.log_level)
    uvicorn.run("settlement.web.main:app", host=settings.web_host, port=settings.web_port, log_level="info")


if __name__ == "__main__":
    main()
