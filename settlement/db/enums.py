from __future__ import annotations

from enum import StrEnum


class UserRole(StrEnum):
    BIDDER = "bidder"
    AUCTIONEER = "auctioneer"
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"


class AuctionStatus(StrEnum):
    SCHEDULED = "scheduled"
    LIVE = "live"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ContractStatus(StrEnum):
    DRAFT = "draft"
    SIGNED = "signed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class PaymentType(StrEnum):
    DEPOSIT = "deposit"
    DOSSIER_FEE = "dossier_fee"
    WINNING_PAYMENT = "winning_payment"
    REFUND = "refund"


class PaymentStatus(StrEnum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class RefundStatus(StrEnum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    PROCESSED = "processed"
    AUTO_PROCESSED = "auto_processed"
    FORFEITED = "forfeited"


class DisqualificationReason(StrEnum):
    NO_SHOW = "no_show"
    FALSE_INFORMATION = "false_information"
    FORGED_DOCUMENTS = "forged_documents"
    PRICE_RIGGING = "price_rigging"
    AUCTION_OBSTRUCTION = "auction_obstruction"
    BID_WITHDRAWAL = "bid_withdrawal"
    REFUSED_TO_SIGN = "refused_to_sign"
    REFUSED_RESULT = "refused_result"
    PAYMENT_DEFAULT = "payment_default"
    CONTRACT_DEFAULT = "contract_default"
    CHECK_IN_FAILURE = "check_in_failure"
    LATE_WITHDRAWAL = "late_withdrawal"


class AuditAction(StrEnum):
    AUCTION_FINALIZED = "auction_finalized"
    STATUS_OVERRIDE = "status_override"
    CONTRACT_SIGNED = "contract_signed"
    PAYMENT_DEFAULT = "payment_default"
    PARTICIPANT_DISQUALIFIED = "participant_disqualified"
    REFUND_APPROVED = "refund_approved"
    REFUND_REJECTED = "refund_rejected"
    REFUND_PROCESSED = "refund_processed"
    REFUND_AUTO_PROCESSED = "refund_auto_processed"
    DEPOSIT_FORFEITED = "deposit_forfeited"


class ParticipantState(StrEnum):
    REGISTERED = "registered"
    PENDING_DOCUMENT_REVIEW = "pending_document_review"
    DOCUMENTS_VERIFIED = "documents_verified"
    DOCUMENTS_REJECTED = "documents_rejected"
    DEPOSIT_PAID = "deposit_paid"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"
    WITHDRAWN = "withdrawn"
    CHECKED_IN = "checked_in"
    UNKNOWN = "unknown"


TERMINAL_AUCTION_STATUSES = frozenset(
    {AuctionStatus.SUCCESS, AuctionStatus.FAILED, AuctionStatus.CANCELLED}
)
ELEVATED_ROLES = frozenset({UserRole.AUCTIONEER, UserRole.ADMIN, UserRole.SUPER_ADMIN})
