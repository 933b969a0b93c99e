from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import expression

from settlement.db.base import Base, TimestampMixin, UTCDateTime, utc_now
from settlement.db.enums import (
    AuctionStatus,
    AuditAction,
    ContractStatus,
    DisqualificationReason,
    PaymentStatus,
    PaymentType,
    RefundStatus,
    UserRole,
)

Money = Numeric(18, 2)
JsonPayload = JSON().with_variant(JSONB(), "postgresql")


def _enum_values(enum_cls) -> list[str]:
    return [item.value for item in enum_cls]


def _enum(enum_cls, name: str) -> Enum:
    return Enum(enum_cls, name=name, values_callable=_enum_values)


class User(Base, TimestampMixin):
    __tablename__ = "users"
    __table_args__ = (UniqueConstraint("email", name="uq_users_email"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[UserRole] = mapped_column(
        _enum(UserRole, "user_role"), nullable=False, default=UserRole.BIDDER
    )
    tg_user_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    is_banned: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=expression.false()
    )


class Auction(Base, TimestampMixin):
    __tablename__ = "auctions"
    __table_args__ = (
        UniqueConstraint("code", name="uq_auctions_code"),
        CheckConstraint("starting_price > 0", name="starting_price_positive"),
        CheckConstraint("bid_increment > 0", name="bid_increment_positive"),
        Index("ix_auctions_status_auction_end_at", "status", "auction_end_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    code: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    sale_start_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    sale_end_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    deposit_start_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    deposit_end_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    auction_start_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    auction_end_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    starting_price: Mapped[Decimal] = mapped_column(Money, nullable=False)
    bid_increment: Mapped[Decimal] = mapped_column(Money, nullable=False)
    reserve_price: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    deposit_amount_required: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    dossier_fee: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    commission_rate: Mapped[Decimal] = mapped_column(Numeric(6, 4), nullable=False, default=Decimal("0"))
    auction_costs: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    status: Mapped[AuctionStatus] = mapped_column(
        _enum(AuctionStatus, "auction_status"),
        nullable=False,
        default=AuctionStatus.SCHEDULED,
        server_default=text("'scheduled'"),
    )
    finalized_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True, index=True)
    owner_user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="RESTRICT"), nullable=False
    )
    owner_full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    owner_email: Mapped[str] = mapped_column(String(255), nullable=False)


class Participant(Base, TimestampMixin):
    __tablename__ = "participants"
    __table_args__ = (UniqueConstraint("auction_id", "user_id", name="uq_participants_auction_id_user_id"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    auction_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("auctions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    registered_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    submitted_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    documents_verified_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    documents_rejected_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    deposit_paid_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    confirmed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    rejected_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    checked_in_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    withdrawn_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    withdrawal_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    deposit_amount: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    deposit_payment_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("payments.id", ondelete="SET NULL"), nullable=True
    )
    is_disqualified: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=expression.false()
    )
    disqualified_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    disqualified_reason: Mapped[DisqualificationReason | None] = mapped_column(
        _enum(DisqualificationReason, "disqualification_reason"), nullable=True
    )
    refund_status: Mapped[RefundStatus | None] = mapped_column(
        _enum(RefundStatus, "refund_status"), nullable=True, index=True
    )
    refund_requested_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    refund_processed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    refund_note: Mapped[str | None] = mapped_column(Text, nullable=True)


class Bid(Base):
    __tablename__ = "bids"
    __table_args__ = (
        CheckConstraint("amount > 0", name="amount_positive"),
        Index(
            "uq_bids_auction_id_winning",
            "auction_id",
            unique=True,
            postgresql_where=text("is_winning_bid"),
            sqlite_where=text("is_winning_bid = 1"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    auction_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("auctions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    participant_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("participants.id", ondelete="CASCADE"), nullable=False, index=True
    )
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    bid_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utc_now)
    is_winning_bid: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=expression.false()
    )
    is_denied: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=expression.false()
    )
    denied_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_withdrawn: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=expression.false()
    )
    withdrawn_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    promoted_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)


class Contract(Base, TimestampMixin):
    __tablename__ = "contracts"
    __table_args__ = (UniqueConstraint("auction_id", name="uq_contracts_auction_id"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    auction_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("auctions.id", ondelete="CASCADE"), nullable=False
    )
    winning_bid_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("bids.id", ondelete="RESTRICT"), nullable=False
    )
    seller_user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="RESTRICT"), nullable=False
    )
    seller_full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    seller_email: Mapped[str] = mapped_column(String(255), nullable=False)
    buyer_user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="RESTRICT"), nullable=False
    )
    price: Mapped[Decimal] = mapped_column(Money, nullable=False)
    status: Mapped[ContractStatus] = mapped_column(
        _enum(ContractStatus, "contract_status"),
        nullable=False,
        default=ContractStatus.DRAFT,
        server_default=text("'draft'"),
    )
    signed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    cancel_reason: Mapped[str | None] = mapped_column(Text, nullable=True)


class Payment(Base, TimestampMixin):
    __tablename__ = "payments"
    __table_args__ = (UniqueConstraint("transaction_id", name="uq_payments_transaction_id"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    auction_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("auctions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    payment_type: Mapped[PaymentType] = mapped_column(_enum(PaymentType, "payment_type"), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    status: Mapped[PaymentStatus] = mapped_column(
        _enum(PaymentStatus, "payment_status"),
        nullable=False,
        default=PaymentStatus.PENDING,
        server_default=text("'pending'"),
    )
    transaction_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    payment_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    payload: Mapped[dict | None] = mapped_column(JsonPayload, nullable=True)


class AuditLogEntry(Base):
    __tablename__ = "auction_audit_logs"
    __table_args__ = (Index("ix_auction_audit_logs_auction_id_created_at", "auction_id", "created_at"),)

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    auction_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("auctions.id", ondelete="CASCADE"), nullable=False
    )
    performed_by: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    action: Mapped[AuditAction] = mapped_column(_enum(AuditAction, "audit_action"), nullable=False)
    previous_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    new_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    payload: Mapped[dict | None] = mapped_column("metadata", JsonPayload, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utc_now)
