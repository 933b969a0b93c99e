"""settlement schema

Revision ID: 0001_settlement_schema
Revises:
Create Date: 2026-10-18 10:00:00
"""

from typing import Sequence

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001_settlement_schema"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None

ENUM_TYPES: dict[str, tuple[str, ...]] = {
    "user_role": ("bidder", "auctioneer", "admin", "super_admin"),
    "auction_status": ("scheduled", "live", "success", "failed", "cancelled"),
    "contract_status": ("draft", "signed", "completed", "cancelled"),
    "payment_type": ("deposit", "dossier_fee", "winning_payment", "refund"),
    "payment_status": ("pending", "completed", "failed", "refunded"),
    "refund_status": ("pending", "approved", "rejected", "processed", "auto_processed", "forfeited"),
    "disqualification_reason": (
        "no_show",
        "false_information",
        "forged_documents",
        "price_rigging",
        "auction_obstruction",
        "bid_withdrawal",
        "refused_to_sign",
        "refused_result",
        "payment_default",
        "contract_default",
        "check_in_failure",
        "late_withdrawal",
    ),
    "audit_action": (
        "auction_finalized",
        "status_override",
        "contract_signed",
        "payment_default",
        "participant_disqualified",
        "refund_approved",
        "refund_rejected",
        "refund_processed",
        "refund_auto_processed",
        "deposit_forfeited",
    ),
}

NOW = sa.text("TIMEZONE('utc', NOW())")


def _enum(name: str) -> postgresql.ENUM:
    return postgresql.ENUM(*ENUM_TYPES[name], name=name, create_type=False)


def _money(name: str, *, nullable: bool = False, zero_default: bool = False) -> sa.Column:
    return sa.Column(
        name,
        sa.Numeric(18, 2),
        nullable=nullable,
        server_default=sa.text("0") if zero_default else None,
    )


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=NOW),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=NOW),
    ]


def upgrade() -> None:
    bind = op.get_bind()
    for name in ENUM_TYPES:
        postgresql.ENUM(*ENUM_TYPES[name], name=name).create(bind, checkfirst=True)

    op.create_table(
        "users",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("full_name", sa.String(length=255), nullable=False),
        sa.Column("role", _enum("user_role"), nullable=False, server_default=sa.text("'bidder'")),
        sa.Column("tg_user_id", sa.BigInteger(), nullable=True),
        sa.Column("is_banned", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        *_timestamps(),
        sa.UniqueConstraint("email", name="uq_users_email"),
    )

    op.create_table(
        "auctions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("code", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("sale_start_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sale_end_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deposit_start_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deposit_end_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("auction_start_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("auction_end_at", sa.DateTime(timezone=True), nullable=False),
        _money("starting_price"),
        _money("bid_increment"),
        _money("reserve_price", nullable=True),
        _money("deposit_amount_required", zero_default=True),
        _money("dossier_fee", zero_default=True),
        sa.Column("commission_rate", sa.Numeric(6, 4), nullable=False, server_default=sa.text("0")),
        _money("auction_costs", zero_default=True),
        sa.Column("status", _enum("auction_status"), nullable=False, server_default=sa.text("'scheduled'")),
        sa.Column("finalized_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "owner_user_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("owner_full_name", sa.String(length=255), nullable=False),
        sa.Column("owner_email", sa.String(length=255), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("code", name="uq_auctions_code"),
        sa.CheckConstraint("starting_price > 0", name="ck_auctions_starting_price_positive"),
        sa.CheckConstraint("bid_increment > 0", name="ck_auctions_bid_increment_positive"),
    )
    op.create_index("ix_auctions_finalized_at", "auctions", ["finalized_at"], unique=False)
    op.create_index("ix_auctions_status_auction_end_at", "auctions", ["status", "auction_end_at"], unique=False)

    op.create_table(
        "payments",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column(
            "auction_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("auctions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "user_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("payment_type", _enum("payment_type"), nullable=False),
        _money("amount"),
        sa.Column("status", _enum("payment_status"), nullable=False, server_default=sa.text("'pending'")),
        sa.Column("transaction_id", sa.String(length=128), nullable=True),
        sa.Column("payment_url", sa.Text(), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("transaction_id", name="uq_payments_transaction_id"),
    )
    op.create_index("ix_payments_auction_id", "payments", ["auction_id"], unique=False)

    op.create_table(
        "participants",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column(
            "auction_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("auctions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "user_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("registered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("documents_verified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("documents_rejected_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deposit_paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rejected_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("checked_in_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("withdrawn_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("withdrawal_reason", sa.Text(), nullable=True),
        _money("deposit_amount", nullable=True),
        sa.Column(
            "deposit_payment_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("payments.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("is_disqualified", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("disqualified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("disqualified_reason", _enum("disqualification_reason"), nullable=True),
        sa.Column("refund_status", _enum("refund_status"), nullable=True),
        sa.Column("refund_requested_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refund_processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refund_note", sa.Text(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("auction_id", "user_id", name="uq_participants_auction_id_user_id"),
    )
    op.create_index("ix_participants_auction_id", "participants", ["auction_id"], unique=False)
    op.create_index("ix_participants_refund_status", "participants", ["refund_status"], unique=False)

    op.create_table(
        "bids",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column(
            "auction_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("auctions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "participant_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("participants.id", ondelete="CASCADE"),
            nullable=False,
        ),
        _money("amount"),
        sa.Column("bid_at", sa.DateTime(timezone=True), nullable=False, server_default=NOW),
        sa.Column("is_winning_bid", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("is_denied", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("denied_reason", sa.Text(), nullable=True),
        sa.Column("is_withdrawn", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("withdrawn_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("promoted_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("amount > 0", name="ck_bids_amount_positive"),
    )
    op.create_index("ix_bids_auction_id", "bids", ["auction_id"], unique=False)
    op.create_index("ix_bids_participant_id", "bids", ["participant_id"], unique=False)
    op.create_index(
        "uq_bids_auction_id_winning",
        "bids",
        ["auction_id"],
        unique=True,
        postgresql_where=sa.text("is_winning_bid"),
    )

    op.create_table(
        "contracts",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column(
            "auction_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("auctions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "winning_bid_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("bids.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column(
            "seller_user_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("seller_full_name", sa.String(length=255), nullable=False),
        sa.Column("seller_email", sa.String(length=255), nullable=False),
        sa.Column(
            "buyer_user_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        _money("price"),
        sa.Column("status", _enum("contract_status"), nullable=False, server_default=sa.text("'draft'")),
        sa.Column("signed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_reason", sa.Text(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("auction_id", name="uq_contracts_auction_id"),
    )

    op.create_table(
        "auction_audit_logs",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column(
            "auction_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("auctions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "performed_by",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("action", _enum("audit_action"), nullable=False),
        sa.Column("previous_status", sa.String(length=32), nullable=True),
        sa.Column("new_status", sa.String(length=32), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("metadata", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=NOW),
    )
    op.create_index(
        "ix_auction_audit_logs_auction_id_created_at",
        "auction_audit_logs",
        ["auction_id", "created_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_auction_audit_logs_auction_id_created_at", table_name="auction_audit_logs")
    op.drop_table("auction_audit_logs")
    op.drop_table("contracts")
    op.drop_index("uq_bids_auction_id_winning", table_name="bids")
    op.drop_index("ix_bids_participant_id", table_name="bids")
    op.drop_index("ix_bids_auction_id", table_name="bids")
    op.drop_table("bids")
    op.drop_index("ix_participants_refund_status", table_name="participants")
    op.drop_index("ix_participants_auction_id", table_name="participants")
    op.drop_table("participants")
    op.drop_index("ix_payments_auction_id", table_name="payments")
    op.drop_table("payments")
    op.drop_index("ix_auctions_status_auction_end_at", table_name="auctions")
    op.drop_index("ix_auctions_finalized_at", table_name="auctions")
    op.drop_table("auctions")
    op.drop_table("users")

    bind = op.get_bind()
    for name in reversed(tuple(ENUM_TYPES)):
        postgresql.ENUM(name=name).drop(bind, checkfirst=True)
