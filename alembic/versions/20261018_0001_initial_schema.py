"""initial settlement engine schema

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = "0001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


# Shared by three tables; created once explicitly.
NETWORK = postgresql.ENUM("ETHEREUM", "POLYGON", name="network", create_type=False)


def upgrade() -> None:
    sa.Enum("ETHEREUM", "POLYGON", name="network").create(op.get_bind(), checkfirst=True)

    op.create_table(
        "merchants",
        *_timestamps(),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False, unique=True),
        sa.Column(
            "status",
            sa.Enum("PENDING_VERIFICATION", "ACTIVE", "SUSPENDED", "CLOSED", name="merchantstatus"),
            nullable=False,
            index=True,
        ),
        sa.Column("fee_rate", sa.Numeric(6, 4), nullable=True),
        sa.Column("settlement_address", sa.String(length=128), nullable=True),
        sa.Column(
            "settlement_schedule",
            sa.Enum("DAILY", "WEEKLY", "MONTHLY", name="settlementschedule"),
            nullable=False,
        ),
        sa.Column("webhook_url", sa.String(length=512), nullable=True),
        sa.Column("webhook_secret", sa.String(length=128), nullable=True),
        sa.CheckConstraint(
            "fee_rate IS NULL OR (fee_rate >= 0 AND fee_rate <= 0.05)",
            name="ck_merchant_fee_rate_bounds",
        ),
    )

    op.create_table(
        "payments",
        *_timestamps(),
        sa.Column("public_id", sa.String(length=36), nullable=False, unique=True, index=True),
        sa.Column("merchant_id", sa.Integer, sa.ForeignKey("merchants.id"), nullable=False, index=True),
        sa.Column("external_id", sa.String(length=128), nullable=True),
        sa.Column("amount", sa.Numeric(18, 6), nullable=False),
        sa.Column("currency", sa.Enum("USDC", name="currency"), nullable=False),
        sa.Column("network", NETWORK, nullable=False),
        sa.Column("deposit_address", sa.String(length=128), nullable=False, unique=True),
        sa.Column(
            "status",
            sa.Enum(
                "PENDING", "PROCESSING", "COMPLETED", "CANCELLED", "EXPIRED", "FAILED", name="paymentstatus"
            ),
            nullable=False,
        ),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("payment_url", sa.String(length=512), nullable=True),
        sa.Column("qr_code_data", sa.Text, nullable=True),
        sa.Column("description", sa.String(length=500), nullable=True),
        sa.Column("customer_email", sa.String(length=255), nullable=True),
        sa.Column("metadata_json", sa.JSON, nullable=True),
        sa.CheckConstraint("amount > 0", name="ck_payment_positive_amount"),
    )
    op.create_index("ix_payments_status_expires", "payments", ["status", "expires_at"])
    op.create_index(
        "ix_payments_merchant_status_completed", "payments", ["merchant_id", "status", "completed_at"]
    )

    op.create_table(
        "chain_transactions",
        *_timestamps(),
        sa.Column("tx_hash", sa.String(length=100), nullable=False, unique=True, index=True),
        sa.Column("network", NETWORK, nullable=False),
        sa.Column("payment_id", sa.Integer, sa.ForeignKey("payments.id"), nullable=True, index=True),
        sa.Column("from_address", sa.String(length=128), nullable=True),
        sa.Column("to_address", sa.String(length=128), nullable=True),
        sa.Column("amount", sa.Numeric(18, 6), nullable=False),
        sa.Column("amount_base_units", sa.String(length=78), nullable=False),
        sa.Column("block_number", sa.Integer, nullable=True),
        sa.Column("confirmation_count", sa.Integer, nullable=False),
        sa.Column(
            "status",
            sa.Enum("PENDING", "CONFIRMED", "FAILED", name="transactionstatus"),
            nullable=False,
        ),
        sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text, nullable=True),
    )
    op.create_index("ix_chain_transactions_status", "chain_transactions", ["status"])

    op.create_table(
        "settlements",
        *_timestamps(),
        sa.Column("public_id", sa.String(length=36), nullable=False, unique=True, index=True),
        sa.Column("merchant_id", sa.Integer, sa.ForeignKey("merchants.id"), nullable=False, index=True),
        sa.Column("period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("period_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("gross_amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("fee_amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("net_amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("fee_rate", sa.Numeric(6, 4), nullable=False),
        sa.Column("transaction_count", sa.Integer, nullable=False),
        sa.Column("network", NETWORK, nullable=False),
        sa.Column(
            "status",
            sa.Enum("PENDING", "PROCESSING", "COMPLETED", "FAILED", name="settlementstatus"),
            nullable=False,
        ),
        sa.Column("payout_tx_hash", sa.String(length=100), nullable=True, unique=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("links_released_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("net_amount > 0", name="ck_settlement_positive_net"),
        sa.CheckConstraint("fee_amount >= 0", name="ck_settlement_fee_non_negative"),
        sa.CheckConstraint("period_start < period_end", name="ck_settlement_period_order"),
    )
    op.create_index("ix_settlements_merchant_status", "settlements", ["merchant_id", "status"])

    op.create_table(
        "settlement_payments",
        *_timestamps(),
        sa.Column("settlement_id", sa.Integer, sa.ForeignKey("settlements.id"), nullable=False, index=True),
        sa.Column("payment_id", sa.Integer, sa.ForeignKey("payments.id"), nullable=False),
        sa.UniqueConstraint("payment_id", name="uq_settlement_payments_payment_id"),
    )

    op.create_table(
        "webhook_deliveries",
        *_timestamps(),
        sa.Column("merchant_id", sa.Integer, sa.ForeignKey("merchants.id"), nullable=False, index=True),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("resource_id", sa.String(length=64), nullable=True),
        sa.Column("payload_json", sa.JSON, nullable=False),
        sa.Column("signature", sa.String(length=128), nullable=False),
        sa.Column(
            "status",
            sa.Enum("PENDING", "DELIVERED", "FAILED", name="webhookdeliverystatus"),
            nullable=False,
        ),
        sa.Column("response_status", sa.Integer, nullable=True),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("attempted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_webhook_deliveries_merchant_event", "webhook_deliveries", ["merchant_id", "event_type"]
    )

    op.create_table(
        "audit_logs",
        *_timestamps(),
        sa.Column("actor", sa.String(length=128), nullable=False),
        sa.Column("action", sa.String(length=64), nullable=False, index=True),
        sa.Column("entity", sa.String(length=64), nullable=False),
        sa.Column("entity_id", sa.Integer, nullable=False),
        sa.Column("data_json", sa.JSON, nullable=False),
        sa.Column("at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_audit_logs_entity", "audit_logs", ["entity", "entity_id"])

    op.create_table(
        "scheduler_locks",
        *_timestamps(),
        sa.Column("name", sa.String(length=64), nullable=False, unique=True),
        sa.Column("owner", sa.String(length=128), nullable=False),
        sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("heartbeat_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("scheduler_locks")
    op.drop_index("ix_audit_logs_entity", table_name="audit_logs")
    op.drop_table("audit_logs")
    op.drop_index("ix_webhook_deliveries_merchant_event", table_name="webhook_deliveries")
    op.drop_table("webhook_deliveries")
    op.drop_table("settlement_payments")
    op.drop_index("ix_settlements_merchant_status", table_name="settlements")
    op.drop_table("settlements")
    op.drop_index("ix_chain_transactions_status", table_name="chain_transactions")
    op.drop_table("chain_transactions")
    op.drop_index("ix_payments_merchant_status_completed", table_name="payments")
    op.drop_index("ix_payments_status_expires", table_name="payments")
    op.drop_table("payments")
    op.drop_table("merchants")
    sa.Enum("ETHEREUM", "POLYGON", name="network").drop(op.get_bind(), checkfirst=True)
