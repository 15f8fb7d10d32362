"""initial billing schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-01 00:00:00
"""
from alembic import op
import sqlalchemy as sa

revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None

MONEY = sa.Numeric(12, 2)


def _account_columns() -> list[sa.Column]:
    return [
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("name", sa.String(length=255)),
        sa.Column("email", sa.String(length=255)),
        sa.Column("total_owed", MONEY, nullable=False, server_default="0"),
        sa.Column("provider_customer_id", sa.String(length=255)),
        sa.Column("provider_subscription_id", sa.String(length=255)),
        sa.Column("provider_default_payment_method_id", sa.String(length=255)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def _ledger_table(name: str) -> None:
    op.create_table(
        name,
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("account_id", sa.String(length=36), nullable=False),
        sa.Column("type", sa.String(length=16), nullable=False),
        sa.Column("amount", MONEY, nullable=False),
        sa.Column("description", sa.String(length=255)),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("provider", sa.String(length=16), nullable=False, server_default="system"),
        sa.Column("provider_invoice_id", sa.String(length=255)),
        sa.Column("provider_payment_id", sa.String(length=255)),
        sa.Column("provider_subscription_id", sa.String(length=255)),
        sa.Column("provider_customer_id", sa.String(length=255)),
        sa.Column("monthly_key", sa.String(length=7)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("provider_invoice_id", "type", name=f"uq_{name}_invoice_type"),
        sa.UniqueConstraint("provider_payment_id", "type", name=f"uq_{name}_payment_type"),
        sa.UniqueConstraint("account_id", "monthly_key", name=f"uq_{name}_account_month"),
    )
    op.create_index(f"ix_{name}_account_date", name, ["account_id", "date"])


def upgrade() -> None:
    op.create_table(
        "members",
        *_account_columns(),
        sa.Column("membership_active", sa.Boolean(), nullable=False, server_default=sa.false()),
    )
    op.create_table("guests", *_account_columns())
    for table in ("members", "guests"):
        op.create_index(f"ix_{table}_provider_customer_id", table, ["provider_customer_id"])
        op.create_index(f"ix_{table}_provider_subscription_id", table, ["provider_subscription_id"])

    op.create_table(
        "membership_plans",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("standard_amount", MONEY),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    _ledger_table("member_transactions")
    _ledger_table("guest_transactions")

    op.create_table(
        "recurring_payments",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("account_kind", sa.String(length=16), nullable=False),
        sa.Column("account_id", sa.String(length=36), nullable=False),
        sa.Column("account_name", sa.String(length=255)),
        sa.Column("payment_type", sa.String(length=32), nullable=False),
        sa.Column("amount_per_month", MONEY, nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("next_charge_date", sa.Date()),
        sa.Column("provider_subscription_id", sa.String(length=255), nullable=False, unique=True),
        sa.Column("provider_customer_id", sa.String(length=255)),
        sa.Column("total_amount", MONEY),
        sa.Column("remaining_amount", MONEY),
        sa.Column("ended_date", sa.Date()),
    )
    op.create_index("ix_recurring_payments_account", "recurring_payments", ["account_kind", "account_id"])

    op.create_table(
        "processed_events",
        sa.Column("event_id", sa.String(length=255), primary_key=True),
        sa.Column("event_type", sa.String(length=128)),
        sa.Column("payload_hash", sa.String(length=128), nullable=False),
        sa.Column("event_created_at", sa.DateTime(timezone=True)),
        sa.Column("received_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_processed_events_event_type", "processed_events", ["event_type"])

    op.create_table(
        "job_heartbeats",
        sa.Column("name", sa.String(length=64), primary_key=True),
        sa.Column("runner_id", sa.String(length=128)),
        sa.Column("last_heartbeat", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("last_success_at", sa.DateTime(timezone=True)),
        sa.Column("last_error", sa.String(length=255)),
        sa.Column("last_error_at", sa.DateTime(timezone=True)),
        sa.Column("consecutive_failures", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_summary", sa.JSON()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("job_heartbeats")
    op.drop_index("ix_processed_events_event_type", table_name="processed_events")
    op.drop_table("processed_events")
    op.drop_index("ix_recurring_payments_account", table_name="recurring_payments")
    op.drop_table("recurring_payments")
    for name in ("guest_transactions", "member_transactions"):
        op.drop_index(f"ix_{name}_account_date", table_name=name)
        op.drop_table(name)
    op.drop_table("membership_plans")
    for table in ("guests", "members"):
        op.drop_index(f"ix_{table}_provider_subscription_id", table_name=table)
        op.drop_index(f"ix_{table}_provider_customer_id", table_name=table)
        op.drop_table(table)
