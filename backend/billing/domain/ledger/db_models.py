from __future__ import annotations

import datetime as dt
from decimal import Decimal

from sqlalchemy import Date, DateTime, Index, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, declared_attr, mapped_column

from billing.infra.db import ID_LENGTH, MONEY, Base, new_id


class LedgerTransactionMixin:
    """Charge/payment ledger row.

    The three unique constraints are the write-side idempotency keys: one row per
    provider invoice and type, one row per provider payment and type, and one
    scheduler charge per account and month. NULL columns never collide.
    """

    id: Mapped[str] = mapped_column(String(ID_LENGTH), primary_key=True, default=new_id)
    account_id: Mapped[str] = mapped_column(String(ID_LENGTH), nullable=False)
    type: Mapped[str] = mapped_column(String(16), nullable=False)
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    description: Mapped[str | None] = mapped_column(String(255))
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    provider: Mapped[str] = mapped_column(String(16), nullable=False, default="system")
    provider_invoice_id: Mapped[str | None] = mapped_column(String(255))
    provider_payment_id: Mapped[str | None] = mapped_column(String(255))
    provider_subscription_id: Mapped[str | None] = mapped_column(String(255))
    provider_customer_id: Mapped[str | None] = mapped_column(String(255))
    monthly_key: Mapped[str | None] = mapped_column(String(7))
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    @declared_attr.directive
    def __table_args__(cls):
        table = cls.__tablename__
        return (
            UniqueConstraint("provider_invoice_id", "type", name=f"uq_{table}_invoice_type"),
            UniqueConstraint("provider_payment_id", "type", name=f"uq_{table}_payment_type"),
            UniqueConstraint("account_id", "monthly_key", name=f"uq_{table}_account_month"),
            Index(f"ix_{table}_account_date", "account_id", "date"),
        )


class MemberTransaction(LedgerTransactionMixin, Base):
    __tablename__ = "member_transactions"


class GuestTransaction(LedgerTransactionMixin, Base):
    __tablename__ = "guest_transactions"
