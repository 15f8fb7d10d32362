from __future__ import annotations

from datetime import date
from decimal import Decimal

from sqlalchemy import Boolean, Date, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from billing.infra.db import ID_LENGTH, MONEY, Base, new_id


class RecurringPayment(Base):
    __tablename__ = "recurring_payments"

    id: Mapped[str] = mapped_column(String(ID_LENGTH), primary_key=True, default=new_id)
    account_kind: Mapped[str] = mapped_column(String(16), nullable=False)
    account_id: Mapped[str] = mapped_column(String(ID_LENGTH), nullable=False)
    account_name: Mapped[str | None] = mapped_column(String(255))
    payment_type: Mapped[str] = mapped_column(String(32), nullable=False)
    amount_per_month: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    next_charge_date: Mapped[date | None] = mapped_column(Date)
    provider_subscription_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    provider_customer_id: Mapped[str | None] = mapped_column(String(255))
    total_amount: Mapped[Decimal | None] = mapped_column(MONEY)
    remaining_amount: Mapped[Decimal | None] = mapped_column(MONEY)
    ended_date: Mapped[date | None] = mapped_column(Date)

    __table_args__ = (
        Index("ix_recurring_payments_account", "account_kind", "account_id"),
    )
