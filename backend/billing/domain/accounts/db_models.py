from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, DateTime, Index, String, func
from sqlalchemy.orm import Mapped, declared_attr, mapped_column

from billing.infra.db import ID_LENGTH, MONEY, Base, new_id


class BillableAccountMixin:
    """Columns shared by every account that owns a ledger and a running balance."""

    id: Mapped[str] = mapped_column(String(ID_LENGTH), primary_key=True, default=new_id)
    name: Mapped[str | None] = mapped_column(String(255))
    email: Mapped[str | None] = mapped_column(String(255))
    total_owed: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0.00"))
    provider_customer_id: Mapped[str | None] = mapped_column(String(255))
    provider_subscription_id: Mapped[str | None] = mapped_column(String(255))
    provider_default_payment_method_id: Mapped[str | None] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    @declared_attr.directive
    def __table_args__(cls):
        table = cls.__tablename__
        return (
            Index(f"ix_{table}_provider_customer_id", "provider_customer_id"),
            Index(f"ix_{table}_provider_subscription_id", "provider_subscription_id"),
        )


class Member(BillableAccountMixin, Base):
    __tablename__ = "members"

    membership_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


class Guest(BillableAccountMixin, Base):
    __tablename__ = "guests"


class MembershipPlan(Base):
    __tablename__ = "membership_plans"

    id: Mapped[str] = mapped_column(String(ID_LENGTH), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    standard_amount: Mapped[Decimal | None] = mapped_column(MONEY)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
