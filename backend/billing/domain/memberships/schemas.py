"""Admin request/response schemas for membership subscriptions and balances."""

from __future__ import annotations

from decimal import Decimal

from pydantic import BaseModel, Field, field_validator


class CancelSubscriptionRequest(BaseModel):
    recurring_payment_id: str | None = None
    subscription_id: str | None = None


class CancelSubscriptionResponse(BaseModel):
    success: bool = True
    recurring_payment_id: str
    subscription_id: str


class BulkActivateRequest(BaseModel):
    member_ids: list[str] = Field(..., min_length=1)
    amount_per_month: Decimal | None = Field(None, gt=0)


class MemberOutcome(BaseModel):
    id: str
    name: str
    message: str | None = None


class BulkActivateResponse(BaseModel):
    activated: list[MemberOutcome]
    already_active: list[MemberOutcome]
    errors: list[MemberOutcome]


class BalanceResponse(BaseModel):
    account_kind: str
    account_id: str
    previous: Decimal
    total_owed: Decimal


class MonthlyChargeRunRequest(BaseModel):
    time_zone: str | None = None
    batch_limit: int | None = Field(None, ge=1)

    @field_validator("time_zone")
    @classmethod
    def validate_time_zone(cls, value: str | None) -> str | None:
        if value is None:
            return value
        from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown time zone: {value}") from exc
        return value


class MonthlyChargeRunResponse(BaseModel):
    charged: int
    skipped: int
    errors: list[dict[str, str]]
    reason: str | None = None
