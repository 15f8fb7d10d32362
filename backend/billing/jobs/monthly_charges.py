"""Monthly membership charge run.

One charge per active member per billing month. The structured key is the
``(account_id, monthly_key)`` unique constraint on the ledger; months already
billed through a Stripe subscription are recognised by their description and
date so a member is never charged twice for the same month.
"""

from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any

from billing.domain.accounts.service import AccountKind, apply_delta
from billing.domain.errors import AccountNotFound
from billing.domain.ledger.service import (
    CHARGE,
    MONTHLY_MEMBERSHIP_PREFIX,
    PROVIDER_SYSTEM,
    UNPAID_MONTHLY_MEMBERSHIP_PREFIX,
)
from billing.domain.memberships.service import current_plan_amount_cents
from billing.infra.entity_store import EntityStore
from billing.infra.metrics import metrics
from billing.settings import settings
from billing.shared.clock import billing_now
from billing.shared.money import cents_to_amount
from billing.shared.stripe_objects import month_label

logger = logging.getLogger(__name__)

JOB_NAME = "monthly-membership-charges"
BILLED_PREFIXES = (MONTHLY_MEMBERSHIP_PREFIX, UNPAID_MONTHLY_MEMBERSHIP_PREFIX)


def month_key(value: date) -> str:
    return f"{value.year:04d}-{value.month:02d}"


async def _already_billed(store: EntityStore, member_id: str, key: str, month_start: date) -> bool:
    keyed = await store.filter("Transaction", {"account_id": member_id, "monthly_key": key}, limit=1)
    if keyed:
        return True
    charges = await store.filter("Transaction", {"account_id": member_id, "type": CHARGE}, sort="-date", limit=200)
    for charge in charges:
        if charge.date.year != month_start.year or charge.date.month != month_start.month:
            continue
        if (charge.description or "").startswith(BILLED_PREFIXES):
            return True
    return False


async def run_monthly_membership_charges(
    store: EntityStore,
    *,
    now: datetime | None = None,
    time_zone: str | None = None,
    batch_limit: int | None = None,
) -> dict[str, Any]:
    amount_cents = await current_plan_amount_cents(store)
    if amount_cents <= 0:
        logger.info("monthly_charges_skipped", extra={"extra": {"reason": "no_plan"}})
        return {"charged": 0, "skipped": 0, "errors": [], "reason": "no_plan"}
    amount = cents_to_amount(amount_cents)

    current = now or billing_now(time_zone)
    month_start = date(current.year, current.month, 1)
    key = month_key(month_start)
    description = f"{MONTHLY_MEMBERSHIP_PREFIX} - {month_label(month_start)}"

    members = await store.filter(
        "Member",
        {"membership_active": True},
        sort="created_at",
        limit=batch_limit or settings.monthly_charge_batch_limit,
    )
    charged = 0
    skipped = 0
    errors: list[dict[str, str]] = []
    for member in members:
        if await _already_billed(store, member.id, key, month_start):
            skipped += 1
            continue
        created = await store.create_once(
            "Transaction",
            {
                "account_id": member.id,
                "type": CHARGE,
                "amount": amount,
                "description": description,
                "date": month_start,
                "provider": PROVIDER_SYSTEM,
                "monthly_key": key,
            },
        )
        if created is None:
            # A concurrent run inserted this month's charge first.
            skipped += 1
            continue
        metrics.record_ledger_write(AccountKind.MEMBER.value, CHARGE, "created")
        try:
            await apply_delta(store, AccountKind.MEMBER, member.id, amount)
        except AccountNotFound as exc:
            logger.warning(
                "monthly_charge_account_missing",
                extra={"extra": {"member_id": member.id, "month": key}},
            )
            errors.append({"member_id": member.id, "message": exc.detail})
            continue
        charged += 1

    logger.info(
        "monthly_charges_complete",
        extra={"extra": {"month": key, "charged": charged, "skipped": skipped, "errors": len(errors)}},
    )
    return {"charged": charged, "skipped": skipped, "errors": errors}
