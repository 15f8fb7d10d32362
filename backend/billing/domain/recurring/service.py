"""Lifecycle of subscription-backed recurring payments.

absent -> active -> (payoff progress synced from the ledger) -> terminated.
A plan is keyed by its provider subscription id; every transition is an upsert or a
single-row update on that key so replayed notifications converge on the same row.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any

from billing.domain.accounts.service import AccountKind, account_ref
from billing.domain.errors import ProviderCallFailed, RecurringPaymentNotFound
from billing.domain.ledger.service import PAYMENT
from billing.domain.recurring import statuses
from billing.infra.entity_store import DuplicateKeyError, EntityStore
from billing.infra.metrics import metrics
from billing.infra.stripe_client import call_stripe_client_method
from billing.infra.stripe_idempotency import make_stripe_idempotency_key
from billing.shared.clock import add_month, billing_today, parse_iso_date
from billing.shared.money import ZERO, cents_to_amount, to_amount

logger = logging.getLogger(__name__)


@dataclass
class PayoffProgress:
    recurring_payment: Any
    previous_remaining: Any
    remaining: Any
    completed: bool


async def find_by_subscription(store: EntityStore, subscription_id: str | None) -> Any | None:
    if not subscription_id:
        return None
    matches = await store.filter("RecurringPayment", {"provider_subscription_id": str(subscription_id)}, limit=1)
    return matches[0] if matches else None


async def get_recurring_payment(
    store: EntityStore, *, recurring_payment_id: str | None = None, subscription_id: str | None = None
) -> Any:
    record = None
    if recurring_payment_id:
        record = await store.get("RecurringPayment", str(recurring_payment_id))
    elif subscription_id:
        record = await find_by_subscription(store, subscription_id)
    if record is None:
        raise RecurringPaymentNotFound(detail="Recurring payment not found", title="Recurring payment not found")
    return record


async def upsert_from_checkout(
    store: EntityStore,
    *,
    kind: AccountKind,
    account_id: str,
    subscription_id: str,
    payment_type: str,
    amount_cents: int,
    account_name: str | None = None,
    customer_id: str | None = None,
    billing_anchor: str | None = None,
    payoff_total_cents: int | None = None,
    today: date | None = None,
) -> Any:
    """Create the plan for a subscription, or refresh it in place on replay.

    Payoff progress already recorded on an existing row is never reset.
    """
    today = today or billing_today()
    next_charge = parse_iso_date(billing_anchor) or add_month(today)
    values: dict[str, Any] = {
        "account_kind": AccountKind(kind).value,
        "account_id": str(account_id),
        "account_name": account_name,
        "payment_type": payment_type,
        "amount_per_month": cents_to_amount(amount_cents),
        "is_active": True,
        "next_charge_date": next_charge,
        "provider_customer_id": customer_id,
    }
    payoff_total = (
        cents_to_amount(payoff_total_cents)
        if statuses.is_payoff(payment_type) and payoff_total_cents
        else None
    )

    existing = await find_by_subscription(store, subscription_id)
    if existing is None:
        create_values = {
            **values,
            "start_date": today,
            "provider_subscription_id": str(subscription_id),
            "total_amount": payoff_total,
            "remaining_amount": payoff_total,
        }
        try:
            record = await store.create("RecurringPayment", create_values)
        except DuplicateKeyError:
            # A concurrent delivery won the insert; fall through to the update.
            existing = await find_by_subscription(store, subscription_id)
            if existing is None:
                raise
        else:
            metrics.record_recurring_transition("created")
            logger.info(
                "recurring_payment_created",
                extra={
                    "extra": {
                        "recurring_payment_id": record.id,
                        "subscription_id": subscription_id,
                        "payment_type": payment_type,
                    }
                },
            )
            return record

    if payoff_total is not None and existing.total_amount is None:
        values["total_amount"] = payoff_total
        values["remaining_amount"] = payoff_total
    record = await store.update("RecurringPayment", existing.id, values)
    metrics.record_recurring_transition("updated")
    logger.info(
        "recurring_payment_updated",
        extra={"extra": {"recurring_payment_id": record.id, "subscription_id": subscription_id}},
    )
    return record


async def paid_toward_plan(store: EntityStore, record: Any) -> Decimal:
    """Sum of ledger payments carrying the plan's subscription id."""
    ref = account_ref(record.account_kind)
    payments = await store.filter(
        ref.transaction_entity,
        {"provider_subscription_id": record.provider_subscription_id, "type": PAYMENT},
    )
    return sum((to_amount(entry.amount) for entry in payments), ZERO)


async def sync_payoff_progress(
    store: EntityStore,
    subscription_id: str | None,
    *,
    today: date | None = None,
) -> PayoffProgress | None:
    """Re-derive a payoff plan's remaining amount from the ledger.

    ``remaining = total - payments recorded for the subscription``, floored at
    zero. Every delivery may call this: an unchanged ledger leaves the row
    alone, and ``completed`` is only reported on the transition that
    deactivates the plan.
    """
    record = await find_by_subscription(store, subscription_id)
    if record is None or not statuses.is_payoff(record.payment_type) or record.total_amount is None:
        return None
    total = to_amount(record.total_amount)
    previous = to_amount(record.remaining_amount) if record.remaining_amount is not None else total
    remaining = max(ZERO, total - await paid_toward_plan(store, record))
    completed = remaining <= ZERO and bool(record.is_active)

    patch: dict[str, Any] = {}
    if remaining != previous:
        patch["remaining_amount"] = remaining
    if completed:
        patch["is_active"] = False
        patch["ended_date"] = today or billing_today()
    if not patch:
        return PayoffProgress(record, previous, remaining, completed=False)

    record = await store.update("RecurringPayment", record.id, patch)
    if completed:
        metrics.record_recurring_transition("payoff_completed")
    elif remaining < previous:
        metrics.record_recurring_transition("payoff_decrement")
    logger.info(
        "recurring_payment_completed" if completed else "recurring_payment_progress_synced",
        extra={
            "extra": {
                "recurring_payment_id": record.id,
                "subscription_id": subscription_id,
                "previous_remaining": str(previous),
                "remaining": str(remaining),
            }
        },
    )
    return PayoffProgress(record, previous, remaining, completed=completed)


async def cancel_at_provider(stripe_client: Any, subscription_id: str) -> Any:
    return await call_stripe_client_method(
        stripe_client,
        "cancel_subscription",
        subscription_id,
        idempotency_key=make_stripe_idempotency_key("cancel_subscription", subscription_id=subscription_id),
    )


async def cancel_at_provider_best_effort(stripe_client: Any, subscription_id: str | None) -> bool:
    """Cancel after local state already reflects completion; failures only log."""
    if not subscription_id:
        return False
    try:
        await cancel_at_provider(stripe_client, subscription_id)
    except ProviderCallFailed as exc:
        logger.warning(
            "recurring_payment_provider_cancel_failed",
            extra={"extra": {"subscription_id": subscription_id, "reason": exc.detail}},
        )
        return False
    logger.info("recurring_payment_provider_canceled", extra={"extra": {"subscription_id": subscription_id}})
    return True


async def deactivate(store: EntityStore, record: Any, *, today: date | None = None) -> Any:
    updated = await store.update(
        "RecurringPayment",
        record.id,
        {"is_active": False, "ended_date": today or billing_today()},
    )
    metrics.record_recurring_transition("terminated")
    logger.info(
        "recurring_payment_terminated",
        extra={
            "extra": {
                "recurring_payment_id": record.id,
                "subscription_id": record.provider_subscription_id,
            }
        },
    )
    return updated


async def terminate_by_subscription(
    store: EntityStore, subscription_id: str | None, *, today: date | None = None
) -> Any | None:
    """Provider-side deletion. Unknown subscriptions are a no-op."""
    record = await find_by_subscription(store, subscription_id)
    if record is None:
        logger.info(
            "recurring_payment_terminate_unknown",
            extra={"extra": {"subscription_id": subscription_id}},
        )
        return None
    return await deactivate(store, record, today=today)


async def settle_payoff(
    store: EntityStore, stripe_client: Any, subscription_id: str | None
) -> PayoffProgress | None:
    progress = await sync_payoff_progress(store, subscription_id)
    if progress is not None and progress.completed:
        await cancel_at_provider_best_effort(stripe_client, subscription_id)
    return progress
