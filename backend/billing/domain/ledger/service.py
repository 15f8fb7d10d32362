from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from typing import Any

from billing.domain.accounts.service import AccountKind, BalanceChange, account_ref, apply_delta
from billing.domain.recurring import statuses
from billing.infra.entity_store import EntityStore, RecordNotFoundError
from billing.infra.metrics import metrics
from billing.shared.money import ZERO, cents_to_amount, to_amount
from billing.shared.stripe_objects import month_label

logger = logging.getLogger(__name__)

CHARGE = "charge"
PAYMENT = "payment"
TRANSACTION_TYPES = {CHARGE, PAYMENT}

PROVIDER_SYSTEM = "system"
PROVIDER_PROCESSOR = "processor"

MONTHLY_MEMBERSHIP_PREFIX = "Monthly Membership"
UNPAID_MONTHLY_MEMBERSHIP_PREFIX = "Unpaid Monthly Membership"


class TransactionNotFound(RecordNotFoundError):
    pass


@dataclass
class LedgerWrite:
    charge: Any | None = None
    payment: Any | None = None
    balance: BalanceChange | None = None

    @property
    def created_any(self) -> bool:
        return self.charge is not None or self.payment is not None


def invoice_description(payment_type: str | None, period: date) -> str:
    if payment_type == statuses.MEMBERSHIP:
        return f"{MONTHLY_MEMBERSHIP_PREFIX} - {month_label(period)}"
    if payment_type == statuses.BALANCE_PAYOFF:
        return "Balance Payoff Plan"
    if payment_type == statuses.GUEST_BALANCE_PAYOFF:
        return "Guest Balance Payoff"
    if payment_type == statuses.GUEST_DONATION:
        return "Guest Monthly Donation"
    return "Additional Monthly Payment"


async def _create_keyed(
    store: EntityStore,
    kind: AccountKind,
    key_field: str,
    key: str | None,
    values: dict[str, Any],
) -> Any | None:
    """Insert a ledger row unless one already exists for ``(key_field, type)``.

    The pre-check skips the common replay; the unique constraint settles races,
    and the loser sees ``None`` like any other duplicate.
    """
    ref = account_ref(kind)
    tx_type = values["type"]
    if key:
        existing = await store.filter(ref.transaction_entity, {key_field: key, "type": tx_type}, limit=1)
        if existing:
            metrics.record_ledger_write(ref.kind.value, tx_type, "duplicate")
            logger.info(
                "ledger_transaction_exists",
                extra={"extra": {"account_kind": ref.kind.value, key_field: key, "type": tx_type}},
            )
            return None
    record = await store.create_once(ref.transaction_entity, values)
    outcome = "created" if record is not None else "duplicate"
    metrics.record_ledger_write(ref.kind.value, tx_type, outcome)
    if record is not None:
        logger.info(
            "ledger_transaction_created",
            extra={
                "extra": {
                    "account_kind": ref.kind.value,
                    "transaction_id": record.id,
                    "account_id": record.account_id,
                    "type": tx_type,
                    "amount": str(record.amount),
                }
            },
        )
    return record


async def create_invoice_transaction_if_missing(
    store: EntityStore, kind: AccountKind, invoice_id: str | None, values: dict[str, Any]
) -> Any | None:
    return await _create_keyed(store, kind, "provider_invoice_id", invoice_id, values)


async def create_payment_transaction_if_missing(
    store: EntityStore, kind: AccountKind, payment_id: str | None, values: dict[str, Any]
) -> Any | None:
    return await _create_keyed(store, kind, "provider_payment_id", payment_id, values)


def _processor_entry(
    account_id: str,
    tx_type: str,
    amount_cents: int,
    description: str,
    entry_date: date,
    *,
    invoice_id: str | None = None,
    payment_id: str | None = None,
    subscription_id: str | None = None,
    customer_id: str | None = None,
) -> dict[str, Any]:
    return {
        "account_id": str(account_id),
        "type": tx_type,
        "amount": cents_to_amount(amount_cents),
        "description": description,
        "date": entry_date,
        "provider": PROVIDER_PROCESSOR,
        "provider_invoice_id": invoice_id,
        "provider_payment_id": payment_id,
        "provider_subscription_id": subscription_id,
        "provider_customer_id": customer_id,
    }


async def record_invoice_payment(
    store: EntityStore,
    kind: AccountKind,
    account_id: str,
    *,
    invoice_id: str | None,
    amount_cents: int,
    period: date,
    description: str,
    subscription_id: str | None = None,
    customer_id: str | None = None,
    reduction_cents: int | None = None,
    adjust_balance: bool = True,
) -> LedgerWrite:
    """Write the charge/payment pair for a paid subscription invoice.

    The pair itself is balance-neutral. When the payment row is new the balance
    drops by ``reduction_cents`` (default: the paid amount), clamped at zero.
    """
    common = {
        "invoice_id": invoice_id,
        "subscription_id": subscription_id,
        "customer_id": customer_id,
    }
    charge_values = _processor_entry(account_id, CHARGE, amount_cents, description, period, **common)
    payment_values = _processor_entry(account_id, PAYMENT, amount_cents, f"{description} (Stripe)", period, **common)
    create, key = create_invoice_transaction_if_missing, invoice_id
    if not invoice_id:
        # Invoice-less payments key on subscription and period instead.
        key = f"{subscription_id}:{period.isoformat()}"
        charge_values["provider_payment_id"] = payment_values["provider_payment_id"] = key
        create = create_payment_transaction_if_missing

    write = LedgerWrite()
    write.charge = await create(store, kind, key, charge_values)
    write.payment = await create(store, kind, key, payment_values)
    if write.payment is None or not adjust_balance:
        return write

    reduction = cents_to_amount(amount_cents if reduction_cents is None else max(0, reduction_cents))
    write.balance = await apply_delta(store, kind, account_id, -reduction, floor=ZERO)
    return write


async def record_failed_invoice(
    store: EntityStore,
    kind: AccountKind,
    account_id: str,
    *,
    invoice_id: str | None,
    amount_cents: int,
    period: date,
    subscription_id: str | None = None,
    customer_id: str | None = None,
) -> LedgerWrite:
    """Accrue an unpaid invoice: one charge, no payment, balance increases."""
    values = _processor_entry(
        account_id,
        CHARGE,
        amount_cents,
        f"{UNPAID_MONTHLY_MEMBERSHIP_PREFIX} - {month_label(period)}",
        period,
        invoice_id=invoice_id,
        subscription_id=subscription_id,
        customer_id=customer_id,
    )
    write = LedgerWrite()
    write.charge = await create_invoice_transaction_if_missing(store, kind, invoice_id, values)
    if write.charge is not None:
        write.balance = await apply_delta(store, kind, account_id, cents_to_amount(amount_cents))
    return write


async def record_one_time_payment(
    store: EntityStore,
    kind: AccountKind,
    account_id: str,
    *,
    payment_id: str | None,
    amount_cents: int,
    description: str | None,
    entry_date: date,
    customer_id: str | None = None,
) -> LedgerWrite:
    """Record a checkout payment. Not clamped: a negative balance is credit."""
    values = _processor_entry(
        account_id,
        PAYMENT,
        amount_cents,
        description or "Stripe payment",
        entry_date,
        payment_id=payment_id,
        customer_id=customer_id,
    )
    write = LedgerWrite()
    write.payment = await create_payment_transaction_if_missing(store, kind, payment_id, values)
    if write.payment is not None:
        write.balance = await apply_delta(store, kind, account_id, -cents_to_amount(amount_cents))
    return write


async def delete_transaction(store: EntityStore, kind: AccountKind | str, transaction_id: str) -> BalanceChange:
    """Remove a ledger row and reverse its effect on the owning balance."""
    ref = account_ref(kind)
    try:
        entry = await store.delete(ref.transaction_entity, transaction_id)
    except RecordNotFoundError as exc:
        raise TransactionNotFound(ref.transaction_entity, f"no record with id {transaction_id}") from exc
    amount = to_amount(entry.amount)
    delta = -amount if entry.type == CHARGE else amount
    logger.info(
        "ledger_transaction_deleted",
        extra={
            "extra": {
                "account_kind": ref.kind.value,
                "transaction_id": transaction_id,
                "type": entry.type,
                "amount": str(amount),
            }
        },
    )
    return await apply_delta(store, ref.kind, entry.account_id, delta)
