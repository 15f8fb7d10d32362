from __future__ import annotations

import logging
from typing import Any

from billing.domain.accounts.service import AccountKind
from billing.domain.ledger.service import LedgerWrite, invoice_description, record_invoice_payment
from billing.domain.recurring import service as recurring_service
from billing.domain.recurring import statuses
from billing.infra.entity_store import EntityStore
from billing.shared.stripe_objects import date_from_unix, first_line, object_id, safe_get, to_cents

logger = logging.getLogger(__name__)


def invoice_is_paid(invoice: Any) -> bool:
    if safe_get(invoice, "status") == "paid":
        return True
    payment_intent = safe_get(invoice, "payment_intent")
    if payment_intent is None or isinstance(payment_intent, str):
        return False
    return safe_get(payment_intent, "status") == "succeeded"


def invoice_subscription_id(invoice: Any) -> str | None:
    subscription_id = object_id(safe_get(invoice, "subscription"))
    if subscription_id:
        return subscription_id
    # Newer API versions nest the subscription under the invoice parent.
    parent = safe_get(invoice, "parent") or {}
    details = safe_get(parent, "subscription_details") or {}
    return object_id(safe_get(details, "subscription"))


def invoice_period(invoice: Any):
    line = first_line(invoice)
    period = safe_get(line, "period") or {}
    return date_from_unix(safe_get(period, "start") or safe_get(invoice, "created"))


async def record_paid_invoice(
    store: EntityStore,
    stripe_client: Any,
    invoice: Any,
    *,
    kind: AccountKind,
    account_id: str,
    payment_type: str,
    subscription_id: str | None,
    standard_cents: int = 0,
    payoff_cents: int = 0,
    amount_fallback_cents: int = 0,
) -> LedgerWrite:
    """Fold one paid subscription invoice into the ledger and the payoff plan.

    Membership invoices reduce the balance by ``standard + payoff`` when the
    standard amount is known; guest donations never move the balance.
    """
    amount_cents = to_cents(safe_get(invoice, "amount_paid"))
    if amount_cents <= 0:
        amount_cents = to_cents(safe_get(invoice, "total")) or amount_fallback_cents
    period = invoice_period(invoice)
    customer_id = object_id(safe_get(invoice, "customer"))

    reduction_cents: int | None = None
    if payment_type == statuses.MEMBERSHIP and standard_cents > 0:
        reduction_cents = standard_cents + max(0, payoff_cents)
    adjust_balance = not (kind == AccountKind.GUEST and payment_type == statuses.GUEST_DONATION)

    write = await record_invoice_payment(
        store,
        kind,
        account_id,
        invoice_id=object_id(invoice),
        amount_cents=amount_cents,
        period=period,
        description=invoice_description(payment_type, period),
        subscription_id=subscription_id,
        customer_id=customer_id,
        reduction_cents=reduction_cents,
        adjust_balance=adjust_balance,
    )
    if not statuses.is_payoff(payment_type):
        return write

    # Also runs on replays; remaining is re-derived from the ledger each time.
    await recurring_service.settle_payoff(store, stripe_client, subscription_id)
    return write
