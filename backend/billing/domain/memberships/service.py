from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from billing.domain.accounts.service import AccountKind
from billing.domain.errors import AccountNotFound, DomainError, ProviderCallFailed
from billing.domain.ledger.invoices import invoice_is_paid, record_paid_invoice
from billing.domain.recurring import service as recurring_service
from billing.domain.recurring import statuses
from billing.infra.entity_store import EntityStore, EntityStoreError
from billing.infra.stripe_client import call_stripe_client_method
from billing.infra.stripe_idempotency import make_stripe_idempotency_key
from billing.shared.clock import add_month, billing_today
from billing.shared.money import amount_to_cents
from billing.shared.stripe_objects import object_id, safe_get

logger = logging.getLogger(__name__)


class MissingSavedCards(DomainError):
    status_code = 400


@dataclass
class BulkActivationResult:
    activated: list[dict[str, Any]] = field(default_factory=list)
    already_active: list[dict[str, Any]] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class CancelResult:
    recurring_payment_id: str
    subscription_id: str


def _member_summary(member: Any) -> dict[str, Any]:
    return {"id": member.id, "name": member.name or "Member"}


async def current_plan_amount_cents(store: EntityStore) -> int:
    plans = await store.list("MembershipPlan", sort="-created_at", limit=1)
    if not plans or plans[0].standard_amount is None:
        return 0
    return amount_to_cents(plans[0].standard_amount)


async def activate_member(
    store: EntityStore, member: Any, *, subscription_id: str, customer_id: str | None
) -> Any:
    patch: dict[str, Any] = {"membership_active": True, "provider_subscription_id": subscription_id}
    if customer_id:
        patch["provider_customer_id"] = customer_id
    updated = await store.update("Member", member.id, patch)
    logger.info(
        "membership_activated",
        extra={"extra": {"member_id": member.id, "subscription_id": subscription_id}},
    )
    return updated


async def cancel_subscription(
    store: EntityStore,
    stripe_client: Any,
    *,
    recurring_payment_id: str | None = None,
    subscription_id: str | None = None,
) -> CancelResult:
    if not recurring_payment_id and not subscription_id:
        raise DomainError(detail="recurring_payment_id or subscription_id is required")
    record = await recurring_service.get_recurring_payment(
        store, recurring_payment_id=recurring_payment_id, subscription_id=subscription_id
    )
    provider_subscription_id = record.provider_subscription_id or subscription_id
    # Provider first: a failed cancel leaves local state untouched.
    await recurring_service.cancel_at_provider(stripe_client, provider_subscription_id)
    await recurring_service.deactivate(store, record)

    if record.account_kind == AccountKind.MEMBER.value and record.payment_type == statuses.MEMBERSHIP:
        member = await store.get("Member", record.account_id)
        if member is not None:
            await store.update(
                "Member",
                member.id,
                {"membership_active": False, "provider_subscription_id": None},
            )
    return CancelResult(recurring_payment_id=record.id, subscription_id=provider_subscription_id)


async def activate_memberships_bulk(
    store: EntityStore,
    stripe_client: Any,
    member_ids: list[str],
    *,
    amount_per_month: Decimal | None = None,
) -> BulkActivationResult:
    """Start a monthly membership subscription for each member with a saved card.

    The batch is rejected up front when any member is unknown or has no saved
    card; after that, per-member failures are collected instead of raised.
    """
    amount_cents = amount_to_cents(amount_per_month) if amount_per_month else 0
    if amount_cents <= 0:
        amount_cents = await current_plan_amount_cents(store)
    if amount_cents <= 0:
        raise DomainError(detail="Valid amount_per_month is required")

    result = BulkActivationResult()
    missing: list[dict[str, Any]] = []
    to_activate: list[Any] = []
    for member_id in member_ids:
        member = await store.get("Member", str(member_id))
        if member is None:
            missing.append({"id": member_id, "name": "Unknown", "reason": "Member not found"})
            continue
        if member.membership_active:
            result.already_active.append(_member_summary(member))
            continue
        if not member.provider_customer_id or not member.provider_default_payment_method_id:
            missing.append({**_member_summary(member), "reason": "Missing saved card"})
            continue
        to_activate.append(member)

    if missing:
        raise MissingSavedCards(
            detail="Some members are missing saved cards",
            title="Missing saved cards",
            errors=missing,
        )

    for member in to_activate:
        try:
            await _activate_one(store, stripe_client, member, amount_cents)
        except (ProviderCallFailed, AccountNotFound, EntityStoreError) as exc:
            reason = exc.detail
            logger.warning(
                "membership_activation_failed",
                extra={"extra": {"member_id": member.id, "reason": reason}},
            )
            result.errors.append({**_member_summary(member), "message": reason or "Failed to activate membership"})
        else:
            result.activated.append(_member_summary(member))
    return result


async def _activate_one(store: EntityStore, stripe_client: Any, member: Any, amount_cents: int) -> None:
    subscription = await call_stripe_client_method(
        stripe_client,
        "create_subscription",
        customer_id=member.provider_customer_id,
        amount_cents=amount_cents,
        default_payment_method=member.provider_default_payment_method_id,
        metadata={
            "memberId": str(member.id),
            "memberName": (member.name or "")[:200],
            "paymentType": statuses.MEMBERSHIP,
            "amountCents": str(amount_cents),
        },
        idempotency_key=make_stripe_idempotency_key(
            "membership_activate", account_id=member.id, amount_cents=amount_cents
        ),
    )
    subscription_id = object_id(subscription)
    if not subscription_id:
        raise ProviderCallFailed(detail="Stripe returned a subscription without an id")

    today = billing_today()
    await recurring_service.upsert_from_checkout(
        store,
        kind=AccountKind.MEMBER,
        account_id=member.id,
        account_name=member.name,
        subscription_id=subscription_id,
        payment_type=statuses.MEMBERSHIP,
        amount_cents=amount_cents,
        customer_id=member.provider_customer_id,
        billing_anchor=add_month(today).isoformat(),
        today=today,
    )
    await activate_member(
        store, member, subscription_id=subscription_id, customer_id=member.provider_customer_id
    )

    latest_invoice = safe_get(subscription, "latest_invoice")
    if latest_invoice is None or isinstance(latest_invoice, str) or not invoice_is_paid(latest_invoice):
        return
    await record_paid_invoice(
        store,
        stripe_client,
        latest_invoice,
        kind=AccountKind.MEMBER,
        account_id=member.id,
        payment_type=statuses.MEMBERSHIP,
        subscription_id=subscription_id,
        amount_fallback_cents=amount_cents,
    )
