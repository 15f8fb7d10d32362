from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any

from billing.domain.errors import AccountNotFound
from billing.infra.entity_store import EntityStore, RecordNotFoundError
from billing.infra.metrics import metrics
from billing.shared.money import ZERO, to_amount

logger = logging.getLogger(__name__)


class AccountKind(str, Enum):
    MEMBER = "member"
    GUEST = "guest"


@dataclass(frozen=True)
class AccountRef:
    kind: AccountKind
    account_entity: str
    transaction_entity: str
    label: str


ACCOUNT_REFS: dict[AccountKind, AccountRef] = {
    AccountKind.MEMBER: AccountRef(AccountKind.MEMBER, "Member", "Transaction", "Member"),
    AccountKind.GUEST: AccountRef(AccountKind.GUEST, "Guest", "GuestTransaction", "Guest"),
}


@dataclass(frozen=True)
class BalanceChange:
    previous: Decimal
    current: Decimal

    @property
    def delta(self) -> Decimal:
        return self.current - self.previous


def account_ref(kind: AccountKind | str) -> AccountRef:
    return ACCOUNT_REFS[AccountKind(kind)]


async def resolve_account(store: EntityStore, kind: AccountKind | str, account_id: str | None) -> Any:
    ref = account_ref(kind)
    record = await store.get(ref.account_entity, account_id) if account_id else None
    if record is None:
        raise AccountNotFound(detail=f"{ref.label} {account_id} not found", title="Account not found")
    return record


async def find_member(
    store: EntityStore,
    *,
    member_id: str | None = None,
    customer_id: str | None = None,
    subscription_id: str | None = None,
) -> Any | None:
    """Resolve a member even when the id carried in provider metadata is stale."""
    lookups: list[dict[str, str]] = []
    if member_id:
        lookups.append({"id": str(member_id)})
    if subscription_id:
        lookups.append({"provider_subscription_id": str(subscription_id)})
    if customer_id:
        lookups.append({"provider_customer_id": str(customer_id)})
    for where in lookups:
        matches = await store.filter("Member", where, limit=1)
        if matches:
            return matches[0]
    return None


async def find_guest(
    store: EntityStore,
    *,
    guest_id: str | None = None,
    customer_id: str | None = None,
) -> Any | None:
    if guest_id:
        guest = await store.get("Guest", str(guest_id))
        if guest is not None:
            return guest
    if customer_id:
        matches = await store.filter("Guest", {"provider_customer_id": str(customer_id)}, limit=1)
        if matches:
            return matches[0]
    return None


async def apply_delta(
    store: EntityStore,
    kind: AccountKind | str,
    account_id: str,
    delta: Decimal,
    *,
    floor: Decimal | None = None,
) -> BalanceChange:
    """Add ``delta`` to the account's running balance, optionally clamped at ``floor``.

    Read and write are two store calls; the ledger row that produced the delta
    stays the source of truth and ``recompute_balance`` can re-derive it.
    """
    ref = account_ref(kind)
    account = await resolve_account(store, ref.kind, account_id)
    previous = to_amount(account.total_owed)
    current = to_amount(previous + to_amount(delta))
    if floor is not None and current < floor:
        current = to_amount(floor)
    try:
        await store.update(ref.account_entity, account.id, {"total_owed": current})
    except RecordNotFoundError as exc:
        raise AccountNotFound(detail=f"{ref.label} {account_id} not found", title="Account not found") from exc
    direction = "increase" if current > previous else "decrease" if current < previous else "unchanged"
    metrics.record_balance_adjustment(ref.kind.value, direction)
    logger.info(
        "balance_adjusted",
        extra={
            "extra": {
                "account_kind": ref.kind.value,
                "account_id": account.id,
                "previous": str(previous),
                "current": str(current),
            }
        },
    )
    return BalanceChange(previous=previous, current=current)


async def recompute_balance(store: EntityStore, kind: AccountKind | str, account_id: str) -> BalanceChange:
    ref = account_ref(kind)
    account = await resolve_account(store, ref.kind, account_id)
    entries = await store.filter(ref.transaction_entity, {"account_id": account.id})
    total = ZERO
    for entry in entries:
        if entry.type == "charge":
            total += to_amount(entry.amount)
        elif entry.type == "payment":
            total -= to_amount(entry.amount)
    previous = to_amount(account.total_owed)
    current = to_amount(total)
    if current != previous:
        await store.update(ref.account_entity, account.id, {"total_owed": current})
        logger.warning(
            "balance_recomputed_drift",
            extra={
                "extra": {
                    "account_kind": ref.kind.value,
                    "account_id": account.id,
                    "previous": str(previous),
                    "current": str(current),
                }
            },
        )
    return BalanceChange(previous=previous, current=current)
