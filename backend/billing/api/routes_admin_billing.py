"""Admin endpoints for subscriptions, balances and the monthly charge run."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status

from billing.api.admin_auth import AdminIdentity, require_admin
from billing.dependencies import get_entity_store, get_stripe_client
from billing.domain.accounts import service as accounts_service
from billing.domain.accounts.service import AccountKind
from billing.domain.ledger import service as ledger_service
from billing.domain.memberships import schemas
from billing.domain.memberships import service as memberships_service
from billing.infra.entity_store import EntityStore
from billing.jobs import monthly_charges
from billing.settings import settings

router = APIRouter(tags=["admin-billing"])
logger = logging.getLogger(__name__)


def _account_kind(value: str) -> AccountKind:
    try:
        return AccountKind(value)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown account kind") from exc


def _balance_response(kind: AccountKind, account_id: str, change) -> schemas.BalanceResponse:
    return schemas.BalanceResponse(
        account_kind=kind.value,
        account_id=account_id,
        previous=change.previous,
        total_owed=change.current,
    )


@router.post(
    "/v1/admin/billing/subscriptions/cancel",
    response_model=schemas.CancelSubscriptionResponse,
)
async def cancel_subscription(
    payload: schemas.CancelSubscriptionRequest,
    identity: AdminIdentity = Depends(require_admin),
    store: EntityStore = Depends(get_entity_store),
    stripe_client: Any = Depends(get_stripe_client),
) -> schemas.CancelSubscriptionResponse:
    result = await memberships_service.cancel_subscription(
        store,
        stripe_client,
        recurring_payment_id=payload.recurring_payment_id,
        subscription_id=payload.subscription_id,
    )
    logger.info(
        "admin_subscription_canceled",
        extra={"extra": {"admin": identity.username, "subscription_id": result.subscription_id}},
    )
    return schemas.CancelSubscriptionResponse(
        recurring_payment_id=result.recurring_payment_id,
        subscription_id=result.subscription_id,
    )


@router.post(
    "/v1/admin/billing/memberships/activate-bulk",
    response_model=schemas.BulkActivateResponse,
)
async def activate_memberships_bulk(
    payload: schemas.BulkActivateRequest,
    identity: AdminIdentity = Depends(require_admin),
    store: EntityStore = Depends(get_entity_store),
    stripe_client: Any = Depends(get_stripe_client),
) -> schemas.BulkActivateResponse:
    result = await memberships_service.activate_memberships_bulk(
        store,
        stripe_client,
        payload.member_ids,
        amount_per_month=payload.amount_per_month,
    )
    logger.info(
        "admin_memberships_activated",
        extra={
            "extra": {
                "admin": identity.username,
                "activated": len(result.activated),
                "errors": len(result.errors),
            }
        },
    )
    return schemas.BulkActivateResponse(
        activated=result.activated,
        already_active=result.already_active,
        errors=result.errors,
    )


@router.delete(
    "/v1/admin/billing/{account_kind}/transactions/{transaction_id}",
    response_model=schemas.BalanceResponse,
)
async def delete_transaction(
    account_kind: str,
    transaction_id: str,
    identity: AdminIdentity = Depends(require_admin),
    store: EntityStore = Depends(get_entity_store),
) -> schemas.BalanceResponse:
    kind = _account_kind(account_kind)
    try:
        entry = await store.get(accounts_service.account_ref(kind).transaction_entity, transaction_id)
        change = await ledger_service.delete_transaction(store, kind, transaction_id)
    except ledger_service.TransactionNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Transaction not found") from exc
    logger.info(
        "admin_transaction_deleted",
        extra={"extra": {"admin": identity.username, "transaction_id": transaction_id}},
    )
    return _balance_response(kind, entry.account_id, change)


@router.post(
    "/v1/admin/billing/{account_kind}/{account_id}/recompute-balance",
    response_model=schemas.BalanceResponse,
)
async def recompute_balance(
    account_kind: str,
    account_id: str,
    identity: AdminIdentity = Depends(require_admin),
    store: EntityStore = Depends(get_entity_store),
) -> schemas.BalanceResponse:
    kind = _account_kind(account_kind)
    change = await accounts_service.recompute_balance(store, kind, account_id)
    return _balance_response(kind, account_id, change)


@router.post(
    "/v1/admin/billing/monthly-charges/run",
    response_model=schemas.MonthlyChargeRunResponse,
)
async def run_monthly_charges(
    payload: schemas.MonthlyChargeRunRequest | None = None,
    identity: AdminIdentity = Depends(require_admin),
    store: EntityStore = Depends(get_entity_store),
) -> schemas.MonthlyChargeRunResponse:
    payload = payload or schemas.MonthlyChargeRunRequest()
    result = await monthly_charges.run_monthly_membership_charges(
        store,
        time_zone=payload.time_zone or settings.billing_time_zone,
        batch_limit=payload.batch_limit,
    )
    logger.info(
        "admin_monthly_charges_run",
        extra={"extra": {"admin": identity.username, "charged": result["charged"]}},
    )
    return schemas.MonthlyChargeRunResponse(**result)
