from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from typing import Any

from billing.domain.accounts.service import AccountKind, find_guest, find_member
from billing.domain.errors import MalformedEvent
from billing.domain.ledger import service as ledger_service
from billing.domain.ledger.invoices import (
    invoice_is_paid,
    invoice_period,
    invoice_subscription_id,
    record_paid_invoice,
)
from billing.domain.memberships.service import activate_member
from billing.domain.recurring import service as recurring_service
from billing.domain.recurring import statuses
from billing.infra.entity_store import EntityStore, RecordNotFoundError
from billing.infra.metrics import metrics
from billing.infra.stripe_client import call_stripe_client_method
from billing.infra.stripe_idempotency import make_stripe_idempotency_key
from billing.shared.clock import billing_today
from billing.shared.stripe_objects import (
    datetime_from_unix,
    first_line,
    first_positive_cents,
    metadata_of,
    object_id,
    safe_get,
    to_cents,
)

logger = logging.getLogger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"
INVOICE_PAID = "invoice.paid"
INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"

# Downstream writers key these on provider invoice/payment ids, so a replay is
# re-checked there instead of being suppressed here.
REPLAY_DISPATCH_TYPES = {INVOICE_PAID, CHECKOUT_COMPLETED}


@dataclass
class GateResult:
    event_id: str
    event_type: str | None
    duplicate: bool = False
    handled: bool = False

    def as_response(self) -> dict[str, bool]:
        response = {"received": True}
        if self.duplicate:
            response["duplicate"] = True
        return response


@dataclass
class InvoiceContext:
    subscription_id: str
    customer_id: str | None
    member_id: str | None
    guest_id: str | None
    payment_type: str
    metadata: dict[str, Any]
    subscription: Any | None = None


class EventGate:
    """Verify, deduplicate and dispatch inbound Stripe events.

    The ProcessedEvent insert is the claim: exactly one delivery of an event id
    wins it. If dispatch fails the claim is released so the provider's
    redelivery is handled as a first delivery.
    """

    def __init__(self, store: EntityStore, stripe_client: Any) -> None:
        self.store = store
        self.stripe_client = stripe_client
        self.dispatcher = EventDispatcher(store, stripe_client)

    async def handle(self, payload: bytes, signature: str | None) -> GateResult:
        event = await call_stripe_client_method(
            self.stripe_client, "verify_webhook", payload=payload, signature=signature
        )
        event_id = safe_get(event, "id")
        if not event_id:
            metrics.record_webhook_error("missing_event_id")
            raise MalformedEvent(detail="missing event id", title="Malformed event")
        event_id = str(event_id)
        event_type = safe_get(event, "type")
        payload_hash = hashlib.sha256(payload or b"").hexdigest()

        claimed = await self.store.create_once(
            "ProcessedEvent",
            {
                "event_id": event_id,
                "event_type": event_type,
                "payload_hash": payload_hash,
                "event_created_at": datetime_from_unix(safe_get(event, "created")),
            },
        )
        result = GateResult(event_id=event_id, event_type=event_type, duplicate=claimed is None)
        if result.duplicate:
            await self._check_replay_hash(event_id, payload_hash)
            if event_type not in REPLAY_DISPATCH_TYPES:
                logger.info(
                    "stripe_webhook_duplicate",
                    extra={"extra": {"event_id": event_id, "event_type": event_type}},
                )
                metrics.record_stripe_webhook("duplicate")
                return result

        try:
            result.handled = await self.dispatcher.dispatch(event)
        except Exception:
            if claimed is not None:
                await self._release(event_id)
            metrics.record_stripe_webhook("error")
            metrics.record_webhook_error("processing_error")
            raise

        outcome = "processed" if result.handled else "ignored"
        metrics.record_stripe_webhook(f"replayed_{outcome}" if result.duplicate else outcome)
        logger.info(
            "stripe_webhook_processed",
            extra={
                "extra": {
                    "event_id": event_id,
                    "event_type": event_type,
                    "duplicate": result.duplicate,
                    "handled": result.handled,
                }
            },
        )
        return result

    async def _check_replay_hash(self, event_id: str, payload_hash: str) -> None:
        existing = await self.store.get("ProcessedEvent", event_id)
        if existing is not None and existing.payload_hash != payload_hash:
            logger.warning("stripe_webhook_replayed_mismatch", extra={"extra": {"event_id": event_id}})
            metrics.record_webhook_error("payload_mismatch")

    async def _release(self, event_id: str) -> None:
        try:
            await self.store.delete("ProcessedEvent", event_id)
        except RecordNotFoundError:
            return
        logger.info("stripe_webhook_claim_released", extra={"extra": {"event_id": event_id}})


class EventDispatcher:
    def __init__(self, store: EntityStore, stripe_client: Any) -> None:
        self.store = store
        self.stripe_client = stripe_client
        self._handlers = {
            CHECKOUT_COMPLETED: self._handle_checkout_completed,
            INVOICE_PAID: self._handle_invoice_paid,
            INVOICE_PAYMENT_FAILED: self._handle_invoice_payment_failed,
            SUBSCRIPTION_DELETED: self._handle_subscription_deleted,
        }

    async def dispatch(self, event: Any) -> bool:
        handler = self._handlers.get(safe_get(event, "type"))
        if handler is None:
            return False
        data = safe_get(event, "data", {}) or {}
        payload_object = safe_get(data, "object", {}) or {}
        return await handler(payload_object)

    async def _retrieve_subscription(self, subscription_id: str, expand: list[str] | None = None) -> Any:
        kwargs: dict[str, Any] = {}
        if expand:
            kwargs["expand"] = expand
        return await call_stripe_client_method(
            self.stripe_client, "retrieve_subscription", subscription_id, **kwargs
        )

    def _log_unresolved(self, reason: str, **fields: Any) -> bool:
        logger.info("stripe_webhook_account_unresolved", extra={"extra": {"reason": reason, **fields}})
        metrics.record_webhook_error("account_unresolved")
        return False

    async def _handle_checkout_completed(self, session: Any) -> bool:
        mode = safe_get(session, "mode")
        if mode == "payment":
            return await self._checkout_payment(session)
        if mode == "subscription":
            return await self._checkout_subscription(session)
        if mode == "setup":
            return await self._checkout_setup(session)
        return False

    async def _checkout_payment(self, session: Any) -> bool:
        md = metadata_of(session)
        customer_id = object_id(safe_get(session, "customer"))
        amount_cents = first_positive_cents(md.get("amountCents"), safe_get(session, "amount_total"))
        payment_id = object_id(safe_get(session, "payment_intent")) or object_id(session)
        entry_date = billing_today()
        if amount_cents <= 0:
            logger.info("stripe_checkout_zero_amount_skipped", extra={"extra": {"session_id": object_id(session)}})
            return False

        if md.get("memberId"):
            member = await find_member(self.store, member_id=md.get("memberId"), customer_id=customer_id)
            if member is None:
                return self._log_unresolved("member_not_found", member_id=md.get("memberId"))
            kind, account_id = AccountKind.MEMBER, member.id
        elif md.get("guestId"):
            guest = await find_guest(self.store, guest_id=md.get("guestId"), customer_id=customer_id)
            if guest is None:
                return self._log_unresolved("guest_not_found", guest_id=md.get("guestId"))
            kind, account_id = AccountKind.GUEST, guest.id
        else:
            return self._log_unresolved("missing_account_metadata", session_id=object_id(session))

        await ledger_service.record_one_time_payment(
            self.store,
            kind,
            account_id,
            payment_id=payment_id,
            amount_cents=amount_cents,
            description=md.get("description"),
            entry_date=entry_date,
            customer_id=customer_id,
        )
        return True

    async def _checkout_subscription(self, session: Any) -> bool:
        md = metadata_of(session)
        subscription_id = object_id(safe_get(session, "subscription"))
        customer_id = object_id(safe_get(session, "customer"))
        if not subscription_id:
            return self._log_unresolved("missing_subscription", session_id=object_id(session))
        try:
            payment_type = statuses.normalize_payment_type(md.get("paymentType")) or statuses.ADDITIONAL_MONTHLY
        except ValueError:
            logger.warning(
                "stripe_checkout_unknown_payment_type",
                extra={"extra": {"session_id": object_id(session), "payment_type": md.get("paymentType")}},
            )
            payment_type = statuses.ADDITIONAL_MONTHLY
        amount_cents = to_cents(md.get("amountCents"))
        payoff_total_cents = to_cents(md.get("payoffTotalCents")) or None

        if md.get("guestId"):
            guest = await find_guest(self.store, guest_id=md.get("guestId"), customer_id=customer_id)
            if guest is None:
                return self._log_unresolved("guest_not_found", guest_id=md.get("guestId"))
            kind, account_id, account_name = AccountKind.GUEST, guest.id, md.get("guestName") or guest.name
            member = None
        else:
            member = await find_member(
                self.store,
                member_id=md.get("memberId"),
                customer_id=customer_id,
                subscription_id=subscription_id,
            )
            if member is None:
                return self._log_unresolved("member_not_found", member_id=md.get("memberId"))
            kind, account_id, account_name = AccountKind.MEMBER, member.id, md.get("memberName") or member.name

        await recurring_service.upsert_from_checkout(
            self.store,
            kind=kind,
            account_id=account_id,
            account_name=account_name,
            subscription_id=subscription_id,
            payment_type=payment_type,
            amount_cents=amount_cents,
            customer_id=customer_id,
            billing_anchor=md.get("billingAnchor"),
            payoff_total_cents=payoff_total_cents,
        )
        if statuses.is_payoff(payment_type):
            # Instalments recorded before this checkout count toward the new plan.
            await recurring_service.settle_payoff(self.store, self.stripe_client, subscription_id)
        if member is not None and payment_type == statuses.MEMBERSHIP:
            await activate_member(self.store, member, subscription_id=subscription_id, customer_id=customer_id)

        await self._record_latest_invoice(kind, account_id, subscription_id, payment_type)
        return True

    async def _record_latest_invoice(
        self, kind: AccountKind, account_id: str, subscription_id: str, payment_type: str
    ) -> None:
        subscription = await self._retrieve_subscription(subscription_id, expand=["latest_invoice"])
        latest = safe_get(subscription, "latest_invoice")
        invoice_id = object_id(latest)
        if not invoice_id:
            return
        invoice = latest
        if isinstance(latest, str):
            invoice = await call_stripe_client_method(self.stripe_client, "retrieve_invoice", invoice_id)
        if not invoice_is_paid(invoice):
            return

        line_md = metadata_of(first_line(invoice))
        invoice_md = metadata_of(invoice)
        sub_md = metadata_of(subscription)
        await record_paid_invoice(
            self.store,
            self.stripe_client,
            invoice,
            kind=kind,
            account_id=account_id,
            payment_type=payment_type,
            subscription_id=subscription_id,
            standard_cents=first_positive_cents(
                invoice_md.get("standardAmountCents"),
                line_md.get("standardAmountCents"),
                sub_md.get("standardAmountCents"),
            ),
            payoff_cents=first_positive_cents(
                invoice_md.get("payoffAmountCents"),
                line_md.get("payoffAmountCents"),
                sub_md.get("payoffAmountCents"),
            ),
        )

    async def _checkout_setup(self, session: Any) -> bool:
        md = metadata_of(session)
        setup_intent_id = object_id(safe_get(session, "setup_intent"))
        if not setup_intent_id:
            return False
        setup_intent = await call_stripe_client_method(
            self.stripe_client, "retrieve_setup_intent", setup_intent_id
        )
        payment_method_id = object_id(safe_get(setup_intent, "payment_method"))
        if not payment_method_id:
            return False

        customer_id = object_id(safe_get(session, "customer"))
        if customer_id:
            await call_stripe_client_method(
                self.stripe_client,
                "set_customer_default_payment_method",
                customer_id,
                payment_method_id,
                idempotency_key=make_stripe_idempotency_key(
                    "default_payment_method", customer_id=customer_id, payment_method_id=payment_method_id
                ),
            )

        patch: dict[str, Any] = {"provider_default_payment_method_id": payment_method_id}
        if customer_id:
            patch["provider_customer_id"] = customer_id
        if md.get("memberId"):
            entity, account_id = "Member", str(md["memberId"])
        elif md.get("guestId"):
            entity, account_id = "Guest", str(md["guestId"])
        else:
            return self._log_unresolved("missing_account_metadata", session_id=object_id(session))
        if await self.store.get(entity, account_id) is None:
            return self._log_unresolved("account_not_found", entity=entity, account_id=account_id)
        await self.store.update(entity, account_id, patch)
        logger.info(
            "payment_method_saved",
            extra={"extra": {"entity": entity, "account_id": account_id}},
        )
        return True

    async def _invoice_context(self, invoice: Any, *, need_account: bool = True) -> InvoiceContext | None:
        subscription_id = invoice_subscription_id(invoice)
        if not subscription_id:
            return None
        md = metadata_of(first_line(invoice)) or metadata_of(invoice)
        context = InvoiceContext(
            subscription_id=subscription_id,
            customer_id=object_id(safe_get(invoice, "customer")),
            member_id=md.get("memberId"),
            guest_id=md.get("guestId"),
            payment_type=md.get("paymentType") or "",
            metadata=md,
        )
        if need_account and not context.member_id and not context.guest_id:
            context.subscription = await self._retrieve_subscription(subscription_id)
            sub_md = metadata_of(context.subscription)
            context.member_id = sub_md.get("memberId")
            context.guest_id = sub_md.get("guestId")
            context.payment_type = context.payment_type or sub_md.get("paymentType") or ""
        if not context.payment_type:
            recurring = await recurring_service.find_by_subscription(self.store, subscription_id)
            if recurring is not None:
                context.payment_type = recurring.payment_type
        context.payment_type = context.payment_type or statuses.ADDITIONAL_MONTHLY
        return context

    async def _invoice_member(self, context: InvoiceContext) -> Any | None:
        return await find_member(
            self.store,
            member_id=context.member_id,
            customer_id=context.customer_id,
            subscription_id=context.subscription_id,
        )

    async def _handle_invoice_paid(self, invoice: Any) -> bool:
        context = await self._invoice_context(invoice)
        if context is None:
            return False

        if context.guest_id:
            guest = await find_guest(self.store, guest_id=context.guest_id, customer_id=context.customer_id)
            if guest is None:
                return self._log_unresolved("guest_not_found", guest_id=context.guest_id)
            await record_paid_invoice(
                self.store,
                self.stripe_client,
                invoice,
                kind=AccountKind.GUEST,
                account_id=guest.id,
                payment_type=context.payment_type,
                subscription_id=context.subscription_id,
            )
            return True

        member = await self._invoice_member(context)
        if member is None:
            return self._log_unresolved("member_not_found", subscription_id=context.subscription_id)

        standard_cents = payoff_cents = 0
        if context.payment_type == statuses.MEMBERSHIP:
            md = context.metadata
            standard_cents = first_positive_cents(md.get("standardAmountCents"), md.get("standard_amount_cents"))
            payoff_cents = first_positive_cents(md.get("payoffAmountCents"), md.get("payoff_amount_cents"))
            if not standard_cents:
                if context.subscription is None:
                    context.subscription = await self._retrieve_subscription(context.subscription_id)
                sub_md = metadata_of(context.subscription)
                standard_cents = first_positive_cents(sub_md.get("standardAmountCents"))
                payoff_cents = payoff_cents or first_positive_cents(sub_md.get("payoffAmountCents"))

        await record_paid_invoice(
            self.store,
            self.stripe_client,
            invoice,
            kind=AccountKind.MEMBER,
            account_id=member.id,
            payment_type=context.payment_type,
            subscription_id=context.subscription_id,
            standard_cents=standard_cents,
            payoff_cents=payoff_cents,
        )
        return True

    async def _handle_invoice_payment_failed(self, invoice: Any) -> bool:
        context = await self._invoice_context(invoice)
        if context is None or context.payment_type != statuses.MEMBERSHIP:
            return False
        member = await self._invoice_member(context)
        if member is None:
            return self._log_unresolved("member_not_found", subscription_id=context.subscription_id)

        line = first_line(invoice)
        amount_cents = first_positive_cents(safe_get(invoice, "amount_due"), safe_get(line, "amount"))
        await ledger_service.record_failed_invoice(
            self.store,
            AccountKind.MEMBER,
            member.id,
            invoice_id=object_id(invoice),
            amount_cents=amount_cents,
            period=invoice_period(invoice),
            subscription_id=context.subscription_id,
            customer_id=context.customer_id,
        )
        return True

    async def _handle_subscription_deleted(self, subscription: Any) -> bool:
        record = await recurring_service.terminate_by_subscription(self.store, object_id(subscription))
        return record is not None
