import asyncio
from datetime import datetime, timezone
from decimal import Decimal

from billing.domain.errors import InvalidSignature, ProviderCallFailed
from billing.domain.recurring import service as recurring_service
from billing.domain.recurring import statuses
from billing.settings import settings


def _event(event_id: str, event_type: str, obj: dict) -> dict:
    return {
        "id": event_id,
        "type": event_type,
        "created": int(datetime.now(tz=timezone.utc).timestamp()),
        "data": {"object": obj},
    }


def _post(client, body: bytes = b"{}"):
    return client.post("/v1/payments/stripe/webhook", content=body, headers={"Stripe-Signature": "t=1"})


def _create(store, entity: str, values: dict):
    return asyncio.run(store.create(entity, values))


def _get(store, entity: str, record_id: str):
    return asyncio.run(store.get(entity, record_id))


def _filter(store, entity: str, where: dict):
    return asyncio.run(store.filter(entity, where))


def _checkout_payment(event_id: str, member_id: str, *, payment_intent: str = "pi_1", amount: int = 2000) -> dict:
    return _event(
        event_id,
        "checkout.session.completed",
        {
            "id": f"cs_{event_id}",
            "mode": "payment",
            "customer": "cus_1",
            "payment_intent": payment_intent,
            "amount_total": amount,
            "metadata": {"memberId": member_id, "amountCents": str(amount), "description": "Dues payment"},
        },
    )


def _checkout_subscription(event_id: str, member_id: str, subscription_id: str, **metadata: str) -> dict:
    return _event(
        event_id,
        "checkout.session.completed",
        {
            "id": f"cs_{event_id}",
            "mode": "subscription",
            "customer": "cus_1",
            "subscription": subscription_id,
            "metadata": {"memberId": member_id, **metadata},
        },
    )


def _paid_invoice(invoice_id: str, subscription_id: str, amount: int, **line_metadata: str) -> dict:
    return {
        "id": invoice_id,
        "subscription": subscription_id,
        "customer": "cus_1",
        "status": "paid",
        "amount_paid": amount,
        "lines": {
            "data": [
                {
                    "period": {"start": int(datetime(2026, 6, 1, tzinfo=timezone.utc).timestamp())},
                    "metadata": line_metadata,
                }
            ]
        },
    }


def test_webhook_disabled_without_secret(client):
    settings.stripe_webhook_secret = None

    response = _post(client)

    assert response.status_code == 503


def test_webhook_missing_signature_rejected(webhook_client, fake_stripe):
    response = webhook_client.post("/v1/payments/stripe/webhook", content=b"{}")

    assert response.status_code == 400
    assert response.text.startswith("Webhook Error:")
    assert fake_stripe.called("verify_webhook") == []


def test_webhook_invalid_signature_rejected(webhook_client, fake_stripe, store):
    fake_stripe.failures["verify_webhook"] = InvalidSignature(detail="No signatures found matching the expected signature")

    response = _post(webhook_client)

    assert response.status_code == 400
    assert response.text == "Webhook Error: No signatures found matching the expected signature"
    assert asyncio.run(store.list("ProcessedEvent")) == []


def test_webhook_event_without_id_rejected(webhook_client, fake_stripe):
    fake_stripe.event = {"type": "invoice.paid", "data": {"object": {}}}

    response = _post(webhook_client)

    assert response.status_code == 400
    assert "missing event id" in response.text


def test_checkout_payment_reduces_balance_once(webhook_client, fake_stripe, store):
    member = _create(store, "Member", {"name": "Ada", "total_owed": Decimal("50.00")})
    fake_stripe.event = _checkout_payment("evt_pay_1", member.id)

    first = _post(webhook_client)
    assert first.status_code == 200
    assert first.json() == {"received": True}
    assert _get(store, "Member", member.id).total_owed == Decimal("30.00")

    replay = _post(webhook_client)
    assert replay.status_code == 200
    assert replay.json() == {"received": True, "duplicate": True}
    assert _get(store, "Member", member.id).total_owed == Decimal("30.00")

    # Same payment delivered under a fresh event id.
    fake_stripe.event = _checkout_payment("evt_pay_2", member.id)
    again = _post(webhook_client)
    assert again.json() == {"received": True}
    assert _get(store, "Member", member.id).total_owed == Decimal("30.00")

    payments = _filter(store, "Transaction", {"account_id": member.id})
    assert len(payments) == 1
    assert payments[0].type == "payment"
    assert payments[0].provider_payment_id == "pi_1"
    assert payments[0].description == "Dues payment"


def test_checkout_payment_can_leave_credit(webhook_client, fake_stripe, store):
    guest = _create(store, "Guest", {"name": "Visitor", "total_owed": Decimal("10.00")})
    fake_stripe.event = _event(
        "evt_guest_pay",
        "checkout.session.completed",
        {"id": "cs_g", "mode": "payment", "payment_intent": "pi_g", "amount_total": 2500, "metadata": {"guestId": guest.id}},
    )

    assert _post(webhook_client).status_code == 200

    assert _get(store, "Guest", guest.id).total_owed == Decimal("-15.00")
    entries = _filter(store, "GuestTransaction", {"account_id": guest.id})
    assert [entry.description for entry in entries] == ["Stripe payment"]


def test_unknown_event_type_acknowledged_and_deduplicated(webhook_client, fake_stripe, store):
    fake_stripe.event = _event("evt_other", "customer.created", {"id": "cus_1"})

    assert _post(webhook_client).json() == {"received": True}
    assert _post(webhook_client).json() == {"received": True, "duplicate": True}

    processed = asyncio.run(store.list("ProcessedEvent"))
    assert [row.event_id for row in processed] == ["evt_other"]


def test_unresolvable_account_acknowledged(webhook_client, fake_stripe, store):
    fake_stripe.event = _checkout_payment("evt_ghost", "missing-member")

    response = _post(webhook_client)

    assert response.status_code == 200
    assert _filter(store, "Transaction", {"provider_payment_id": "pi_1"}) == []


def test_failed_membership_invoice_accrues_charge(webhook_client, fake_stripe, store):
    member = _create(store, "Member", {"name": "Ada", "total_owed": Decimal("0.00"), "membership_active": True})
    invoice = {
        "id": "in_failed_1",
        "subscription": "sub_m",
        "customer": "cus_1",
        "amount_due": 3000,
        "lines": {
            "data": [
                {
                    "amount": 3000,
                    "period": {"start": int(datetime(2026, 3, 1, tzinfo=timezone.utc).timestamp())},
                    "metadata": {"memberId": member.id, "paymentType": statuses.MEMBERSHIP},
                }
            ]
        },
    }
    fake_stripe.event = _event("evt_fail_1", "invoice.payment_failed", invoice)

    assert _post(webhook_client).status_code == 200
    # A second delivery of the same invoice under a new event id changes nothing.
    fake_stripe.event = _event("evt_fail_2", "invoice.payment_failed", invoice)
    assert _post(webhook_client).status_code == 200

    assert _get(store, "Member", member.id).total_owed == Decimal("30.00")
    entries = _filter(store, "Transaction", {"account_id": member.id})
    assert len(entries) == 1
    assert entries[0].type == "charge"
    assert entries[0].description == "Unpaid Monthly Membership - March 2026"


def test_failed_non_membership_invoice_ignored(webhook_client, fake_stripe, store):
    member = _create(store, "Member", {"name": "Ada", "total_owed": Decimal("0.00")})
    fake_stripe.event = _event(
        "evt_fail_extra",
        "invoice.payment_failed",
        {
            "id": "in_extra",
            "subscription": "sub_x",
            "amount_due": 1500,
            "lines": {"data": [{"metadata": {"memberId": member.id, "paymentType": statuses.ADDITIONAL_MONTHLY}}]},
        },
    )

    assert _post(webhook_client).status_code == 200
    assert _filter(store, "Transaction", {"account_id": member.id}) == []


def test_membership_invoice_paid_reduces_by_standard_and_payoff(webhook_client, fake_stripe, store):
    member = _create(store, "Member", {"name": "Ada", "total_owed": Decimal("100.00")})
    fake_stripe.event = _event(
        "evt_paid_m",
        "invoice.paid",
        {
            "id": "in_m_1",
            "subscription": "sub_m",
            "customer": "cus_1",
            "amount_paid": 4000,
            "lines": {
                "data": [
                    {
                        "period": {"start": int(datetime(2026, 4, 1, tzinfo=timezone.utc).timestamp())},
                        "metadata": {
                            "memberId": member.id,
                            "paymentType": statuses.MEMBERSHIP,
                            "standardAmountCents": "3000",
                            "payoffAmountCents": "1000",
                        },
                    }
                ]
            },
        },
    )

    assert _post(webhook_client).json() == {"received": True}
    assert _post(webhook_client).json() == {"received": True, "duplicate": True}

    assert _get(store, "Member", member.id).total_owed == Decimal("60.00")
    entries = sorted(_filter(store, "Transaction", {"account_id": member.id}), key=lambda e: e.type)
    assert [(e.type, e.amount) for e in entries] == [("charge", Decimal("40.00")), ("payment", Decimal("40.00"))]
    assert entries[0].description == "Monthly Membership - April 2026"
    assert entries[1].description == "Monthly Membership - April 2026 (Stripe)"


def test_invoice_paid_resolves_account_from_subscription(webhook_client, fake_stripe, store):
    guest = _create(store, "Guest", {"name": "Visitor", "total_owed": Decimal("5.00")})
    fake_stripe.subscriptions["sub_g"] = {
        "id": "sub_g",
        "metadata": {"guestId": guest.id, "paymentType": statuses.GUEST_DONATION},
    }
    fake_stripe.event = _event(
        "evt_paid_g",
        "invoice.paid",
        {"id": "in_g_1", "subscription": "sub_g", "amount_paid": 1000, "lines": {"data": [{"metadata": {}}]}},
    )

    assert _post(webhook_client).status_code == 200

    # Donations are recorded but never move the balance.
    assert _get(store, "Guest", guest.id).total_owed == Decimal("5.00")
    entries = _filter(store, "GuestTransaction", {"account_id": guest.id})
    assert {e.description for e in entries} == {"Guest Monthly Donation", "Guest Monthly Donation (Stripe)"}


def test_dispatch_failure_releases_claim(webhook_client, fake_stripe, store):
    member = _create(store, "Member", {"name": "Ada", "total_owed": Decimal("30.00")})
    fake_stripe.failures["retrieve_subscription"] = ProviderCallFailed(detail="Stripe temporarily unavailable")
    fake_stripe.event = _event(
        "evt_retry",
        "invoice.paid",
        {"id": "in_retry", "subscription": "sub_r", "customer": "cus_9", "amount_paid": 3000, "lines": {"data": []}},
    )

    failed = _post(webhook_client)
    assert failed.status_code == 500
    assert failed.json() == {"message": "Stripe temporarily unavailable"}
    assert _get(store, "ProcessedEvent", "evt_retry") is None

    fake_stripe.failures.clear()
    fake_stripe.subscriptions["sub_r"] = {"id": "sub_r", "metadata": {"memberId": member.id}}
    retried = _post(webhook_client)
    assert retried.json() == {"received": True}
    assert _get(store, "ProcessedEvent", "evt_retry") is not None
    assert _get(store, "Member", member.id).total_owed == Decimal("0.00")


def test_subscription_deleted_terminates_plan(webhook_client, fake_stripe, store):
    member = _create(store, "Member", {"name": "Ada"})
    plan = _create(
        store,
        "RecurringPayment",
        {
            "account_kind": "member",
            "account_id": member.id,
            "payment_type": statuses.ADDITIONAL_MONTHLY,
            "amount_per_month": Decimal("15.00"),
            "start_date": datetime(2026, 1, 1).date(),
            "provider_subscription_id": "sub_del",
        },
    )
    fake_stripe.event = _event("evt_del", "customer.subscription.deleted", {"id": "sub_del"})

    assert _post(webhook_client).status_code == 200

    updated = _get(store, "RecurringPayment", plan.id)
    assert updated.is_active is False
    assert updated.ended_date is not None


def test_subscription_deleted_unknown_is_noop(webhook_client, fake_stripe, store):
    fake_stripe.event = _event("evt_del_unknown", "customer.subscription.deleted", {"id": "sub_unknown"})

    response = _post(webhook_client)

    assert response.status_code == 200
    assert asyncio.run(store.list("RecurringPayment")) == []


def test_checkout_setup_saves_payment_method(webhook_client, fake_stripe, store):
    member = _create(store, "Member", {"name": "Ada"})
    fake_stripe.setup_intents["seti_1"] = {"id": "seti_1", "payment_method": "pm_1"}
    fake_stripe.event = _event(
        "evt_setup",
        "checkout.session.completed",
        {"id": "cs_setup", "mode": "setup", "customer": "cus_setup", "setup_intent": "seti_1", "metadata": {"memberId": member.id}},
    )

    assert _post(webhook_client).status_code == 200

    updated = _get(store, "Member", member.id)
    assert updated.provider_default_payment_method_id == "pm_1"
    assert updated.provider_customer_id == "cus_setup"
    [(_, args, kwargs)] = fake_stripe.called("set_customer_default_payment_method")
    assert args == ("cus_setup", "pm_1")
    assert kwargs["idempotency_key"].startswith("billing:default_payment_method:")


def test_checkout_payment_without_amount_writes_nothing(webhook_client, fake_stripe, store):
    member = _create(store, "Member", {"name": "Ada", "total_owed": Decimal("25.00")})
    fake_stripe.event = _checkout_payment("evt_free", member.id, payment_intent="pi_free", amount=0)

    response = _post(webhook_client)

    assert response.status_code == 200
    assert _filter(store, "Transaction", {"account_id": member.id}) == []
    assert _get(store, "Member", member.id).total_owed == Decimal("25.00")


def test_checkout_subscription_starts_membership(webhook_client, fake_stripe, store):
    member = _create(store, "Member", {"name": "Ada", "total_owed": Decimal("60.00")})
    first_invoice = _paid_invoice("in_first", "sub_new", 3000)
    fake_stripe.subscriptions["sub_new"] = {
        "id": "sub_new",
        "metadata": {"standardAmountCents": "3000"},
        "latest_invoice": first_invoice,
    }
    fake_stripe.event = _checkout_subscription(
        "evt_sub_m", member.id, "sub_new", paymentType=statuses.MEMBERSHIP, amountCents="3000"
    )

    assert _post(webhook_client).json() == {"received": True}

    [plan] = _filter(store, "RecurringPayment", {"provider_subscription_id": "sub_new"})
    assert plan.payment_type == statuses.MEMBERSHIP
    assert plan.amount_per_month == Decimal("30.00")
    assert plan.is_active is True
    updated = _get(store, "Member", member.id)
    assert updated.membership_active is True
    assert updated.provider_subscription_id == "sub_new"
    assert updated.total_owed == Decimal("30.00")

    # The provider later announces the same first invoice on its own.
    fake_stripe.event = _event(
        "evt_sub_m_invoice",
        "invoice.paid",
        _paid_invoice(
            "in_first",
            "sub_new",
            3000,
            memberId=member.id,
            paymentType=statuses.MEMBERSHIP,
            standardAmountCents="3000",
        ),
    )
    assert _post(webhook_client).json() == {"received": True}

    entries = _filter(store, "Transaction", {"account_id": member.id})
    assert sorted(e.type for e in entries) == ["charge", "payment"]
    assert _get(store, "Member", member.id).total_owed == Decimal("30.00")


def test_replayed_subscription_checkout_is_dispatched_again(webhook_client, fake_stripe, store):
    member = _create(store, "Member", {"name": "Ada"})
    fake_stripe.event = _checkout_subscription("evt_sub_replay", member.id, "sub_rp", paymentType=statuses.MEMBERSHIP)

    assert _post(webhook_client).json() == {"received": True}
    asyncio.run(store.update("Member", member.id, {"membership_active": False}))

    replay = _post(webhook_client)

    assert replay.json() == {"received": True, "duplicate": True}
    assert _get(store, "Member", member.id).membership_active is True
    assert len(fake_stripe.called("retrieve_subscription")) == 2
    assert len(asyncio.run(store.list("RecurringPayment"))) == 1


def test_checkout_unknown_payment_type_falls_back_to_additional_monthly(webhook_client, fake_stripe, store):
    member = _create(store, "Member", {"name": "Ada"})
    fake_stripe.event = _checkout_subscription(
        "evt_sub_tip", member.id, "sub_tip", paymentType="tip", amountCents="1500"
    )

    assert _post(webhook_client).status_code == 200

    [plan] = _filter(store, "RecurringPayment", {"provider_subscription_id": "sub_tip"})
    assert plan.payment_type == statuses.ADDITIONAL_MONTHLY
    assert plan.amount_per_month == Decimal("15.00")
    assert _get(store, "Member", member.id).membership_active is False


def test_payoff_invoice_before_checkout_counts_toward_plan(webhook_client, fake_stripe, store):
    member = _create(store, "Member", {"name": "Ada", "total_owed": Decimal("150.00")})
    invoice = _paid_invoice("in_p_first", "sub_p", 5000, memberId=member.id, paymentType=statuses.BALANCE_PAYOFF)
    fake_stripe.event = _event("evt_p_invoice", "invoice.paid", invoice)
    assert _post(webhook_client).status_code == 200

    fake_stripe.subscriptions["sub_p"] = {"id": "sub_p", "metadata": {}, "latest_invoice": invoice}
    fake_stripe.event = _checkout_subscription(
        "evt_p_checkout",
        member.id,
        "sub_p",
        paymentType=statuses.BALANCE_PAYOFF,
        amountCents="5000",
        payoffTotalCents="10000",
    )
    assert _post(webhook_client).status_code == 200

    [plan] = _filter(store, "RecurringPayment", {"provider_subscription_id": "sub_p"})
    assert plan.total_amount == Decimal("100.00")
    assert plan.remaining_amount == Decimal("50.00")
    assert plan.is_active is True
    assert _get(store, "Member", member.id).total_owed == Decimal("100.00")
    assert fake_stripe.called("cancel_subscription") == []


def test_payoff_progress_survives_interrupted_delivery(webhook_client, fake_stripe, store, monkeypatch):
    member = _create(store, "Member", {"name": "Ada", "total_owed": Decimal("100.00")})
    fake_stripe.event = _checkout_subscription(
        "evt_p2_checkout",
        member.id,
        "sub_p2",
        paymentType=statuses.BALANCE_PAYOFF,
        amountCents="5000",
        payoffTotalCents="10000",
    )
    assert _post(webhook_client).status_code == 200

    sync = recurring_service.sync_payoff_progress
    attempts: list[str] = []

    async def _fails_once(store, subscription_id, **kwargs):
        attempts.append(subscription_id)
        if len(attempts) == 1:
            raise ProviderCallFailed(detail="Stripe temporarily unavailable")
        return await sync(store, subscription_id, **kwargs)

    monkeypatch.setattr(recurring_service, "sync_payoff_progress", _fails_once)
    fake_stripe.event = _event(
        "evt_p2_invoice",
        "invoice.paid",
        _paid_invoice("in_p2", "sub_p2", 5000, memberId=member.id, paymentType=statuses.BALANCE_PAYOFF),
    )

    assert _post(webhook_client).status_code == 500
    [plan] = _filter(store, "RecurringPayment", {"provider_subscription_id": "sub_p2"})
    assert plan.remaining_amount == Decimal("100.00")

    assert _post(webhook_client).json() == {"received": True}

    plan = _get(store, "RecurringPayment", plan.id)
    assert plan.remaining_amount == Decimal("50.00")
    assert attempts == ["sub_p2", "sub_p2"]
    assert _get(store, "Member", member.id).total_owed == Decimal("50.00")
    payments = _filter(store, "Transaction", {"provider_invoice_id": "in_p2", "type": "payment"})
    assert len(payments) == 1
