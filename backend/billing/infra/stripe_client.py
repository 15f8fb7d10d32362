from __future__ import annotations

import functools
import inspect
import logging
from typing import Any, Callable

import anyio

from billing.domain.errors import InvalidSignature, ProviderCallFailed
from billing.settings import Settings, settings
from billing.shared.circuit_breaker import CircuitBreaker, CircuitBreakerOpenError

logger = logging.getLogger(__name__)

# Client methods that change state at the provider and so must carry an idempotency key.
MUTATING_METHOD_PREFIXES = ("create_", "cancel_", "set_", "update_")


def build_stripe_circuit(app_settings: Settings) -> CircuitBreaker:
    return CircuitBreaker(
        name="stripe",
        failure_threshold=app_settings.stripe_circuit_failure_threshold,
        recovery_time=app_settings.stripe_circuit_recovery_seconds,
        window_seconds=app_settings.stripe_circuit_window_seconds,
        half_open_max_calls=app_settings.stripe_circuit_half_open_max_calls,
        timeout_seconds=app_settings.stripe_request_timeout_seconds,
    )


stripe_circuit = build_stripe_circuit(settings)


def _idempotency(idempotency_key: str | None) -> dict[str, str]:
    return {"idempotency_key": idempotency_key} if idempotency_key else {}


class StripeClient:
    """Thin async facade over the ``stripe`` SDK.

    SDK calls are blocking, so each one runs on a worker thread inside the shared
    circuit breaker. Every failure, including an open circuit, is raised as
    ``ProviderCallFailed``. Missing credentials fall back to the global settings.
    """

    def __init__(
        self,
        *,
        secret_key: str | None,
        webhook_secret: str | None,
        currency: str | None = None,
        stripe_sdk: Any | None = None,
    ) -> None:
        if stripe_sdk is None:
            import stripe as stripe_sdk  # type: ignore

        self.stripe = stripe_sdk
        self.secret_key = secret_key or settings.stripe_secret_key
        self.webhook_secret = webhook_secret or settings.stripe_webhook_secret
        self.currency = currency or settings.stripe_currency

    async def _request(self, operation: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        if not self.secret_key:
            raise ProviderCallFailed(detail="Stripe secret key not configured")
        self.stripe.api_key = self.secret_key
        blocking_call = functools.partial(fn, *args, **kwargs)
        try:
            return await stripe_circuit.call(anyio.to_thread.run_sync, blocking_call)
        except CircuitBreakerOpenError as exc:
            logger.warning("stripe_circuit_open", extra={"extra": {"operation": operation}})
            raise ProviderCallFailed(detail="Stripe temporarily unavailable") from exc
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "stripe_call_failed",
                extra={"extra": {"operation": operation, "reason": type(exc).__name__}},
            )
            raise ProviderCallFailed(detail=str(exc) or "Stripe request failed") from exc

    async def verify_webhook(self, payload: bytes, signature: str | None) -> Any:
        # Local HMAC check; it never touches the network or the circuit.
        if not self.webhook_secret:
            raise InvalidSignature(detail="webhook secret not configured")
        if not signature:
            raise InvalidSignature(detail="missing stripe-signature header.")
        try:
            return self.stripe.Webhook.construct_event(
                payload=payload,
                sig_header=signature,
                secret=self.webhook_secret,
            )
        except Exception as exc:  # noqa: BLE001
            raise InvalidSignature(detail=str(exc) or type(exc).__name__) from exc

    async def retrieve_subscription(self, subscription_id: str, *, expand: list[str] | None = None) -> Any:
        params = {"expand": expand} if expand else {}
        return await self._request("subscription.retrieve", self.stripe.Subscription.retrieve, subscription_id, **params)

    async def retrieve_invoice(self, invoice_id: str) -> Any:
        return await self._request(
            "invoice.retrieve", self.stripe.Invoice.retrieve, invoice_id, expand=["payment_intent"]
        )

    async def retrieve_setup_intent(self, setup_intent_id: str) -> Any:
        return await self._request("setup_intent.retrieve", self.stripe.SetupIntent.retrieve, setup_intent_id)

    async def cancel_subscription(self, subscription_id: str, *, idempotency_key: str | None = None) -> Any:
        return await self._request(
            "subscription.cancel",
            self.stripe.Subscription.cancel,
            subscription_id,
            **_idempotency(idempotency_key),
        )

    async def set_customer_default_payment_method(
        self,
        customer_id: str,
        payment_method_id: str,
        *,
        idempotency_key: str | None = None,
    ) -> Any:
        return await self._request(
            "customer.modify",
            self.stripe.Customer.modify,
            customer_id,
            invoice_settings={"default_payment_method": payment_method_id},
            **_idempotency(idempotency_key),
        )

    async def create_subscription(
        self,
        *,
        customer_id: str,
        amount_cents: int,
        default_payment_method: str | None = None,
        metadata: dict[str, str] | None = None,
        product_name: str = "Monthly Membership",
        idempotency_key: str | None = None,
    ) -> Any:
        """Start a monthly subscription with an inline price of ``amount_cents``."""
        monthly_price = {
            "currency": self.currency,
            "product_data": {"name": product_name},
            "recurring": {"interval": "month"},
            "unit_amount": amount_cents,
        }
        params: dict[str, Any] = {
            "customer": customer_id,
            "items": [{"price_data": monthly_price, "quantity": 1}],
            "metadata": metadata or {},
            "expand": ["latest_invoice.payment_intent"],
        }
        if default_payment_method:
            params["default_payment_method"] = default_payment_method
        return await self._request(
            "subscription.create",
            self.stripe.Subscription.create,
            **params,
            **_idempotency(idempotency_key),
        )


def build_stripe_client(app_settings: Settings) -> StripeClient:
    return StripeClient(
        secret_key=app_settings.stripe_secret_key,
        webhook_secret=app_settings.stripe_webhook_secret,
        currency=app_settings.stripe_currency,
    )


def resolve_client(app_or_state: Any) -> Any:
    """Return the client installed on the app state, building and caching one if absent."""
    state = getattr(app_or_state, "state", app_or_state)
    client = getattr(state, "stripe_client", None)
    if client is None:
        client = build_stripe_client(getattr(state, "app_settings", None) or settings)
        state.stripe_client = client
    return client


async def call_stripe_client_method(client: Any, method_name: str, /, *args: Any, **kwargs: Any) -> Any:
    """Invoke ``method_name`` on a real or fake client, awaiting it when needed.

    Mutations without an ``idempotency_key`` are refused before any network call.
    """
    method = getattr(client, method_name, None)
    if method is None:
        raise AttributeError(f"Stripe client missing method {method_name}")
    if method_name.startswith(MUTATING_METHOD_PREFIXES) and not kwargs.get("idempotency_key"):
        raise ValueError(f"Stripe mutation '{method_name}' requires idempotency_key to be provided")
    result = method(*args, **kwargs)
    return await result if inspect.isawaitable(result) else result
