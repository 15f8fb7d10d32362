import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse, PlainTextResponse

from billing.dependencies import get_entity_store, get_stripe_client
from billing.domain.errors import InvalidSignature, MalformedEvent
from billing.domain.webhooks.service import EventGate
from billing.infra.entity_store import EntityStore
from billing.infra.metrics import metrics
from billing.settings import settings

router = APIRouter()
logger = logging.getLogger(__name__)


def _webhook_secret_configured(request: Request) -> bool:
    app_settings = getattr(request.app.state, "app_settings", None)
    return bool(getattr(app_settings, "stripe_webhook_secret", None) or settings.stripe_webhook_secret)


@router.post("/v1/payments/stripe/webhook", status_code=status.HTTP_200_OK)
async def stripe_webhook(
    http_request: Request,
    store: EntityStore = Depends(get_entity_store),
    stripe_client: Any = Depends(get_stripe_client),
):
    """Stripe webhook endpoint.

    Keeps Stripe's response contract rather than problem-details: plain-text 400
    for anything rejected before business logic, ``{"message"}`` with 500 when
    processing fails so Stripe redelivers.
    """
    if not _webhook_secret_configured(http_request):
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Stripe webhook disabled")

    payload = await http_request.body()
    signature = http_request.headers.get("Stripe-Signature")
    if not signature:
        metrics.record_webhook_error("missing_signature")
        return PlainTextResponse("Webhook Error: missing stripe-signature header.", status_code=400)

    gate = EventGate(store, stripe_client)
    try:
        result = await gate.handle(payload, signature)
    except InvalidSignature as exc:
        metrics.record_stripe_webhook("rejected")
        metrics.record_webhook_error("invalid_signature")
        logger.warning("stripe_webhook_invalid", extra={"extra": {"reason": exc.detail}})
        return PlainTextResponse(f"Webhook Error: {exc.detail}", status_code=400)
    except MalformedEvent as exc:
        metrics.record_stripe_webhook("rejected")
        logger.warning("stripe_webhook_malformed", extra={"extra": {"reason": exc.detail}})
        return PlainTextResponse(f"Webhook Error: {exc.detail}", status_code=400)
    except Exception as exc:  # noqa: BLE001
        logger.exception("stripe_webhook_error", extra={"extra": {"reason": type(exc).__name__}})
        message = getattr(exc, "detail", None) or str(exc) or type(exc).__name__
        return JSONResponse({"message": message}, status_code=500)
    return result.as_response()
