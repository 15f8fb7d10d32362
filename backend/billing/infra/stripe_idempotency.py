from __future__ import annotations

import hashlib
import json
from typing import Any

KEY_NAMESPACE = "billing"


def _normalize(name: str, value: Any) -> Any:
    if name == "currency" and isinstance(value, str):
        return value.lower()
    return value


def make_stripe_idempotency_key(purpose: str, **scope: Any) -> str:
    """Key for a Stripe mutation derived only from what the mutation is about.

    The same ``purpose`` and scope (account, subscription, amount, ...) always
    give the same key, so a retried call is answered from Stripe's idempotency
    cache instead of creating a second subscription or cancellation. ``None``
    scope values are ignored; nested dicts are order-independent.

    Shape: ``billing:<purpose>:<40 hex chars>``.
    """
    material = {name: _normalize(name, value) for name, value in scope.items() if value is not None}
    encoded = json.dumps(
        {"purpose": purpose, "scope": material},
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )
    digest = hashlib.sha256(encoded.encode("utf-8")).hexdigest()[:40]
    return f"{KEY_NAMESPACE}:{purpose}:{digest}"
