import logging
import time
from typing import Any

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

logger = logging.getLogger(__name__)

_PLAIN_TEXT = "text/plain; version=0.0.4"
_CIRCUIT_STATE_VALUES = {"closed": 0.0, "half_open": 0.5, "open": 1.0}

# attribute -> (type, metric name, help, labels, extra kwargs)
_INSTRUMENTS: dict[str, tuple[type, str, str, tuple[str, ...], dict[str, Any]]] = {
    "stripe_webhook_events": (
        Counter,
        "stripe_webhook_events_total",
        "Processed payment-provider notifications by outcome.",
        ("outcome",),
        {},
    ),
    "webhook_errors": (
        Counter,
        "webhook_errors_total",
        "Rejected or failed notifications by error type.",
        ("type",),
        {},
    ),
    "ledger_writes": (
        Counter,
        "ledger_writes_total",
        "Ledger rows written or skipped as duplicates.",
        ("account_kind", "type", "outcome"),
        {},
    ),
    "balance_adjustments": (
        Counter,
        "balance_adjustments_total",
        "Balance changes applied by the reconciler.",
        ("account_kind", "direction"),
        {},
    ),
    "recurring_transitions": (
        Counter,
        "recurring_payment_transitions_total",
        "Recurring payment lifecycle transitions.",
        ("transition",),
        {},
    ),
    "http_5xx": (
        Counter,
        "http_5xx_total",
        "Responses with a 5xx status.",
        ("method", "path"),
        {},
    ),
    "http_latency": (
        Histogram,
        "http_request_latency_seconds",
        "Request latency in seconds.",
        ("method", "path", "status_class"),
        {"buckets": (0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10)},
    ),
    "job_heartbeat": (
        Gauge,
        "job_last_heartbeat_timestamp",
        "Unix time of the last jobs runner heartbeat.",
        ("job",),
        {},
    ),
    "job_last_success": (
        Gauge,
        "job_last_success_timestamp",
        "Unix time of the last successful job run.",
        ("job",),
        {},
    ),
    "job_errors": (
        Counter,
        "job_errors_total",
        "Failed job runs and runs that collected item errors.",
        ("job", "reason"),
        {},
    ),
    "circuit_state": (
        Gauge,
        "circuit_state",
        "Circuit breaker state (0=closed, 0.5=half-open, 1=open).",
        ("circuit",),
        {},
    ),
}


class Metrics:
    """Billing instruments on a private registry.

    Every ``record_*`` call is a no-op while metrics are disabled, so domain code
    records unconditionally.
    """

    def __init__(self, enabled: bool = False) -> None:
        self._configure(enabled)

    def _configure(self, enabled: bool) -> None:
        self.enabled = enabled
        self.registry = CollectorRegistry(auto_describe=True)
        self._instruments: dict[str, Any] = {}
        if not enabled:
            return
        for attr, (kind, name, documentation, labels, options) in _INSTRUMENTS.items():
            self._instruments[attr] = kind(name, documentation, labels, registry=self.registry, **options)

    def _labelled(self, attr: str, **labels: str) -> Any | None:
        instrument = self._instruments.get(attr) if self.enabled else None
        if instrument is None:
            return None
        return instrument.labels(**labels)

    def record_stripe_webhook(self, outcome: str) -> None:
        child = self._labelled("stripe_webhook_events", outcome=outcome or "unknown")
        if child is not None:
            child.inc()

    def record_webhook_error(self, error_type: str) -> None:
        child = self._labelled("webhook_errors", type=error_type or "unknown")
        if child is not None:
            child.inc()

    def record_ledger_write(self, account_kind: str, tx_type: str, outcome: str) -> None:
        child = self._labelled("ledger_writes", account_kind=account_kind, type=tx_type, outcome=outcome)
        if child is not None:
            child.inc()

    def record_balance_adjustment(self, account_kind: str, direction: str) -> None:
        child = self._labelled("balance_adjustments", account_kind=account_kind, direction=direction)
        if child is not None:
            child.inc()

    def record_recurring_transition(self, transition: str) -> None:
        child = self._labelled("recurring_transitions", transition=transition)
        if child is not None:
            child.inc()

    def record_http_5xx(self, method: str, path: str) -> None:
        child = self._labelled("http_5xx", method=method, path=path)
        if child is not None:
            child.inc()

    def record_http_latency(self, method: str, path: str, status_code: int, duration_seconds: float) -> None:
        status_class = f"{status_code // 100}xx" if status_code else "unknown"
        child = self._labelled("http_latency", method=method, path=path, status_class=status_class)
        if child is not None:
            child.observe(max(0.0, float(duration_seconds)))

    def record_job_heartbeat(self, job: str, timestamp: float | None = None) -> None:
        child = self._labelled("job_heartbeat", job=job)
        if child is not None:
            child.set(time.time() if timestamp is None else timestamp)

    def record_job_success(self, job: str, timestamp: float | None = None) -> None:
        child = self._labelled("job_last_success", job=job)
        if child is not None:
            child.set(time.time() if timestamp is None else timestamp)

    def record_job_error(self, job: str, reason: str) -> None:
        child = self._labelled("job_errors", job=job, reason=reason or "unknown")
        if child is not None:
            child.inc()

    def record_circuit_state(self, circuit: str, state: str) -> None:
        child = self._labelled("circuit_state", circuit=circuit)
        if child is not None:
            child.set(_CIRCUIT_STATE_VALUES.get(state, -1.0))

    def render(self) -> tuple[bytes, str]:
        if not self.enabled:
            return b"metrics_disabled 1\n", _PLAIN_TEXT
        try:
            return generate_latest(self.registry), CONTENT_TYPE_LATEST
        except Exception:  # noqa: BLE001
            logger.exception("metrics_render_failed")
            return b"metrics_render_failed 1\n", _PLAIN_TEXT


metrics = Metrics(enabled=False)


def configure_metrics(enabled: bool) -> Metrics:
    """Reconfigure the process-wide instance in place and return it."""
    metrics._configure(enabled)
    return metrics
