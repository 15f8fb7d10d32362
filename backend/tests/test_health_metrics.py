import json
import logging

from billing.infra.logging import configure_logging
from billing.infra.metrics import configure_metrics
from billing.main import app
from billing.settings import settings


def _remove_route(path: str) -> None:
    app.router.routes = [route for route in app.router.routes if getattr(route, "path", None) != path]


def test_healthz(client):
    assert client.get("/healthz").json() == {"status": "ok"}
    assert client.head("/healthz").status_code == 200


def test_readyz_reports_database_and_jobs(client):
    response = client.get("/readyz")

    assert response.status_code == 200
    body = response.json()
    assert body["ok"] is True
    checks = {check["name"]: check for check in body["checks"]}
    assert checks["db"]["ok"] is True
    assert checks["jobs"]["message"] == "job heartbeat missing"


def test_metrics_endpoint_requires_token_in_prod(client):
    settings.metrics_token = "secret-token"
    settings.app_env = "prod"
    app.state.metrics = configure_metrics(True)

    assert client.get("/metrics").status_code == 401
    assert client.get("/metrics", headers={"Authorization": "Bearer wrong"}).status_code == 401

    authorized = client.get("/metrics", headers={"Authorization": "Bearer secret-token"})
    assert authorized.status_code == 200
    assert "stripe_webhook_events_total" in authorized.text


def test_metrics_disabled_returns_404(client):
    app.state.metrics = configure_metrics(False)

    assert client.get("/metrics").status_code == 404
    configure_metrics(True)


def test_logging_redacts_secrets(capsys):
    configure_logging()
    logger = logging.getLogger("billing.redaction-test")

    logger.info(
        "sensitive log",
        extra={
            "authorization": "Basic YWRtaW46c2VjcmV0",
            "extra": {
                "signature": "t=1,v1=abc",
                "detail": "bad key sk_test_51abcdef and header t=1700000000,v1=deadbeef",
            },
        },
    )

    captured = capsys.readouterr()
    stream = (captured.out or captured.err).strip().splitlines()
    payload = json.loads(stream[-1])

    assert payload["authorization"] == "[REDACTED]"
    assert payload["signature"] == "[REDACTED]"
    assert "sk_test_51abcdef" not in payload["detail"]
    assert "deadbeef" not in payload["detail"]


def test_unhandled_errors_use_problem_details(client_no_raise):
    async def boom():  # pragma: no cover - executed via HTTP
        raise RuntimeError("boom")

    route_path = "/boom-billing"
    app.router.add_api_route(route_path, boom, methods=["GET"])
    try:
        response = client_no_raise.get(route_path, headers={"X-Request-ID": "req-123"})
    finally:
        _remove_route(route_path)

    assert response.status_code == 500
    body = response.json()
    assert body["request_id"] == "req-123"
    assert body["title"] == "Internal Server Error"
