import asyncio
import os
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

TEST_DB = Path(__file__).resolve().parent / "billing-test.db"
os.environ.setdefault("APP_ENV", "dev")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{TEST_DB}")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from billing.infra.db import Base  # noqa: E402
from billing.infra.entity_store import EntityStore  # noqa: E402
from billing.infra.stripe_client import build_stripe_circuit  # noqa: E402
from billing.main import app  # noqa: E402
from billing.settings import settings  # noqa: E402

# Settings and app.state attributes that tests mutate; restored after every test.
MUTABLE_SETTINGS = (
    "admin_basic_username",
    "admin_basic_password",
    "stripe_webhook_secret",
    "metrics_token",
    "app_env",
    "billing_time_zone",
)
MUTABLE_APP_STATE = ("metrics", "app_settings", "db_session_factory", "stripe_client")

_ABSENT = object()


def _snapshot(target, names) -> dict:
    return {name: getattr(target, name, _ABSENT) for name in names}


def _restore(target, snapshot: dict) -> None:
    for name, value in snapshot.items():
        if value is not _ABSENT:
            setattr(target, name, value)
        elif hasattr(target, name):
            delattr(target, name)


@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"


@pytest.fixture(scope="session")
def test_engine():
    TEST_DB.unlink(missing_ok=True)
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{TEST_DB}",
        connect_args={"check_same_thread": False, "timeout": 30},
        poolclass=StaticPool,
    )

    async def _create_schema() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(_create_schema())
    yield engine
    asyncio.run(engine.dispose())
    TEST_DB.unlink(missing_ok=True)


@pytest.fixture(scope="session")
def async_session_maker(test_engine):
    return async_sessionmaker(test_engine, expire_on_commit=False)


@pytest.fixture()
def store(async_session_maker):
    return EntityStore(async_session_maker)


@pytest.fixture(autouse=True)
def isolated_settings_and_state():
    saved_settings = _snapshot(settings, MUTABLE_SETTINGS)
    saved_state = _snapshot(app.state, MUTABLE_APP_STATE)
    yield
    _restore(settings, saved_settings)
    _restore(app.state, saved_state)


@pytest.fixture(autouse=True)
def reset_stripe_circuit(monkeypatch):
    circuit = build_stripe_circuit(settings)
    monkeypatch.setattr("billing.infra.stripe_client.stripe_circuit", circuit)
    yield circuit


@pytest.fixture(autouse=True)
def empty_tables(test_engine):
    async def _wipe() -> None:
        async with test_engine.begin() as conn:
            for table in reversed(Base.metadata.sorted_tables):
                await conn.execute(table.delete())

    asyncio.run(_wipe())


@pytest.fixture()
def admin_credentials():
    settings.admin_basic_username = "admin"
    settings.admin_basic_password = "secret"
    return ("admin", "secret")


def _test_client(async_session_maker, **kwargs):
    app.state.db_session_factory = async_session_maker
    return TestClient(app, **kwargs)


@pytest.fixture()
def client(async_session_maker):
    with _test_client(async_session_maker) as test_client:
        yield test_client


@pytest.fixture()
def client_no_raise(async_session_maker):
    """Client that turns unhandled server errors into 500 responses."""
    with _test_client(async_session_maker, raise_server_exceptions=False) as test_client:
        yield test_client


class FakeStripeClient:
    """Records calls; ``failures`` maps a method name to the exception it raises."""

    def __init__(self, event=None) -> None:
        self.event = event
        self.subscriptions: dict = {}
        self.invoices: dict = {}
        self.setup_intents: dict = {}
        self.created_subscriptions: list = []
        self.failures: dict = {}
        self.calls: list = []

    def _record(self, name, *args, **kwargs) -> None:
        self.calls.append((name, args, kwargs))
        failure = self.failures.get(name)
        if failure is not None:
            raise failure

    def verify_webhook(self, payload, signature):
        self._record("verify_webhook", payload, signature)
        return self.event

    async def retrieve_subscription(self, subscription_id, *, expand=None):
        self._record("retrieve_subscription", subscription_id, expand=expand)
        return self.subscriptions.get(subscription_id, {"id": subscription_id, "metadata": {}})

    async def retrieve_invoice(self, invoice_id):
        self._record("retrieve_invoice", invoice_id)
        return self.invoices[invoice_id]

    async def retrieve_setup_intent(self, setup_intent_id):
        self._record("retrieve_setup_intent", setup_intent_id)
        return self.setup_intents[setup_intent_id]

    async def cancel_subscription(self, subscription_id, *, idempotency_key=None):
        self._record("cancel_subscription", subscription_id, idempotency_key=idempotency_key)
        return {"id": subscription_id, "status": "canceled"}

    async def set_customer_default_payment_method(self, customer_id, payment_method_id, *, idempotency_key=None):
        self._record(
            "set_customer_default_payment_method",
            customer_id,
            payment_method_id,
            idempotency_key=idempotency_key,
        )
        return {"id": customer_id}

    async def create_subscription(self, **kwargs):
        self._record("create_subscription", **kwargs)
        subscription = {
            "id": f"sub_created_{len(self.created_subscriptions) + 1}",
            "metadata": kwargs.get("metadata") or {},
            "latest_invoice": None,
        }
        self.created_subscriptions.append(subscription)
        return subscription

    def called(self, name: str) -> list:
        return [call for call in self.calls if call[0] == name]


@pytest.fixture()
def fake_stripe():
    return FakeStripeClient()


@pytest.fixture()
def webhook_client(client, fake_stripe, monkeypatch):
    monkeypatch.setattr(settings, "stripe_webhook_secret", "whsec_test")
    app.state.stripe_client = fake_stripe
    return client
