from typing import Any

from fastapi import Request

from billing.infra.db import get_session_factory
from billing.infra.entity_store import EntityStore
from billing.infra.stripe_client import resolve_client


def get_entity_store(request: Request) -> EntityStore:
    session_factory = getattr(request.app.state, "db_session_factory", None) or get_session_factory()
    return EntityStore(session_factory)


def get_stripe_client(request: Request) -> Any:
    return resolve_client(request.app)
