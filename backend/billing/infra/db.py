import logging
import uuid
from typing import Any

from sqlalchemy import Numeric, event
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from billing.settings import settings

logger = logging.getLogger(__name__)

# Column conventions shared by every table; defined before the models import below.
ID_LENGTH = 36
MONEY = Numeric(12, 2)

Base = declarative_base()


def new_id() -> str:
    return str(uuid.uuid4())


import billing.infra.models  # noqa: E402,F401

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _engine_options(database_url: str) -> dict[str, Any]:
    options: dict[str, Any] = {"pool_pre_ping": True}
    if database_url.startswith(("postgresql://", "postgresql+")):
        options.update(
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            pool_timeout=settings.database_pool_timeout_seconds,
            connect_args={"options": f"-c statement_timeout={int(settings.database_statement_timeout_ms)}"},
        )
    return options


def _log_pool_timeouts(engine: AsyncEngine) -> None:
    @event.listens_for(engine.sync_engine, "handle_error")
    def _on_error(context):  # noqa: ANN001
        if isinstance(context.original_exception or context.sqlalchemy_exception, PoolTimeoutError):
            logger.warning("db_pool_timeout", extra={"extra": {"statement": context.statement}})


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Process-wide session factory, created on first use from ``DATABASE_URL``."""
    global _engine, _session_factory
    if _session_factory is None:
        _engine = create_async_engine(settings.database_url, **_engine_options(settings.database_url))
        _log_pool_timeouts(_engine)
        _session_factory = async_sessionmaker(_engine, expire_on_commit=False, class_=AsyncSession)
    return _session_factory


async def dispose_engine() -> None:
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None
