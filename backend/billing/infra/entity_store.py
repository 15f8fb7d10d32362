from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing.domain.accounts.db_models import Guest, Member, MembershipPlan
from billing.domain.ledger.db_models import GuestTransaction, MemberTransaction
from billing.domain.recurring.db_models import RecurringPayment
from billing.domain.webhooks.db_models import ProcessedEvent

logger = logging.getLogger(__name__)

UNIQUE_VIOLATION_SQLSTATE = "23505"

ENTITY_MODELS: dict[str, type] = {
    "Member": Member,
    "Guest": Guest,
    "Transaction": MemberTransaction,
    "GuestTransaction": GuestTransaction,
    "RecurringPayment": RecurringPayment,
    "ProcessedEvent": ProcessedEvent,
    "MembershipPlan": MembershipPlan,
}


class EntityStoreError(Exception):
    def __init__(self, entity: str, detail: str) -> None:
        super().__init__(f"{entity}: {detail}")
        self.entity = entity
        self.detail = detail


class DuplicateKeyError(EntityStoreError):
    pass


class RecordNotFoundError(EntityStoreError):
    pass


def is_unique_violation(exc: IntegrityError) -> bool:
    """True for unique/primary-key rejections; NOT NULL and foreign-key errors are not."""
    orig = exc.orig
    if getattr(orig, "sqlstate", None) == UNIQUE_VIOLATION_SQLSTATE:
        return True
    # sqlite reports no SQLSTATE
    return "UNIQUE constraint failed" in str(orig)


class EntityStore:
    """Single-entity CRUD over named record collections.

    Each call runs in its own session and commits before returning, so callers
    never get serializability across two calls. Uniqueness constraints are the
    only cross-call guard: ``create`` raises ``DuplicateKeyError`` when a unique
    constraint rejects the insert. Other integrity errors propagate unchanged.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    @staticmethod
    def _model(entity: str) -> type:
        try:
            return ENTITY_MODELS[entity]
        except KeyError as exc:
            raise ValueError(f"Unknown entity {entity!r}") from exc

    @staticmethod
    def _order_by(model: type, sort: str | None) -> Iterable[Any]:
        if not sort:
            return ()
        descending = sort.startswith("-")
        column = getattr(model, sort.lstrip("-"))
        return (column.desc() if descending else column.asc(),)

    async def filter(
        self,
        entity: str,
        where: Mapping[str, Any] | None = None,
        sort: str | None = None,
        limit: int | None = None,
    ) -> list[Any]:
        model = self._model(entity)
        stmt = sa.select(model)
        for field, value in (where or {}).items():
            column = getattr(model, field)
            stmt = stmt.where(column.is_(None) if value is None else column == value)
        stmt = stmt.order_by(*self._order_by(model, sort))
        if limit is not None:
            stmt = stmt.limit(limit)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def list(self, entity: str, sort: str | None = None, limit: int | None = None) -> list[Any]:
        return await self.filter(entity, None, sort=sort, limit=limit)

    async def get(self, entity: str, record_id: str) -> Any | None:
        if not record_id:
            return None
        async with self._session_factory() as session:
            return await session.get(self._model(entity), record_id)

    async def create(self, entity: str, values: Mapping[str, Any]) -> Any:
        model = self._model(entity)
        async with self._session_factory() as session:
            record = model(**values)
            session.add(record)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                if not is_unique_violation(exc):
                    raise
                raise DuplicateKeyError(entity, "unique constraint rejected insert") from exc
            await session.refresh(record)
            return record

    async def create_once(self, entity: str, values: Mapping[str, Any]) -> Any | None:
        try:
            return await self.create(entity, values)
        except DuplicateKeyError:
            logger.info("entity_store_duplicate_absorbed", extra={"extra": {"entity": entity}})
            return None

    async def update(self, entity: str, record_id: str, patch: Mapping[str, Any]) -> Any:
        model = self._model(entity)
        async with self._session_factory() as session:
            record = await session.get(model, record_id)
            if record is None:
                raise RecordNotFoundError(entity, f"no record with id {record_id}")
            for field, value in patch.items():
                setattr(record, field, value)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                if not is_unique_violation(exc):
                    raise
                raise DuplicateKeyError(entity, "unique constraint rejected update") from exc
            await session.refresh(record)
            return record

    async def delete(self, entity: str, record_id: str) -> Any:
        model = self._model(entity)
        async with self._session_factory() as session:
            record = await session.get(model, record_id)
            if record is None:
                raise RecordNotFoundError(entity, f"no record with id {record_id}")
            await session.delete(record)
            await session.commit()
            return record
