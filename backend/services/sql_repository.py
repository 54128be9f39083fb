"""SQLAlchemy-backed repository.

Each entity is stored as a JSON document plus indexed copies of the
fields it is filtered on. Equality and "one of" filters on those columns
run in SQL; everything else is matched in Python on the loaded entities.
"""

from typing import Any, Generic, Optional, Type, TypeVar

import structlog
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from core.exceptions import ConcurrencyError, ConflictError, NotFoundError
from core.utils import ensure_utc
from db.base import Base
from db.models import WorkflowDefinitionRecord, WorkflowExecutionRecord
from services.repository import created_at_key, matches, split_filter_key
from workflow.models import WorkflowDefinition, WorkflowExecution

logger = structlog.get_logger(__name__)

T = TypeVar("T", bound=BaseModel)


def _column_value(value: Any) -> Any:
    # str-Enum members are stored by value
    return value.value if hasattr(value, "value") else value


class SqlRepository(Generic[T]):
    """Repository over one document table.

    Args:
        model: Pydantic entity class
        record: SQLAlchemy record class with ``id``, ``revision`` and ``document``
        session_factory: async_sessionmaker bound to the engine
        columns: Entity fields mirrored into indexed columns
    """

    def __init__(
        self,
        model: Type[T],
        record: Type[Base],
        session_factory: async_sessionmaker[AsyncSession],
        columns: tuple[str, ...] = (),
    ):
        self.model = model
        self.record = record
        self._session_factory = session_factory
        self._columns = columns

    def _to_entity(self, row: Any) -> T:
        entity = self.model.model_validate(row.document)
        return entity.model_copy(update={"revision": row.revision})

    def _column_values(self, entity: T) -> dict[str, Any]:
        values = {}
        for name in self._columns:
            value = _column_value(getattr(entity, name))
            if hasattr(value, "tzinfo"):
                value = ensure_utc(value)
            values[name] = value
        return values

    async def create(self, entity: T) -> T:
        row = self.record(
            id=entity.id,
            revision=entity.revision,
            document=entity.model_dump(mode="json"),
            created_at=ensure_utc(entity.created_at),
            **self._column_values(entity),
        )
        async with self._session_factory() as session:
            session.add(row)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                raise ConflictError(f"{self.model.__name__} '{entity.id}' already exists")
        return entity.model_copy(deep=True)

    async def get(self, entity_id: str) -> Optional[T]:
        async with self._session_factory() as session:
            row = await session.get(self.record, entity_id)
            return self._to_entity(row) if row is not None else None

    async def update(self, entity: T) -> T:
        stored = entity.model_copy(deep=True, update={"revision": entity.revision + 1})
        async with self._session_factory() as session:
            row = await session.get(self.record, entity.id)
            if row is None:
                raise NotFoundError(f"{self.model.__name__} '{entity.id}' not found")
            if row.revision != entity.revision:
                raise ConcurrencyError(
                    f"{self.model.__name__} '{entity.id}' was modified "
                    f"(revision {row.revision}, expected {entity.revision})"
                )

            row.revision = stored.revision
            row.document = stored.model_dump(mode="json")
            for name, value in self._column_values(stored).items():
                setattr(row, name, value)
            try:
                await session.commit()
            except StaleDataError:
                # Another writer committed between our read and our UPDATE
                await session.rollback()
                raise ConcurrencyError(f"{self.model.__name__} '{entity.id}' was modified concurrently")
        return stored

    async def delete(self, entity_id: str) -> bool:
        async with self._session_factory() as session:
            row = await session.get(self.record, entity_id)
            if row is None:
                return False
            await session.delete(row)
            await session.commit()
            return True

    async def list(
        self,
        filters: Optional[dict[str, Any]] = None,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> tuple[list[T], int]:
        query = select(self.record)
        remaining: dict[str, Any] = {}
        for key, value in (filters or {}).items():
            field, op = split_filter_key(key)
            if op is None and field in self._columns + ("id",):
                col = getattr(self.record, field)
                if isinstance(value, (list, tuple, set)):
                    query = query.where(col.in_([_column_value(v) for v in value]))
                else:
                    query = query.where(col == _column_value(value))
            else:
                remaining[key] = value

        async with self._session_factory() as session:
            result = await session.execute(query)
            rows = result.scalars().all()

        items = [self._to_entity(row) for row in rows]
        items = [item for item in items if matches(item, remaining)]
        items.sort(key=created_at_key, reverse=True)
        total = len(items)
        return items[offset: offset + limit if limit is not None else None], total


def definition_repository(session_factory: async_sessionmaker[AsyncSession]) -> SqlRepository[WorkflowDefinition]:
    return SqlRepository(
        WorkflowDefinition,
        WorkflowDefinitionRecord,
        session_factory,
        columns=("name", "type", "category", "is_active", "created_by", "updated_at"),
    )


def execution_repository(session_factory: async_sessionmaker[AsyncSession]) -> SqlRepository[WorkflowExecution]:
    return SqlRepository(
        WorkflowExecution,
        WorkflowExecutionRecord,
        session_factory,
        columns=("workflow_definition_id", "status", "trigger_type", "start_time", "end_time"),
    )
