"""Repository capability for definitions and executions.

The engine and services only talk to storage through this interface:
create, get, update, delete and list-by-filter. Updates are optimistic:
the caller passes the entity as last read, and the write fails with
ConcurrencyError if someone else has written since.

Filters are a dict of ``field`` or ``field__op`` keys:

    {"workflow_definition_id": "wf_...", "status": ["active", "waiting_approval"]}
    {"start_time__gte": since}

A list value means "one of". Supported ops: gte, gt, lte, lt, ne.
"""

from datetime import datetime, timezone
from typing import Any, Callable, Generic, Optional, Protocol, Type, TypeVar

import structlog
from pydantic import BaseModel

from core.exceptions import ConcurrencyError, ConflictError, NotFoundError
from core.utils import ensure_utc

logger = structlog.get_logger(__name__)

T = TypeVar("T", bound=BaseModel)

_OPS = {
    "gte": lambda a, b: a >= b,
    "gt": lambda a, b: a > b,
    "lte": lambda a, b: a <= b,
    "lt": lambda a, b: a < b,
    "ne": lambda a, b: a != b,
}


class Repository(Protocol[T]):
    async def create(self, entity: T) -> T:
        ...

    async def get(self, entity_id: str) -> Optional[T]:
        ...

    async def update(self, entity: T) -> T:
        """Persist ``entity``; its ``revision`` must match the stored one."""
        ...

    async def delete(self, entity_id: str) -> bool:
        ...

    async def list(
        self,
        filters: Optional[dict[str, Any]] = None,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> tuple[list[T], int]:
        """Return (window of matching items, total matching count), newest first."""
        ...


# ─── Filter helpers ───────────────────────────────────────────

def split_filter_key(key: str) -> tuple[str, Optional[str]]:
    field, _, op = key.partition("__")
    return field, (op or None)


def _normalize(value: Any) -> Any:
    if isinstance(value, datetime):
        return ensure_utc(value)
    return value


def matches(entity: BaseModel, filters: Optional[dict[str, Any]]) -> bool:
    """True if ``entity`` satisfies every filter."""
    for key, expected in (filters or {}).items():
        field, op = split_filter_key(key)
        actual = _normalize(getattr(entity, field, None))

        if op is None:
            if isinstance(expected, (list, tuple, set)):
                if actual not in expected:
                    return False
            elif actual != _normalize(expected):
                return False
            continue

        if op not in _OPS:
            raise ValueError(f"Unsupported filter operator: {op}")
        if actual is None:
            if op == "ne" and expected is not None:
                continue
            return False
        if not _OPS[op](actual, _normalize(expected)):
            return False
    return True


_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def created_at_key(entity: BaseModel) -> datetime:
    value = getattr(entity, "created_at", None)
    return ensure_utc(value) or _EPOCH


# ─── In-memory ────────────────────────────────────────────────

class InMemoryRepository(Generic[T]):
    """Dict-backed repository holding deep copies of its entities.

    Callers never share an instance with the store, so a write only lands
    through ``update``.
    """

    def __init__(self, model: Type[T]):
        self.model = model
        self._items: dict[str, T] = {}

    async def create(self, entity: T) -> T:
        if entity.id in self._items:
            raise ConflictError(f"{self.model.__name__} '{entity.id}' already exists")
        self._items[entity.id] = entity.model_copy(deep=True)
        return entity.model_copy(deep=True)

    async def get(self, entity_id: str) -> Optional[T]:
        item = self._items.get(entity_id)
        return item.model_copy(deep=True) if item is not None else None

    async def update(self, entity: T) -> T:
        current = self._items.get(entity.id)
        if current is None:
            raise NotFoundError(f"{self.model.__name__} '{entity.id}' not found")
        if current.revision != entity.revision:
            raise ConcurrencyError(
                f"{self.model.__name__} '{entity.id}' was modified "
                f"(revision {current.revision}, expected {entity.revision})"
            )
        stored = entity.model_copy(deep=True, update={"revision": entity.revision + 1})
        self._items[entity.id] = stored
        return stored.model_copy(deep=True)

    async def delete(self, entity_id: str) -> bool:
        return self._items.pop(entity_id, None) is not None

    async def list(
        self,
        filters: Optional[dict[str, Any]] = None,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> tuple[list[T], int]:
        found = [item for item in self._items.values() if matches(item, filters)]
        found.sort(key=created_at_key, reverse=True)
        total = len(found)
        window = found[offset: offset + limit if limit is not None else None]
        return [item.model_copy(deep=True) for item in window], total


# ─── Helpers ──────────────────────────────────────────────────

async def update_with_retry(
    repo: "Repository[T]",
    entity_id: str,
    mutate: Callable[[T], None],
    attempts: int = 5,
) -> T:
    """Reload, apply ``mutate`` and write, retrying on ConcurrencyError.

    Raises:
        NotFoundError: if the entity does not exist
        ConcurrencyError: if every attempt lost the race
    """
    last_error: Optional[ConcurrencyError] = None
    for attempt in range(1, attempts + 1):
        entity = await repo.get(entity_id)
        if entity is None:
            raise NotFoundError(f"'{entity_id}' not found")
        mutate(entity)
        try:
            return await repo.update(entity)
        except ConcurrencyError as e:
            last_error = e
            logger.debug("update_conflict_retrying", entity_id=entity_id, attempt=attempt)
    raise last_error
