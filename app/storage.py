"""Key/value record stores standing in for per-browser local storage."""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable, TypeVar

from pydantic import BaseModel, ValidationError
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .db_models import StoredRecord

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

SHORTLIST_KEY = "shortlist"
CANDIDATES_KEY = "candidates"
SHOWN_KEY = "shown_movies"
SEEN_KEY = "seen_movies"
FAVORITES_KEY = "favorites"
SWIPE_STATS_KEY = "swipe_stats"
VOTE_NAMESPACE = "vote"


def vote_session_key(session_id: str) -> str:
    return f"vote_session_{session_id}"


def vote_records_key(session_id: str) -> str:
    return f"vote_votes_{session_id}"


def voter_token_key(session_id: str) -> str:
    return f"vote_voter_{session_id}"


class KeyValueStore(ABC):
    """JSON record store with a tolerant read contract.

    ``get`` returns ``None`` for missing keys and for records that cannot be
    decoded; decode failures are logged and never raised to callers.
    """

    @abstractmethod
    async def _read_raw(self, key: str) -> str | None: ...

    @abstractmethod
    async def _write_raw(self, key: str, payload: str) -> None: ...

    @abstractmethod
    async def delete(self, key: str) -> None: ...

    async def get(self, key: str) -> Any | None:
        raw = await self._read_raw(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (TypeError, ValueError) as exc:
            logger.warning("Discarding malformed record %s: %s", key, exc)
            return None

    async def set(self, key: str, value: Any) -> None:
        await self._write_raw(key, json.dumps(value, default=_json_default))

    async def get_list(self, key: str) -> list[Any]:
        value = await self.get(key)
        if value is None:
            return []
        if not isinstance(value, list):
            logger.warning("Expected a list for record %s, got %s", key, type(value).__name__)
            return []
        return value

    async def get_models(self, key: str, model: type[ModelT]) -> list[ModelT]:
        """Load a list record as models, skipping entries that fail validation."""

        items: list[ModelT] = []
        for entry in await self.get_list(key):
            try:
                items.append(model.model_validate(entry))
            except ValidationError:
                logger.warning("Skipping invalid %s entry in record %s", model.__name__, key)
        return items

    async def set_models(self, key: str, items: list[ModelT]) -> None:
        await self.set(key, [item.model_dump(mode="json") for item in items])


def _json_default(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


class MemoryStore(KeyValueStore):
    """Process-local store, mainly for tests and ephemeral deployments."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._records: dict[str, str] = dict(initial or {})

    async def _read_raw(self, key: str) -> str | None:
        return self._records.get(key)

    async def _write_raw(self, key: str, payload: str) -> None:
        self._records[key] = payload

    async def delete(self, key: str) -> None:
        self._records.pop(key, None)

    def put_raw(self, key: str, payload: str) -> None:
        """Store an undecoded payload as-is."""

        self._records[key] = payload


class DatabaseStore(KeyValueStore):
    """Store backed by the ``stored_records`` table, scoped to one namespace."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        namespace: str,
    ) -> None:
        self._session_factory = session_factory
        self.namespace = namespace

    async def _read_raw(self, key: str) -> str | None:
        async with self._session_factory() as session:
            stmt = select(StoredRecord.value).where(
                StoredRecord.namespace == self.namespace,
                StoredRecord.key == key,
            )
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def _write_raw(self, key: str, payload: str) -> None:
        async with self._session_factory() as session:
            record = await session.get(StoredRecord, (self.namespace, key))
            if record is not None:
                record.value = payload
                await session.commit()
                return
            session.add(StoredRecord(namespace=self.namespace, key=key, value=payload))
            try:
                await session.commit()
                return
            except IntegrityError:
                # Another writer created the row first.
                await session.rollback()
            await session.execute(
                update(StoredRecord)
                .where(
                    StoredRecord.namespace == self.namespace,
                    StoredRecord.key == key,
                )
                .values(value=payload)
            )
            await session.commit()

    async def delete(self, key: str) -> None:
        async with self._session_factory() as session:
            await session.execute(
                delete(StoredRecord).where(
                    StoredRecord.namespace == self.namespace,
                    StoredRecord.key == key,
                )
            )
            await session.commit()


StoreFactory = Callable[[str], KeyValueStore]


def memory_store_factory() -> StoreFactory:
    """Return a factory handing out one :class:`MemoryStore` per namespace."""

    stores: dict[str, MemoryStore] = {}

    def factory(namespace: str) -> KeyValueStore:
        return stores.setdefault(namespace, MemoryStore())

    return factory


def database_store_factory(
    session_factory: async_sessionmaker[AsyncSession],
) -> StoreFactory:
    def factory(namespace: str) -> KeyValueStore:
        return DatabaseStore(session_factory, namespace)

    return factory
