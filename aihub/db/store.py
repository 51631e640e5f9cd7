# =============================================================================
# Record Store — Persistence Interface for the Orchestration Core
# =============================================================================
#
# The core never touches sessions or queries directly. It talks to a
# RecordStore: create / read / update-by-id plus the two message queries a
# turn needs (history window and position counter).
#
# ARCHITECTURE:
#   RecordStore (Protocol)
#   ├── SqlRecordStore       — SQLAlchemy async sessions (PostgreSQL)
#   ├── InMemoryRecordStore  — dict-backed, single process (tests, demos)
#   └── get_record_store()   — singleton factory, reads settings.record_store
#
# Both implementations store the ORM classes from aihub.db.models, so a
# record read from either store looks the same to the caller.
# =============================================================================

from __future__ import annotations

import itertools
import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Protocol, TypeVar

from sqlalchemy import DateTime, func, select
from sqlalchemy import inspect as sa_inspect
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from aihub.config import settings
from aihub.db.models import Base, Message, UsageRecord
from aihub.errors import ConfigurationError

logger = logging.getLogger(__name__)

RecordT = TypeVar("RecordT", bound=Base)


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class RecordStore(Protocol):
    """Narrow persistence interface used by the engine and runners."""

    async def get(self, model: type[RecordT], record_id: int) -> RecordT | None:
        """Fetch one record by primary key, or None."""
        ...

    async def add(self, record: RecordT) -> RecordT:
        """Insert a record; id and column defaults are populated on return."""
        ...

    async def update(self, record: RecordT, **values: Any) -> RecordT:
        """Update the given columns of an existing record."""
        ...

    async def list_messages(
        self,
        chat_id: int,
        limit: int | None = None,
        before_position: int | None = None,
    ) -> list[Message]:
        """
        Messages of a chat in position order.

        `before_position` excludes that position and later; `limit` then
        keeps the latest N.
        """
        ...

    async def count_messages(self, chat_id: int) -> int:
        """Number of messages stored for a chat."""
        ...

    async def list_usage_records(
        self, chat_id: int | None = None,
    ) -> list[UsageRecord]:
        """Usage records, optionally filtered by chat, oldest first."""
        ...


# ---------------------------------------------------------------------------
# Implementation 1: SQLAlchemy
# ---------------------------------------------------------------------------


class SqlRecordStore:
    """
    RecordStore over SQLAlchemy async sessions.

    Each operation opens its own session and commits before returning, so
    records handed back are detached and safe to read from any coroutine.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ) -> None:
        if session_factory is None:
            from aihub.db.engine import get_session_factory

            session_factory = get_session_factory()
        self._session_factory = session_factory

    async def get(self, model: type[RecordT], record_id: int) -> RecordT | None:
        async with self._session_factory() as session:
            return await session.get(model, record_id)

    async def add(self, record: RecordT) -> RecordT:
        async with self._session_factory() as session:
            session.add(record)
            await session.commit()
            # Load server-side defaults (created_at)
            await session.refresh(record)
        return record

    async def update(self, record: RecordT, **values: Any) -> RecordT:
        async with self._session_factory() as session:
            merged = await session.merge(record)
            for key, value in values.items():
                setattr(merged, key, value)
            await session.commit()
        for key, value in values.items():
            setattr(record, key, value)
        return record

    async def list_messages(
        self,
        chat_id: int,
        limit: int | None = None,
        before_position: int | None = None,
    ) -> list[Message]:
        stmt = (
            select(Message)
            .where(Message.chat_id == chat_id)
            .order_by(Message.position.desc())
        )
        if before_position is not None:
            stmt = stmt.where(Message.position < before_position)
        if limit is not None:
            stmt = stmt.limit(limit)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            rows = list(result.scalars().all())
        rows.reverse()
        return rows

    async def count_messages(self, chat_id: int) -> int:
        stmt = select(func.count()).select_from(Message).where(
            Message.chat_id == chat_id
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return int(result.scalar_one())

    async def list_usage_records(
        self, chat_id: int | None = None,
    ) -> list[UsageRecord]:
        stmt = select(UsageRecord).order_by(UsageRecord.id)
        if chat_id is not None:
            stmt = stmt.where(UsageRecord.chat_id == chat_id)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Implementation 2: In-Memory
# ---------------------------------------------------------------------------


def _apply_column_defaults(record: Base) -> None:
    """
    Fill unset attributes the way an INSERT would.

    Scalar and callable Python-side defaults are applied; server-side
    timestamp defaults become "now" in UTC.
    """
    mapper = sa_inspect(type(record))
    for column in mapper.columns:
        key = mapper.get_property_by_column(column).key
        if getattr(record, key) is not None:
            continue
        default = column.default
        if default is not None and default.is_scalar:
            setattr(record, key, default.arg)
        elif default is not None and default.is_callable:
            setattr(record, key, default.arg(None))
        elif column.server_default is not None and isinstance(column.type, DateTime):
            setattr(record, key, datetime.now(timezone.utc))


class InMemoryRecordStore:
    """
    Dict-backed RecordStore.

    Records are kept by reference per table, ids come from one counter per
    table. Not shared across processes; the database CHECK and unique
    constraints are not enforced here, only what the engine validates.
    """

    def __init__(self) -> None:
        self._tables: dict[str, dict[int, Base]] = defaultdict(dict)
        self._ids: dict[str, itertools.count] = defaultdict(
            lambda: itertools.count(1)
        )

    async def get(self, model: type[RecordT], record_id: int) -> RecordT | None:
        record = self._tables[model.__tablename__].get(record_id)
        return record  # type: ignore[return-value]

    async def add(self, record: RecordT) -> RecordT:
        table = record.__tablename__
        if record.id is None:
            record.id = next(self._ids[table])
        _apply_column_defaults(record)
        self._tables[table][record.id] = record
        return record

    async def update(self, record: RecordT, **values: Any) -> RecordT:
        for key, value in values.items():
            setattr(record, key, value)
        return record

    async def list_messages(
        self,
        chat_id: int,
        limit: int | None = None,
        before_position: int | None = None,
    ) -> list[Message]:
        rows = sorted(
            (
                m for m in self._tables[Message.__tablename__].values()
                if m.chat_id == chat_id
                and (before_position is None or m.position < before_position)
            ),
            key=lambda m: m.position,
        )
        if limit is not None:
            rows = rows[-limit:] if limit > 0 else []
        return rows

    async def count_messages(self, chat_id: int) -> int:
        return sum(
            1 for m in self._tables[Message.__tablename__].values()
            if m.chat_id == chat_id
        )

    async def list_usage_records(
        self, chat_id: int | None = None,
    ) -> list[UsageRecord]:
        rows = sorted(
            self._tables[UsageRecord.__tablename__].values(),
            key=lambda r: r.id,
        )
        if chat_id is not None:
            rows = [r for r in rows if r.chat_id == chat_id]
        return rows


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------

_store: SqlRecordStore | InMemoryRecordStore | None = None


def get_record_store() -> SqlRecordStore | InMemoryRecordStore:
    """
    Return the configured RecordStore (lazy singleton).

    settings.record_store:
    - "sql" → SqlRecordStore (default)
    - "memory" → InMemoryRecordStore
    """
    global _store
    if _store is None:
        backend = settings.record_store.lower()
        if backend == "sql":
            _store = SqlRecordStore()
        elif backend == "memory":
            _store = InMemoryRecordStore()
        else:
            raise ConfigurationError(
                f"Unknown record store '{settings.record_store}'. "
                "Supported: 'sql', 'memory'"
            )
        logger.info("Using %s", type(_store).__name__)
    return _store
