"""
Keyed upsert access to the local store.

Every write opens its own session and commits on its own, so a failing
record never rolls back its neighbours. SQLite allows one writer at a
time; writes are serialized with an ``asyncio.Lock`` there, while
PostgreSQL writes run concurrently.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Iterable, List, Optional, Set, Type

from sqlalchemy import func, inspect, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import async_sessionmaker

from msp_sync.models import Base, Board, Member

logger = logging.getLogger(__name__)


class SyncStore:
    """Idempotent writes and id lookups used by the sync stages."""

    def __init__(self, session_maker: async_sessionmaker, dialect_name: Optional[str] = None):
        self.session_maker = session_maker
        if dialect_name is None:
            bind = session_maker.kw.get("bind")
            dialect_name = bind.dialect.name if bind is not None else "sqlite"
        if dialect_name not in ("sqlite", "postgresql"):
            raise ValueError(f"Unsupported database dialect for upserts: {dialect_name}")
        self.dialect_name = dialect_name
        self._write_lock = asyncio.Lock()

    def _insert(self, model: Type[Base]):
        if self.dialect_name == "postgresql":
            return pg_insert(model)
        return sqlite_insert(model)

    @asynccontextmanager
    async def _write_session(self):
        if self.dialect_name == "sqlite":
            async with self._write_lock:
                async with self.session_maker() as session:
                    yield session
        else:
            async with self.session_maker() as session:
                yield session

    async def upsert(self, model: Type[Base], row: Dict[str, Any]) -> None:
        """Insert ``row`` or update every non-key column of the existing row."""
        key_columns = [c.name for c in inspect(model).primary_key]
        update_values = {k: v for k, v in row.items() if k not in key_columns}

        stmt = self._insert(model).values(**row)
        if update_values:
            stmt = stmt.on_conflict_do_update(index_elements=key_columns, set_=update_values)
        else:
            stmt = stmt.on_conflict_do_nothing(index_elements=key_columns)

        async with self._write_session() as session:
            await session.execute(stmt)
            await session.commit()

    async def insert_if_absent(self, model: Type[Base], row: Dict[str, Any]) -> bool:
        """
        Insert ``row`` unless it conflicts with an existing row.

        Returns:
            True when a row was inserted
        """
        stmt = self._insert(model).values(**row).on_conflict_do_nothing()
        async with self._write_session() as session:
            result = await session.execute(stmt)
            await session.commit()
        return bool(result.rowcount)

    async def existing_ids(self, model: Type[Base], ids: Iterable[int]) -> Set[int]:
        ids = list(set(ids))
        if not ids:
            return set()
        async with self.session_maker() as session:
            result = await session.execute(select(model.id).where(model.id.in_(ids)))
            return set(result.scalars().all())

    async def all_ids(self, model: Type[Base]) -> List[int]:
        async with self.session_maker() as session:
            result = await session.execute(select(model.id).order_by(model.id))
            return list(result.scalars().all())

    async def first_board_id(self) -> Optional[int]:
        """Lowest board id in the store, or None when there are no boards."""
        async with self.session_maker() as session:
            result = await session.execute(select(func.min(Board.id)))
            return result.scalar_one_or_none()

    async def member_ids(self, identifiers: Iterable[str]) -> List[int]:
        """Ids of stored members whose identifier is in ``identifiers`` (case-insensitive)."""
        lowered = [i.lower() for i in identifiers]
        if not lowered:
            return []
        async with self.session_maker() as session:
            result = await session.execute(
                select(Member.id).where(func.lower(Member.identifier).in_(lowered)).order_by(Member.id)
            )
            return list(result.scalars().all())

    async def count(self, model: Type[Base]) -> int:
        async with self.session_maker() as session:
            result = await session.execute(select(func.count()).select_from(model))
            return result.scalar_one()
