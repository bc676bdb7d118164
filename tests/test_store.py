"""Tests for the keyed store and the database setup."""

import pytest
from datetime import datetime
from sqlalchemy import select, text
from sqlalchemy.exc import IntegrityError

from msp_sync.core.store import SyncStore
from msp_sync.database import create_engine, init_db
from msp_sync.models import Board, Member, Ticket, TimeEntry


@pytest.mark.asyncio
async def test_init_db_creates_all_tables(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'init.db'}")
    try:
        await init_db(engine)

        async with engine.begin() as conn:
            result = await conn.execute(text(
                "SELECT name FROM sqlite_master WHERE type='table' ORDER BY name"
            ))
            tables = {row[0] for row in result.fetchall()}

        assert {
            "members",
            "boards",
            "tickets",
            "time_entries",
            "projects",
            "project_tickets",
            "project_audits",
            "sync_logs",
        }.issubset(tables)
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_sqlite_connections_enforce_foreign_keys(engine):
    async with engine.connect() as conn:
        result = await conn.execute(text("PRAGMA foreign_keys"))
        assert result.scalar() == 1


@pytest.mark.asyncio
async def test_store_rejects_unsupported_dialect(session_maker):
    with pytest.raises(ValueError):
        SyncStore(session_maker, dialect_name="mysql")


@pytest.mark.asyncio
async def test_upsert_inserts_then_updates(store, session_maker):
    await store.upsert(Board, {"id": 1, "name": "Triage", "type": "PS"})
    await store.upsert(Board, {"id": 1, "name": "HelpDesk (MS)", "type": "MS"})

    async with session_maker() as session:
        boards = (await session.execute(select(Board))).scalars().all()

    assert len(boards) == 1
    assert boards[0].name == "HelpDesk (MS)"
    assert boards[0].type == "MS"


@pytest.mark.asyncio
async def test_insert_if_absent_never_overwrites(store, session_maker):
    assert await store.insert_if_absent(Board, {"id": 1, "name": "Real", "type": "MS"}) is True
    assert await store.insert_if_absent(Board, {"id": 1, "name": "Placeholder", "type": "PS"}) is False

    async with session_maker() as session:
        board = await session.get(Board, 1)
    assert board.name == "Real"


@pytest.mark.asyncio
async def test_foreign_keys_are_enforced(store):
    with pytest.raises(IntegrityError):
        await store.upsert(Ticket, {"id": 10, "summary": "Orphan", "board_id": 404})

    await store.upsert(Member, {"id": 1, "identifier": "eng1"})
    with pytest.raises(IntegrityError):
        await store.upsert(TimeEntry, {
            "id": 5,
            "member_id": 1,
            "ticket_id": 999,
            "hours": 1.0,
            "date_start": datetime(2024, 1, 1),
        })


@pytest.mark.asyncio
async def test_failed_write_does_not_roll_back_earlier_writes(store):
    await store.upsert(Board, {"id": 1, "name": "Triage", "type": "PS"})
    with pytest.raises(IntegrityError):
        await store.upsert(Ticket, {"id": 10, "summary": "Orphan", "board_id": 404})

    assert await store.count(Board) == 1
    assert await store.count(Ticket) == 0


@pytest.mark.asyncio
async def test_id_lookups(store):
    assert await store.first_board_id() is None

    for board_id in (7, 3, 9):
        await store.upsert(Board, {"id": board_id, "name": f"Board {board_id}", "type": "PS"})
    await store.upsert(Member, {"id": 1, "identifier": "Eng1"})
    await store.upsert(Member, {"id": 2, "identifier": "eng2"})
    await store.upsert(Member, {"id": 3, "identifier": "eng3"})

    assert await store.first_board_id() == 3
    assert await store.all_ids(Board) == [3, 7, 9]
    assert await store.existing_ids(Board, [3, 4, 9]) == {3, 9}
    assert await store.existing_ids(Board, []) == set()
    assert await store.member_ids(["ENG1", "eng2"]) == [1, 2]
    assert await store.member_ids([]) == []
    assert await store.count(Member) == 3
