from __future__ import annotations

import asyncio

from sqlalchemy import create_engine, inspect

from app.database import Database
from app.storage import DatabaseStore


def test_create_all_creates_stored_records_table(tmp_path) -> None:
    database_path = tmp_path / "movieswipe.db"

    database = Database(f"sqlite+aiosqlite:///{database_path}")
    asyncio.run(database.create_all())
    asyncio.run(database.dispose())

    inspector_engine = create_engine(f"sqlite:///{database_path}")
    try:
        inspector = inspect(inspector_engine)
        columns = {column["name"] for column in inspector.get_columns("stored_records")}
    finally:
        inspector_engine.dispose()

    assert {"namespace", "key", "value", "created_at", "updated_at"} <= columns


def test_database_store_scopes_records_by_namespace(tmp_path) -> None:
    """Records written under one namespace must not leak into another."""

    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'store.db'}")

    async def runner() -> tuple[object, object, object]:
        await database.create_all()
        alice = DatabaseStore(database.session_factory, "client:alice")
        bob = DatabaseStore(database.session_factory, "client:bob")
        await alice.set("shortlist", [1, 2])
        await alice.set("shortlist", [1, 2, 3])
        await bob.set("shortlist", [9])
        first = await alice.get("shortlist")
        await bob.delete("shortlist")
        second = await bob.get("shortlist")
        missing = await alice.get("favorites")
        await database.dispose()
        return first, second, missing

    first, second, missing = asyncio.run(runner())

    assert first == [1, 2, 3]
    assert second is None
    assert missing is None


def test_concurrent_writers_creating_the_same_record_do_not_fail(tmp_path) -> None:
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'race.db'}")

    async def runner() -> object:
        await database.create_all()
        writers = [DatabaseStore(database.session_factory, "vote") for _ in range(5)]
        await asyncio.gather(
            *(store.set("vote_votes_s1", [index]) for index, store in enumerate(writers))
        )
        value = await writers[0].get("vote_votes_s1")
        await database.dispose()
        return value

    value = asyncio.run(runner())

    assert value in [[index] for index in range(5)]
