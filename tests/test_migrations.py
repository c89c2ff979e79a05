import pytest
from sqlalchemy import text

from murmur.adapters.database.dao import FriendDAO, MessageDAO
from murmur.adapters.database.dto import FriendState, MessageStatus
from murmur.adapters.database.engine import create_engine, create_sessionmaker
from murmur.adapters.database.migrations import (
    LATEST_VERSION,
    MIGRATIONS,
    Migration,
    create_table,
    current_version,
    run_migrations,
)
from murmur.adapters.database.structures import Base
from murmur.exceptions import MigrationError

from conftest import IN_MEMORY_URL


async def table_columns(engine, table: str) -> set[str]:
    async with engine.connect() as conn:
        rows = await conn.execute(text(f"PRAGMA table_info({table})"))
        return {row[1] for row in rows}


@pytest.mark.asyncio
async def test_fresh_store_reaches_latest_version():
    engine = create_engine(IN_MEMORY_URL)
    try:
        assert await current_version(engine) == 0
        assert await run_migrations(engine) == LATEST_VERSION
        assert await current_version(engine) == LATEST_VERSION
        # second run has nothing to apply
        assert await run_migrations(engine) == LATEST_VERSION
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_schema_matches_orm_models(engine):
    for table in Base.metadata.sorted_tables:
        expected = {column.name for column in table.columns}
        assert expected <= await table_columns(engine, table.name), table.name


@pytest.mark.asyncio
async def test_v1_data_survives_upgrade():
    engine = create_engine(IN_MEMORY_URL)
    try:
        assert await run_migrations(engine, MIGRATIONS[:1]) == 1
        async with engine.begin() as conn:
            await conn.execute(text(
                "INSERT INTO friends (uuid, username, is_blocked) VALUES ('bob', 'Bob', 0)"
            ))
            await conn.execute(text(
                "INSERT INTO messages (msg_id, conversation_id, from_id, to_id, text, timestamp, status, is_echo) "
                "VALUES ('m1', 'bob', 'bob', 'me', 'legacy', 1000, 'delivered', 0)"
            ))

        assert await run_migrations(engine) == LATEST_VERSION

        async with create_sessionmaker(engine)() as session:
            friend = await FriendDAO(session=session).get_friend("bob")
            message = await MessageDAO(session=session).get_message("m1")

        assert friend.state == FriendState.FRIEND
        assert friend.public_key is None
        assert message.text == "legacy"
        assert message.status == MessageStatus.DELIVERED
        assert message.raw_payload is None
        assert message.reply_to_id is None
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_steps_are_idempotent_when_version_is_behind():
    engine = create_engine(IN_MEMORY_URL)
    try:
        await run_migrations(engine)
        # simulate a crash after the DDL but before the version bump
        async with engine.begin() as conn:
            await conn.execute(text("UPDATE schema_version SET version = 2 WHERE id = 1"))

        assert await run_migrations(engine) == LATEST_VERSION
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_failed_migration_rolls_back_and_keeps_version():
    def broken_step(conn):
        conn.execute(text("ALTER TABLE missing_table ADD COLUMN x TEXT"))

    broken = Migration(
        version=LATEST_VERSION + 1,
        description="broken",
        steps=(create_table("half_done", "id INTEGER PRIMARY KEY"), broken_step),
    )
    engine = create_engine(IN_MEMORY_URL)
    try:
        await run_migrations(engine)
        with pytest.raises(MigrationError):
            await run_migrations(engine, MIGRATIONS + (broken,))

        assert await current_version(engine) == LATEST_VERSION
        assert await table_columns(engine, "half_done") == set()
    finally:
        await engine.dispose()
