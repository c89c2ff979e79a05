"""
Additive schema migrations for the local store.

Each migration is a version tag plus a tuple of steps. Steps only ever create
tables, add nullable or defaulted columns and create indexes, and each step checks
for its own result first, so a step that already ran is a no-op. A migration and
the bump of ``schema_version`` share one transaction.
"""
import logging
from dataclasses import dataclass
from typing import Callable

from sqlalchemy import text
from sqlalchemy.engine import Connection
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from murmur.exceptions import MigrationError

Step = Callable[[Connection], None]


@dataclass(frozen=True)
class Migration:
    version: int
    description: str
    steps: tuple[Step, ...]

    def apply(self, conn: Connection) -> None:
        for step in self.steps:
            step(conn)


def create_table(name: str, columns: str) -> Step:
    def step(conn: Connection) -> None:
        conn.execute(text(f"CREATE TABLE IF NOT EXISTS {name} ({columns})"))
    return step


def add_column(table: str, column: str, ddl: str) -> Step:
    def step(conn: Connection) -> None:
        existing = {row[1] for row in conn.execute(text(f"PRAGMA table_info({table})"))}
        if column not in existing:
            conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}"))
    return step


def create_index(name: str, table: str, columns: str, unique: bool = False) -> Step:
    def step(conn: Connection) -> None:
        kind = "UNIQUE INDEX" if unique else "INDEX"
        conn.execute(text(f"CREATE {kind} IF NOT EXISTS {name} ON {table} ({columns})"))
    return step


MIGRATIONS: tuple[Migration, ...] = (
    Migration(
        version=1,
        description="base tables",
        steps=(
            create_table(
                "accounts",
                "id VARCHAR(36) PRIMARY KEY, "
                "username VARCHAR(64) NOT NULL, "
                "salt BLOB NOT NULL, "
                "kdf_params TEXT NOT NULL"
            ),
            create_table(
                "friends",
                "uuid VARCHAR(64) PRIMARY KEY, "
                "username VARCHAR(64) NOT NULL, "
                "avatar TEXT, "
                "status_message TEXT, "
                "is_blocked BOOLEAN NOT NULL DEFAULT 0"
            ),
            create_table(
                "conversations",
                "id VARCHAR(64) PRIMARY KEY, "
                "username VARCHAR(64) NOT NULL, "
                "avatar TEXT, "
                "last_message TEXT, "
                "last_timestamp BIGINT NOT NULL DEFAULT 0, "
                "unread_count INTEGER NOT NULL DEFAULT 0, "
                "secret TEXT"
            ),
            create_table(
                "messages",
                "id INTEGER PRIMARY KEY AUTOINCREMENT, "
                "msg_id VARCHAR(64) NOT NULL, "
                "conversation_id VARCHAR(64) NOT NULL, "
                "from_id VARCHAR(64) NOT NULL, "
                "to_id VARCHAR(64) NOT NULL, "
                "text TEXT NOT NULL DEFAULT '', "
                "timestamp BIGINT NOT NULL, "
                "status VARCHAR(16) NOT NULL, "
                "is_echo BOOLEAN NOT NULL DEFAULT 0"
            ),
        ),
    ),
    Migration(
        version=2,
        description="secondary indexes",
        steps=(
            create_index("ix_accounts_username", "accounts", "username"),
            create_index("ix_friends_username", "friends", "username"),
            create_index("ix_friends_is_blocked", "friends", "is_blocked"),
            create_index("ix_conversations_username", "conversations", "username"),
            create_index("ix_conversations_last_timestamp", "conversations", "last_timestamp"),
            create_index("ix_messages_msg_id", "messages", "msg_id"),
            create_index("ix_messages_conversation_id", "messages", "conversation_id"),
            create_index("ix_messages_from_id", "messages", "from_id"),
            create_index("ix_messages_to_id", "messages", "to_id"),
            create_index("ix_messages_timestamp", "messages", "timestamp"),
            create_index("ix_messages_status", "messages", "status"),
        ),
    ),
    Migration(
        version=3,
        description="key material, relationship state and raw payloads",
        steps=(
            add_column("accounts", "public_key", "TEXT"),
            add_column("accounts", "encrypted_private_key", "BLOB"),
            add_column("accounts", "verification_tag", "BLOB"),
            add_column("accounts", "created_at", "BIGINT"),
            add_column("friends", "state", "VARCHAR(32) NOT NULL DEFAULT 'friend'"),
            add_column("friends", "public_key", "TEXT"),
            add_column("messages", "raw_payload", "BLOB"),
        ),
    ),
    Migration(
        version=4,
        description="replies, group conversations and echo uniqueness",
        steps=(
            add_column("messages", "reply_to_id", "VARCHAR(64)"),
            add_column("messages", "reply_to_text", "TEXT"),
            add_column("messages", "reply_to_sender", "VARCHAR(64)"),
            create_index("ix_messages_reply_to_id", "messages", "reply_to_id"),
            add_column("conversations", "is_group", "BOOLEAN NOT NULL DEFAULT 0"),
            add_column("conversations", "participants", "TEXT"),
            create_index("uq_messages_msg_id_is_echo", "messages", "msg_id, is_echo", unique=True),
        ),
    ),
)

LATEST_VERSION = MIGRATIONS[-1].version


async def current_version(engine: AsyncEngine) -> int:
    async with engine.connect() as conn:
        exists = await conn.scalar(
            text("SELECT name FROM sqlite_master WHERE type = 'table' AND name = 'schema_version'")
        )
        if not exists:
            return 0
        version = await conn.scalar(text("SELECT version FROM schema_version WHERE id = 1"))
        return version or 0


async def run_migrations(
        engine: AsyncEngine,
        migrations: tuple[Migration, ...] = MIGRATIONS,
        logger: logging.Logger | None = None
) -> int:
    """Apply every pending migration in increasing version order, return the resulting version"""
    logger = logger or logging.getLogger(__name__)

    try:
        async with engine.begin() as conn:
            await conn.execute(text(
                "CREATE TABLE IF NOT EXISTS schema_version "
                "(id INTEGER PRIMARY KEY CHECK (id = 1), version INTEGER NOT NULL)"
            ))
            await conn.execute(text("INSERT OR IGNORE INTO schema_version (id, version) VALUES (1, 0)"))
    except SQLAlchemyError as e:
        raise MigrationError("Failed to initialize schema_version", original_error=e) from e

    version = await current_version(engine)

    for migration in sorted(migrations, key=lambda m: m.version):
        if migration.version <= version:
            continue

        logger.info(
            f"Applying migration {migration.version}: {migration.description}",
            extra={"context": {"from_version": version, "to_version": migration.version}}
        )
        try:
            async with engine.begin() as conn:
                await conn.run_sync(migration.apply)
                await conn.execute(
                    text("UPDATE schema_version SET version = :version WHERE id = 1"),
                    {"version": migration.version}
                )
        except SQLAlchemyError as e:
            raise MigrationError(
                f"Migration {migration.version} failed, store left at version {version}",
                original_error=e,
                context={"version": migration.version, "description": migration.description}
            ) from e

        version = migration.version

    logger.info(f"Database schema at version {version}")
    return version
