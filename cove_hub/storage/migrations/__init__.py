"""
Database migrations for the hub store.

Tracks applied migrations in `schema_migrations` table to avoid re-running,
and refuses to open a store whose schema this build does not understand.
"""

import logging
import re
from pathlib import Path
from typing import Optional

from ..exceptions import SchemaMismatch

logger = logging.getLogger("cove.hub.storage.migrations")

MIGRATIONS_DIR = Path(__file__).parent

# Columns the registry reads and writes
REQUIRED_COLUMNS = {
    "devices": {
        "id", "protocol", "name", "status", "host", "port", "credentials",
        "metadata", "last_error", "paired_at", "last_seen", "created_at",
    },
    "entities": {
        "device_id", "key", "name", "capability_type", "capability", "value",
        "unit", "updated_at",
    },
}


def _migration_version(filename: str) -> int:
    # '001_initial.sql' -> 1
    prefix = filename.split("_", 1)[0]
    match = re.match(r"\d+", prefix)
    return int(match.group()) if match else 0


def migration_files() -> list[Path]:
    return sorted(MIGRATIONS_DIR.glob("*.sql"))


SCHEMA_VERSION = max((_migration_version(f.name) for f in migration_files()), default=0)


async def _ensure_migrations_table(db) -> None:
    """Create the migrations tracking table if it doesn't exist."""
    await db.execute("""
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version INTEGER PRIMARY KEY,
            name TEXT NOT NULL,
            applied_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
    """)


async def _table_names(db) -> set[str]:
    rows = await db.fetch(
        "SELECT name FROM sqlite_master WHERE type = 'table' AND name NOT LIKE 'sqlite_%'"
    )
    return {row["name"] for row in rows}


async def _get_applied_migrations(db) -> set[str]:
    """Get set of already applied migration names (e.g. '001_initial')."""
    rows = await db.fetch("SELECT name FROM schema_migrations")
    return {row["name"] for row in rows}


async def _record_migration(db, filename: str) -> None:
    """Record that a migration has been applied."""
    await db.execute(
        "INSERT OR IGNORE INTO schema_migrations (version, name) VALUES (?, ?)",
        _migration_version(filename), filename.removesuffix(".sql"),
    )


async def get_schema_version(db) -> Optional[int]:
    """Highest applied migration version, or None for an unversioned store."""
    if "schema_migrations" not in await _table_names(db):
        return None
    return await db.fetchval("SELECT MAX(version) FROM schema_migrations")


async def run_migrations(db) -> None:
    """
    Run all pending migrations.

    Only runs migrations that haven't been applied yet.
    Tracks applied migrations in schema_migrations table.

    Args:
        db: The database to run migrations against
    """
    await _ensure_migrations_table(db)

    applied = await _get_applied_migrations(db)
    files = migration_files()

    if not files:
        logger.info("No migration files found")
        return

    pending = [f for f in files if f.stem not in applied]

    if not pending:
        logger.debug("All %d migrations already applied", len(files))
        return

    logger.info("Running %d pending migrations (of %d total)", len(pending), len(files))

    for migration_file in pending:
        logger.info("Running migration: %s", migration_file.name)
        try:
            await db.executescript(migration_file.read_text())
            await _record_migration(db, migration_file.name)
            logger.info("Migration %s completed successfully", migration_file.name)
        except Exception as e:
            logger.error("Migration %s failed: %s", migration_file.name, e)
            raise


async def check_columns(db) -> None:
    """Verify that the tables the registry uses have the expected columns."""
    for table, expected in REQUIRED_COLUMNS.items():
        rows = await db.fetch(f"PRAGMA table_info({table})")
        found = {row["name"] for row in rows}
        missing = expected - found
        if missing:
            raise SchemaMismatch(
                SCHEMA_VERSION,
                await get_schema_version(db),
                f"table {table} is missing columns: {', '.join(sorted(missing))}",
            )


async def ensure_schema(db, auto_migrate: bool = True) -> None:
    """
    Bring a freshly opened store to the current schema, or fail fast.

    An empty store is migrated when ``auto_migrate`` is set. A store with
    unversioned tables, a newer version, or an older version that may not be
    migrated raises SchemaMismatch.
    """
    version = await get_schema_version(db)

    if version is None:
        tables = await _table_names(db)
        if tables:
            raise SchemaMismatch(SCHEMA_VERSION, None, "store has no schema version")
        if not auto_migrate:
            raise SchemaMismatch(SCHEMA_VERSION, None, "store is not migrated")
        await run_migrations(db)
    elif version > SCHEMA_VERSION:
        raise SchemaMismatch(SCHEMA_VERSION, version, "store was written by a newer hub")
    elif version < SCHEMA_VERSION:
        if not auto_migrate:
            raise SchemaMismatch(SCHEMA_VERSION, version, "store needs migration")
        await run_migrations(db)

    await check_columns(db)
