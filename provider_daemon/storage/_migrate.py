import logging
import time

from ._schema import SCHEMA_SQL, SCHEMA_VERSION

logger = logging.getLogger("storage")


async def _current_version(db) -> int:
    async with db.execute(
        "SELECT name FROM sqlite_master WHERE type = 'table' AND name = 'schema_version'"
    ) as cursor:
        if await cursor.fetchone() is None:
            return 0
    async with db.execute("SELECT MAX(version) FROM schema_version") as cursor:
        row = await cursor.fetchone()
    return row[0] if row and row[0] is not None else 0


async def run_migrations(db):
    """Bring the schema to SCHEMA_VERSION. Safe to call on every start."""
    version = await _current_version(db)
    if version >= SCHEMA_VERSION:
        logger.debug("Database schema up to date (v%d)", version)
        return

    logger.info("Migrating database from v%d to v%d", version, SCHEMA_VERSION)
    await db.executescript(SCHEMA_SQL)
    await db.execute(
        "INSERT INTO schema_version (version, applied_at) VALUES (?, ?)",
        (SCHEMA_VERSION, time.time()),
    )
    await db.commit()
    logger.info("Migration complete (v%d)", SCHEMA_VERSION)
