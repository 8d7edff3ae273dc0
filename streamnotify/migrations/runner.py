"""Schema migrations for the broadcasters and registrations tables.

Versions are ``versions/NNN_description.sql`` files applied in filename order,
each in its own transaction, and recorded in ``schema_migrations``.

Several service instances may start against the same database at once, so a
run holds a session-level advisory lock on one connection from start to end.
Instances that lose the race wait, then find nothing left to apply.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

import asyncpg

logger = logging.getLogger(__name__)

VERSIONS_DIR = Path(__file__).resolve().parent / "versions"

# pg_advisory_lock key reserved for schema changes of this service
MIGRATION_LOCK_KEY = 0x53_4E_4D_47


@dataclass(frozen=True)
class Migration:
    version: str
    path: Path

    @property
    def sql(self) -> str:
        return self.path.read_text(encoding="utf-8")


def discover(directory: Path = VERSIONS_DIR) -> list[Migration]:
    """SQL files in *directory*, sorted by version."""
    return [Migration(version=p.stem, path=p) for p in sorted(directory.glob("*.sql"))]


class MigrationRunner:
    """Applies pending migrations under an advisory lock."""

    TRACKING_TABLE = "schema_migrations"

    def __init__(
        self,
        pool: asyncpg.Pool,
        directory: Path = VERSIONS_DIR,
        *,
        lock_timeout: float = 60.0,
    ) -> None:
        self.pool = pool
        self.directory = directory
        self.lock_timeout = lock_timeout

    async def run_pending(self) -> list[str]:
        """Apply every migration not yet recorded. Returns the versions applied."""
        migrations = discover(self.directory)
        if not migrations:
            logger.info(f"No migration files found in {self.directory}")
            return []

        async with self.pool.acquire() as conn:
            await conn.execute(
                "SELECT pg_advisory_lock($1)", MIGRATION_LOCK_KEY, timeout=self.lock_timeout
            )
            try:
                applied = await self._applied_versions(conn)
                pending = [m for m in migrations if m.version not in applied]
                for migration in pending:
                    await self._apply(conn, migration)
            finally:
                await conn.execute("SELECT pg_advisory_unlock($1)", MIGRATION_LOCK_KEY)

        if pending:
            logger.info(f"Applied {len(pending)} migration(s): {', '.join(m.version for m in pending)}")
        else:
            logger.info("Database is up to date, no pending migrations")
        return [m.version for m in pending]

    async def _applied_versions(self, conn: asyncpg.Connection) -> set[str]:
        await conn.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {self.TRACKING_TABLE} (
                version    TEXT PRIMARY KEY,
                applied_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            )
            """
        )
        rows = await conn.fetch(f"SELECT version FROM {self.TRACKING_TABLE}")  # noqa: S608
        return {row["version"] for row in rows}

    async def _apply(self, conn: asyncpg.Connection, migration: Migration) -> None:
        logger.info(f"Applying migration {migration.version}")
        async with conn.transaction():
            await conn.execute(migration.sql)
            await conn.execute(
                f"INSERT INTO {self.TRACKING_TABLE} (version) VALUES ($1)",  # noqa: S608
                migration.version,
            )
