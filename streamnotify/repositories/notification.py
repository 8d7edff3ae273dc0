"""Repository for the broadcasters and registrations tables.

The number of registrations pointing at a broadcaster is the reference count
of that broadcaster's remote EventSub subscription. Methods that change the
count lock the broadcaster row first, so a concurrent create and release for
the same broadcaster are serialized by PostgreSQL.

Methods accept an optional ``conn`` so several of them can run inside one
transaction opened with :meth:`NotificationRepository.transaction`.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import asyncpg

from streamnotify.core.errors import ConflictError, PersistenceError
from streamnotify.models.notification import Broadcaster, Registration, ReleasedBroadcaster

logger = logging.getLogger(__name__)

_BROADCASTER_COLS = "id, display_name, avatar_url, event_subscription_id"
_REGISTRATION_COLS = "id, guild_id, broadcaster_id"


@asynccontextmanager
async def _translate_errors(operation: str) -> AsyncIterator[None]:
    """Turn driver failures into ``PersistenceError`` with context logged."""
    try:
        yield
    except asyncpg.UniqueViolationError as e:
        logger.warning(f"{operation}: unique constraint violated: {e}")
        raise ConflictError("Duplicate row", operation=operation) from e
    except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, TimeoutError) as e:
        logger.error(f"{operation}: database error: {type(e).__name__}: {e}")
        raise PersistenceError(f"Database failure during {operation}", operation=operation) from e


class NotificationRepository:
    """Pure SQL operations for broadcasters / registrations."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    # ==================== Connection helpers ====================

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[asyncpg.Connection]:
        """Acquire a connection and run the block in one transaction."""
        async with _translate_errors("transaction"):
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    yield conn

    @asynccontextmanager
    async def _connection(
        self, conn: asyncpg.Connection | None, operation: str
    ) -> AsyncIterator[asyncpg.Connection]:
        if conn is not None:
            yield conn
            return
        async with _translate_errors(operation):
            async with self.pool.acquire() as acquired:
                yield acquired

    # ==================== Broadcaster Operations ====================

    async def get_broadcaster(
        self, broadcaster_id: int, conn: asyncpg.Connection | None = None
    ) -> Broadcaster | None:
        """Get a single broadcaster by Twitch user id."""
        async with self._connection(conn, "get_broadcaster") as c:
            row = await c.fetchrow(
                f"SELECT {_BROADCASTER_COLS} FROM broadcasters WHERE id = $1",
                broadcaster_id,
            )
            return Broadcaster(**dict(row)) if row else None

    async def list_broadcasters(self) -> list[Broadcaster]:
        """Return all broadcasters."""
        async with self._connection(None, "list_broadcasters") as c:
            rows = await c.fetch(f"SELECT {_BROADCASTER_COLS} FROM broadcasters")
            return [Broadcaster(**dict(r)) for r in rows]

    async def upsert_broadcaster(
        self, broadcaster: Broadcaster, conn: asyncpg.Connection
    ) -> Broadcaster:
        """Insert or refresh a broadcaster row, keeping its subscription id.

        Must run inside a transaction: the row stays locked until commit.
        """
        row = await conn.fetchrow(
            f"""
            INSERT INTO broadcasters (id, display_name, avatar_url)
            VALUES ($1, $2, $3)
            ON CONFLICT (id) DO UPDATE SET
                display_name = EXCLUDED.display_name,
                avatar_url   = EXCLUDED.avatar_url
            RETURNING {_BROADCASTER_COLS}
            """,
            broadcaster.id,
            broadcaster.display_name,
            broadcaster.avatar_url,
        )
        return Broadcaster(**dict(row))

    async def set_subscription_id(
        self,
        broadcaster_id: int,
        subscription_id: str,
        conn: asyncpg.Connection | None = None,
    ) -> bool:
        """Record the remote subscription of a broadcaster. False if the row is gone."""
        async with self._connection(conn, "set_subscription_id") as c:
            result = await c.execute(
                "UPDATE broadcasters SET event_subscription_id = $2 WHERE id = $1",
                broadcaster_id,
                subscription_id,
            )
            return result != "UPDATE 0"

    async def replace_subscription_id(
        self, broadcaster_id: int, stale_id: str, subscription_id: str
    ) -> bool:
        """Swap *stale_id* for *subscription_id*. False if the row no longer holds *stale_id*."""
        async with self._connection(None, "replace_subscription_id") as c:
            result = await c.execute(
                "UPDATE broadcasters SET event_subscription_id = $3 "
                "WHERE id = $1 AND event_subscription_id = $2",
                broadcaster_id,
                stale_id,
                subscription_id,
            )
            return result != "UPDATE 0"

    async def subscription_in_use(self, subscription_id: str) -> bool:
        """Whether any broadcaster row references *subscription_id*."""
        async with self._connection(None, "subscription_in_use") as c:
            return bool(
                await c.fetchval(
                    "SELECT EXISTS (SELECT 1 FROM broadcasters WHERE event_subscription_id = $1)",
                    subscription_id,
                )
            )

    async def delete_revoked_broadcaster(
        self, broadcaster_id: int, subscription_id: str
    ) -> list[int] | None:
        """Delete a broadcaster whose subscription Twitch revoked.

        Only matches when the stored subscription id is the revoked one.
        Registrations cascade. Returns the affected guild ids, or None when
        no row matched.
        """
        async with self.transaction() as conn:
            row = await conn.fetchrow(
                "SELECT id FROM broadcasters WHERE id = $1 AND event_subscription_id = $2 "
                "FOR UPDATE",
                broadcaster_id,
                subscription_id,
            )
            if not row:
                return None
            guild_rows = await conn.fetch(
                "SELECT guild_id FROM registrations WHERE broadcaster_id = $1",
                broadcaster_id,
            )
            await conn.execute("DELETE FROM broadcasters WHERE id = $1", broadcaster_id)
            return [r["guild_id"] for r in guild_rows]

    # ==================== Registration Operations ====================

    async def registration_exists(
        self,
        guild_id: int,
        broadcaster_id: int,
        conn: asyncpg.Connection | None = None,
    ) -> bool:
        async with self._connection(conn, "registration_exists") as c:
            return bool(
                await c.fetchval(
                    "SELECT EXISTS (SELECT 1 FROM registrations "
                    "WHERE guild_id = $1 AND broadcaster_id = $2)",
                    guild_id,
                    broadcaster_id,
                )
            )

    async def insert_registration(
        self,
        guild_id: int,
        broadcaster_id: int,
        conn: asyncpg.Connection | None = None,
    ) -> Registration:
        """Insert a registration. Raises ``ConflictError`` on a duplicate pair."""
        async with self._connection(conn, "insert_registration") as c:
            row = await c.fetchrow(
                f"""
                INSERT INTO registrations (guild_id, broadcaster_id)
                VALUES ($1, $2)
                ON CONFLICT (guild_id, broadcaster_id) DO NOTHING
                RETURNING {_REGISTRATION_COLS}
                """,
                guild_id,
                broadcaster_id,
            )
            if not row:
                raise ConflictError(
                    f"Guild {guild_id} already registered broadcaster {broadcaster_id}",
                    operation="insert_registration",
                )
            return Registration(**dict(row))

    async def delete_registration(
        self, registration_id: int, conn: asyncpg.Connection
    ) -> ReleasedBroadcaster | None:
        """Delete one registration and, if it was the last, its broadcaster.

        Returns None when the registration does not exist. Otherwise returns
        the owning broadcaster id; ``event_subscription_id`` is set only when
        the broadcaster row was removed too.
        """
        broadcaster_id = await conn.fetchval(
            "DELETE FROM registrations WHERE id = $1 RETURNING broadcaster_id",
            registration_id,
        )
        if broadcaster_id is None:
            return None

        released = await self._delete_unused_broadcasters([broadcaster_id], conn)
        if released:
            return released[0]
        return ReleasedBroadcaster(broadcaster_id=broadcaster_id, event_subscription_id=None)

    async def delete_guild_registrations(
        self, guild_id: int, conn: asyncpg.Connection
    ) -> list[ReleasedBroadcaster]:
        """Delete every registration of a guild plus the broadcasters left unused."""
        rows = await conn.fetch(
            "DELETE FROM registrations WHERE guild_id = $1 RETURNING broadcaster_id",
            guild_id,
        )
        broadcaster_ids = sorted({r["broadcaster_id"] for r in rows})
        if not broadcaster_ids:
            return []
        return await self._delete_unused_broadcasters(broadcaster_ids, conn)

    async def _delete_unused_broadcasters(
        self, broadcaster_ids: list[int], conn: asyncpg.Connection
    ) -> list[ReleasedBroadcaster]:
        # Lock first so the NOT EXISTS check below sees registrations
        # committed by a concurrent create that held the row
        await conn.execute(
            "SELECT id FROM broadcasters WHERE id = ANY($1::bigint[]) ORDER BY id FOR UPDATE",
            broadcaster_ids,
        )
        rows = await conn.fetch(
            """
            DELETE FROM broadcasters b
            WHERE b.id = ANY($1::bigint[])
              AND NOT EXISTS (SELECT 1 FROM registrations r WHERE r.broadcaster_id = b.id)
            RETURNING b.id, b.event_subscription_id
            """,
            broadcaster_ids,
        )
        return [
            ReleasedBroadcaster(broadcaster_id=r["id"], event_subscription_id=r["event_subscription_id"])
            for r in rows
        ]
