"""Tests for MigrationRunner against a mocked connection."""

from unittest.mock import MagicMock

import asyncpg
import pytest

from streamnotify.migrations import MigrationRunner
from streamnotify.migrations.runner import MIGRATION_LOCK_KEY, VERSIONS_DIR, discover


@pytest.fixture
def conn() -> MagicMock:
    conn = MagicMock(spec=asyncpg.Connection)
    conn.fetch.return_value = []
    return conn


@pytest.fixture
def pool(conn) -> MagicMock:
    pool = MagicMock(spec=asyncpg.Pool)
    pool.acquire.return_value.__aenter__.return_value = conn
    return pool


@pytest.fixture
def versions(tmp_path):
    (tmp_path / "001_second.sql").write_text("CREATE TABLE second (id INT);")
    (tmp_path / "000_first.sql").write_text("CREATE TABLE first (id INT);")
    (tmp_path / "notes.txt").write_text("not a migration")
    return tmp_path


def executed(conn) -> list[str]:
    return [" ".join(c.args[0].split()) for c in conn.execute.await_args_list]


@pytest.mark.unit
class TestDiscover:
    def test_sorted_by_filename(self, versions):
        assert [m.version for m in discover(versions)] == ["000_first", "001_second"]

    def test_packaged_versions_include_initial_schema(self):
        assert discover(VERSIONS_DIR)[0].version == "000_initial_schema"


@pytest.mark.unit
class TestRunPending:
    @pytest.mark.asyncio
    async def test_applies_pending_in_order(self, pool, conn, versions):
        applied = await MigrationRunner(pool, versions).run_pending()

        assert applied == ["000_first", "001_second"]
        statements = executed(conn)
        assert statements.index("CREATE TABLE first (id INT);") < statements.index(
            "CREATE TABLE second (id INT);"
        )
        inserts = [c.args[1] for c in conn.execute.await_args_list if "INSERT INTO" in c.args[0]]
        assert inserts == ["000_first", "001_second"]

    @pytest.mark.asyncio
    async def test_skips_applied_versions(self, pool, conn, versions):
        conn.fetch.return_value = [{"version": "000_first"}]

        applied = await MigrationRunner(pool, versions).run_pending()

        assert applied == ["001_second"]
        assert "CREATE TABLE first (id INT);" not in executed(conn)

    @pytest.mark.asyncio
    async def test_lock_wraps_the_whole_run(self, pool, conn, versions):
        await MigrationRunner(pool, versions, lock_timeout=5).run_pending()

        calls = conn.execute.await_args_list
        assert calls[0].args == ("SELECT pg_advisory_lock($1)", MIGRATION_LOCK_KEY)
        assert calls[0].kwargs == {"timeout": 5}
        assert calls[-1].args == ("SELECT pg_advisory_unlock($1)", MIGRATION_LOCK_KEY)

    @pytest.mark.asyncio
    async def test_lock_is_released_when_a_migration_fails(self, pool, conn, versions):
        async def execute(sql, *args, **kwargs):
            if sql.startswith("CREATE TABLE second"):
                raise asyncpg.PostgresSyntaxError("syntax error")
            return "OK"

        conn.execute.side_effect = execute

        with pytest.raises(asyncpg.PostgresSyntaxError):
            await MigrationRunner(pool, versions).run_pending()
        assert executed(conn)[-1] == "SELECT pg_advisory_unlock($1)"

    @pytest.mark.asyncio
    async def test_empty_directory_does_not_connect(self, pool, tmp_path):
        assert await MigrationRunner(pool, tmp_path).run_pending() == []
        pool.acquire.assert_not_called()
