import asyncio
import sqlite3
from pathlib import Path

import pytest
from filelock import FileLock

from db.embedding import EmbeddingService
from db.graph_client import GraphClient
from db.migration_runner import MigrationRunner, sqlite_file_from_url


def _sqlite_url(db_path: Path) -> str:
    return f"sqlite+aiosqlite:///{db_path}"


def _write_migration(migrations_dir: Path, name: str, sql: str) -> Path:
    migrations_dir.mkdir(parents=True, exist_ok=True)
    path = migrations_dir / name
    path.write_text(sql, encoding="utf-8")
    return path


@pytest.mark.asyncio
async def test_migration_runner_applies_and_tracks_versions(tmp_path: Path) -> None:
    db_path = tmp_path / "graph.db"
    migrations_dir = tmp_path / "migrations"
    _write_migration(
        migrations_dir,
        "0001_test.sql",
        "-- scratch table\nCREATE TABLE IF NOT EXISTS test_table (id INTEGER PRIMARY KEY);",
    )
    _write_migration(migrations_dir, "notes.sql", "THIS IS NOT SQL;")

    runner = MigrationRunner(_sqlite_url(db_path), migrations_dir=migrations_dir)
    first_applied = await runner.apply_pending()
    second_applied = await runner.apply_pending()

    assert first_applied == ["0001"]
    assert second_applied == []

    with sqlite3.connect(db_path) as conn:
        versions = [row[0] for row in conn.execute("SELECT version FROM schema_migrations")]
        assert versions == ["0001"]
        tables = {
            row[0]
            for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
        }
        assert "test_table" in tables


@pytest.mark.asyncio
async def test_migration_runner_detects_checksum_mismatch(tmp_path: Path) -> None:
    db_path = tmp_path / "graph.db"
    migrations_dir = tmp_path / "migrations"
    migration_file = _write_migration(
        migrations_dir,
        "0001_test.sql",
        "CREATE TABLE IF NOT EXISTS test_table (id INTEGER PRIMARY KEY);",
    )

    runner = MigrationRunner(_sqlite_url(db_path), migrations_dir=migrations_dir)
    await runner.apply_pending()

    migration_file.write_text(
        "CREATE TABLE IF NOT EXISTS test_table (id INTEGER PRIMARY KEY, x TEXT);",
        encoding="utf-8",
    )

    with pytest.raises(RuntimeError, match="Checksum mismatch"):
        await runner.apply_pending()


@pytest.mark.asyncio
async def test_graph_client_init_db_applies_project_migrations(tmp_path: Path) -> None:
    db_path = tmp_path / "fresh.db"
    client = GraphClient(_sqlite_url(db_path), EmbeddingService(backend="none"))
    await client.init_db()
    await client.init_db()
    await client.close()

    with sqlite3.connect(db_path) as conn:
        count = conn.execute(
            "SELECT COUNT(*) FROM schema_migrations WHERE version = '0001'"
        ).fetchone()[0]
        assert count == 1
        index_names = {
            row[0]
            for row in conn.execute("SELECT name FROM sqlite_master WHERE type='index'")
        }
        assert "idx_memory_entities_entity_type" in index_names
        assert "idx_memory_entities_name_type" in index_names
        assert "idx_memory_observations_entity_content" in index_names


def test_sqlite_file_from_url_strips_query_and_rejects_other_dialects() -> None:
    assert sqlite_file_from_url("sqlite+aiosqlite:///data/graph.db?cache=shared") == Path(
        "data/graph.db"
    )
    assert sqlite_file_from_url("sqlite:///:memory:") is None
    with pytest.raises(ValueError, match="Unsupported DATABASE_URL"):
        sqlite_file_from_url("postgresql+asyncpg://localhost/graph")


@pytest.mark.asyncio
async def test_migration_runner_serializes_concurrent_apply(tmp_path: Path) -> None:
    db_path = tmp_path / "concurrent.db"
    migrations_dir = tmp_path / "migrations"
    _write_migration(
        migrations_dir,
        "0001_test.sql",
        "CREATE TABLE IF NOT EXISTS test_table (id INTEGER PRIMARY KEY);",
    )

    runner_a = MigrationRunner(_sqlite_url(db_path), migrations_dir=migrations_dir)
    runner_b = MigrationRunner(_sqlite_url(db_path), migrations_dir=migrations_dir)
    results = await asyncio.gather(runner_a.apply_pending(), runner_b.apply_pending())

    flattened = [version for batch in results for version in batch]
    assert flattened.count("0001") == 1


@pytest.mark.asyncio
async def test_migration_runner_times_out_when_lock_is_held(tmp_path: Path) -> None:
    db_path = tmp_path / "timeout.db"
    migrations_dir = tmp_path / "migrations"
    _write_migration(
        migrations_dir,
        "0001_test.sql",
        "CREATE TABLE IF NOT EXISTS test_table (id INTEGER PRIMARY KEY);",
    )

    lock_path = tmp_path / "migration.lock"
    with FileLock(str(lock_path), timeout=1):
        runner = MigrationRunner(
            _sqlite_url(db_path),
            migrations_dir=migrations_dir,
            lock_file_path=lock_path,
            lock_timeout_seconds=0.01,
        )
        with pytest.raises(RuntimeError, match="Timed out waiting for migration lock"):
            await runner.apply_pending()


def test_migration_runner_normalizes_relative_env_lock_path(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    db_path = tmp_path / "dbdir" / "graph.db"
    db_path.parent.mkdir(parents=True, exist_ok=True)

    monkeypatch.setenv("DB_MIGRATION_LOCK_FILE", "locks/migrate.lock")
    runner = MigrationRunner(_sqlite_url(db_path), migrations_dir=tmp_path / "migrations")

    expected = (db_path.parent / "locks/migrate.lock").resolve()
    assert runner.lock_file_path == expected


@pytest.mark.asyncio
async def test_migration_runner_skips_in_memory_database(tmp_path: Path) -> None:
    migrations_dir = tmp_path / "migrations"
    _write_migration(
        migrations_dir,
        "0001_test.sql",
        "CREATE TABLE IF NOT EXISTS test_table (id INTEGER PRIMARY KEY);",
    )

    runner = MigrationRunner("sqlite+aiosqlite:///:memory:", migrations_dir=migrations_dir)
    assert await runner.apply_pending() == []
