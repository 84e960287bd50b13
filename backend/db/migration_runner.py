"""
SQL migration runner for the graph memory database.

Migrations live next to this module under db/migrations as numbered files:
    0001_description.sql

Each applied version is recorded with its checksum in `schema_migrations`;
editing an applied file is treated as an error rather than silently skipped.
"""

from __future__ import annotations

import asyncio
import hashlib
import os
import re
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Union
from urllib.parse import unquote

from filelock import FileLock, Timeout

from config import env_float

_SQLITE_URL_PREFIXES = ("sqlite+aiosqlite:///", "sqlite:///")
_VERSION_PATTERN = re.compile(r"^(?P<version>\d{4,})_[\w\-]+\.sql$")
_DEFAULT_MIGRATIONS_DIR = Path(__file__).resolve().parent / "migrations"


@dataclass(frozen=True)
class Migration:
    version: str
    path: Path
    checksum: str

    def statements(self) -> List[str]:
        script = self.path.read_text(encoding="utf-8")
        lines = [
            line for line in script.splitlines() if not line.strip().startswith("--")
        ]
        return [part.strip() for part in "\n".join(lines).split(";") if part.strip()]


def sqlite_file_from_url(database_url: str) -> Optional[Path]:
    """Return the database file behind a sqlite URL; None for in-memory DBs."""
    for prefix in _SQLITE_URL_PREFIXES:
        if database_url.startswith(prefix):
            raw_path = unquote(database_url[len(prefix):].split("?", 1)[0])
            if not raw_path or raw_path == ":memory:":
                return None
            return Path(raw_path)
    raise ValueError(
        "Unsupported DATABASE_URL for migrations. "
        "Expected sqlite+aiosqlite:///... or sqlite:///..."
    )


def file_checksum(path: Path) -> str:
    """sha256 over the file with line endings normalized to LF."""
    raw = path.read_bytes()
    try:
        raw = raw.decode("utf-8").replace("\r\n", "\n").encode("utf-8")
    except UnicodeDecodeError:
        pass
    return hashlib.sha256(raw).hexdigest()


class MigrationRunner:
    """Discover and apply pending SQL migrations under a file lock."""

    def __init__(
        self,
        database_url: str,
        migrations_dir: Optional[Path] = None,
        lock_file_path: Optional[Union[Path, str]] = None,
        lock_timeout_seconds: Optional[float] = None,
    ) -> None:
        self.database_file = sqlite_file_from_url(database_url)
        self.migrations_dir = Path(migrations_dir or _DEFAULT_MIGRATIONS_DIR)
        self.lock_file_path = self._resolve_lock_path(
            lock_file_path or os.getenv("DB_MIGRATION_LOCK_FILE", "").strip() or None
        )
        if lock_timeout_seconds is None:
            lock_timeout_seconds = env_float("DB_MIGRATION_LOCK_TIMEOUT_SEC", 10.0)
        self.lock_timeout_seconds = max(0.0, lock_timeout_seconds)

    def _resolve_lock_path(self, configured: Optional[Union[Path, str]]) -> Optional[Path]:
        if configured is not None:
            candidate = Path(str(configured)).expanduser()
            if not candidate.is_absolute() and self.database_file is not None:
                candidate = self.database_file.parent / candidate
            return candidate.resolve()
        if self.database_file is None:
            return None
        return self.database_file.with_name(self.database_file.name + ".migrate.lock")

    def discover(self) -> List[Migration]:
        if not self.migrations_dir.is_dir():
            return []
        migrations = []
        for path in sorted(self.migrations_dir.glob("*.sql")):
            match = _VERSION_PATTERN.match(path.name)
            if match:
                migrations.append(
                    Migration(match.group("version"), path, file_checksum(path))
                )
        return migrations

    async def apply_pending(self) -> List[str]:
        """Apply all pending migrations and return applied versions."""
        return await asyncio.to_thread(self._apply_pending_sync)

    def _apply_pending_sync(self) -> List[str]:
        migrations = self.discover()
        if not migrations or self.database_file is None:
            # In-memory DBs are created from current metadata every boot.
            return []
        if self.lock_file_path is None:
            return self._apply(migrations)

        self.lock_file_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            with FileLock(str(self.lock_file_path), timeout=self.lock_timeout_seconds):
                return self._apply(migrations)
        except Timeout as exc:
            raise RuntimeError(
                f"Timed out waiting for migration lock: {self.lock_file_path} "
                f"({self.lock_timeout_seconds}s)"
            ) from exc

    def _apply(self, migrations: List[Migration]) -> List[str]:
        self.database_file.parent.mkdir(parents=True, exist_ok=True)
        applied: List[str] = []
        with sqlite3.connect(self.database_file) as conn:
            conn.execute("PRAGMA foreign_keys = ON")
            conn.execute(
                "CREATE TABLE IF NOT EXISTS schema_migrations ("
                "version TEXT PRIMARY KEY, applied_at TEXT NOT NULL, checksum TEXT NOT NULL)"
            )
            recorded: Dict[str, str] = dict(
                conn.execute("SELECT version, checksum FROM schema_migrations").fetchall()
            )
            for migration in migrations:
                previous = recorded.get(migration.version)
                if previous is not None:
                    if previous != migration.checksum:
                        raise RuntimeError(
                            f"Checksum mismatch for migration {migration.version}: "
                            f"recorded={previous} current={migration.checksum}"
                        )
                    continue
                for statement in migration.statements():
                    conn.execute(statement)
                conn.execute(
                    "INSERT INTO schema_migrations(version, applied_at, checksum) "
                    "VALUES (?, ?, ?)",
                    (
                        migration.version,
                        datetime.now(timezone.utc).isoformat(),
                        migration.checksum,
                    ),
                )
                conn.commit()
                applied.append(migration.version)
        return applied


async def apply_pending_migrations(
    database_url: str, migrations_dir: Optional[Path] = None
) -> List[str]:
    """Convenience wrapper used by GraphClient.init_db()."""
    runner = MigrationRunner(database_url=database_url, migrations_dir=migrations_dir)
    return await runner.apply_pending()
