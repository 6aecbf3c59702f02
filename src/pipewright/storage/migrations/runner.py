"""Schema migration runner for the run database.

Migrations are plain modules exposing `up(conn)` and optionally
`down(conn)`. Applied versions are tracked in `schema_migrations`.
"""

import hashlib
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

logger = logging.getLogger(__name__)


MigrationFunc = Callable[[sqlite3.Connection], None]


@dataclass
class Migration:
    version: int
    name: str
    up: MigrationFunc
    down: Optional[MigrationFunc] = None

    @property
    def checksum(self) -> str:
        return hashlib.sha256(f"{self.version}{self.name}".encode()).hexdigest()[:16]


@dataclass
class AppliedMigration:
    version: int
    name: str
    checksum: str
    applied_at: str


class MigrationRunner:
    """Apply and roll back registered migrations in version order."""

    def __init__(self) -> None:
        self._migrations: list[Migration] = []

    def register(
        self,
        version: int,
        name: str,
        up: MigrationFunc,
        down: Optional[MigrationFunc] = None,
    ) -> None:
        if any(m.version == version for m in self._migrations):
            raise ValueError(f"Migration version {version} registered twice")
        self._migrations.append(Migration(version, name, up, down))
        self._migrations.sort(key=lambda m: m.version)

    @property
    def latest_version(self) -> int:
        return max((m.version for m in self._migrations), default=0)

    def _init_tracking_table(self, conn: sqlite3.Connection) -> None:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS schema_migrations (
                version INTEGER PRIMARY KEY,
                name TEXT NOT NULL,
                checksum TEXT NOT NULL,
                applied_at TEXT NOT NULL
            )
        """)
        conn.commit()

    def current_version(self, conn: sqlite3.Connection) -> int:
        try:
            row = conn.execute("SELECT MAX(version) FROM schema_migrations").fetchone()
            return row[0] if row and row[0] else 0
        except sqlite3.OperationalError:
            return 0

    def applied(self, conn: sqlite3.Connection) -> list[AppliedMigration]:
        """List applied migrations, oldest first."""
        self._init_tracking_table(conn)
        rows = conn.execute(
            "SELECT version, name, checksum, applied_at FROM schema_migrations ORDER BY version"
        ).fetchall()
        return [AppliedMigration(*tuple(row)) for row in rows]

    def pending_migrations(self, conn: sqlite3.Connection) -> list[Migration]:
        current = self.current_version(conn)
        return [m for m in self._migrations if m.version > current]

    def migrate(
        self,
        conn: sqlite3.Connection,
        target: Optional[int] = None,
    ) -> list[Migration]:
        """Apply pending migrations up to `target` (default: latest).

        Each migration commits on its own; a failing migration is rolled
        back and re-raised, leaving earlier ones applied.
        """
        self._init_tracking_table(conn)
        current = self.current_version(conn)

        if target is None:
            target = self.latest_version

        pending = [m for m in self._migrations if current < m.version <= target]
        if not pending:
            logger.debug("Run database schema is up to date")
            return []

        applied = []
        for migration in pending:
            logger.info(f"Applying migration {migration.version}: {migration.name}")
            try:
                migration.up(conn)
                conn.execute(
                    """
                    INSERT INTO schema_migrations (version, name, checksum, applied_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (
                        migration.version,
                        migration.name,
                        migration.checksum,
                        datetime.now(timezone.utc).isoformat(),
                    ),
                )
                conn.commit()
                applied.append(migration)
            except Exception as e:
                conn.rollback()
                logger.error(f"Migration {migration.version} failed: {e}")
                raise

        return applied

    def rollback(
        self,
        conn: sqlite3.Connection,
        steps: int = 1,
    ) -> list[Migration]:
        """Roll back the newest `steps` migrations that define `down`."""
        self._init_tracking_table(conn)
        current = self.current_version(conn)

        rolled_back = []
        for _ in range(steps):
            migration = next(
                (m for m in reversed(self._migrations) if m.version == current),
                None,
            )
            if migration is None:
                break
            if migration.down is None:
                logger.warning(f"Migration {migration.version} has no rollback")
                break

            logger.info(f"Rolling back migration {migration.version}: {migration.name}")
            try:
                migration.down(conn)
                conn.execute(
                    "DELETE FROM schema_migrations WHERE version = ?",
                    (migration.version,),
                )
                conn.commit()
                rolled_back.append(migration)
                current = self.current_version(conn)
            except Exception as e:
                conn.rollback()
                logger.error(f"Rollback of {migration.version} failed: {e}")
                raise

        return rolled_back


def default_runner() -> MigrationRunner:
    """Migration runner with every pipewright schema migration registered."""
    from pipewright.storage.migrations import (
        m001_initial_schema,
        m002_add_run_nodes,
        m003_add_approvals,
    )

    runner = MigrationRunner()
    runner.register(1, "initial_schema", m001_initial_schema.up, m001_initial_schema.down)
    runner.register(2, "add_run_nodes", m002_add_run_nodes.up, m002_add_run_nodes.down)
    runner.register(3, "add_approvals", m003_add_approvals.up, m003_add_approvals.down)
    return runner
