"""Unit tests for the schema migration runner."""

import sqlite3
import unittest

from pipewright.storage.migrations.runner import MigrationRunner, default_runner


def tables(conn: sqlite3.Connection) -> set[str]:
    rows = conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
    return {row[0] for row in rows}


class TestDefaultMigrations(unittest.TestCase):
    """Test the registered pipewright migrations."""

    def setUp(self):
        self.conn = sqlite3.connect(":memory:")
        self.runner = default_runner()

    def tearDown(self):
        self.conn.close()

    def test_migrate_to_latest(self):
        applied = self.runner.migrate(self.conn)

        self.assertEqual([m.version for m in applied], [1, 2, 3])
        self.assertEqual(self.runner.current_version(self.conn), 3)
        self.assertTrue({"runs", "run_nodes", "approvals"} <= tables(self.conn))
        self.assertEqual(self.runner.migrate(self.conn), [])

    def test_migrate_to_target(self):
        self.runner.migrate(self.conn, target=1)

        self.assertEqual(self.runner.current_version(self.conn), 1)
        self.assertNotIn("run_nodes", tables(self.conn))
        self.assertEqual([m.name for m in self.runner.pending_migrations(self.conn)],
                         ["add_run_nodes", "add_approvals"])

    def test_rollback(self):
        self.runner.migrate(self.conn)

        rolled_back = self.runner.rollback(self.conn, steps=3)

        self.assertEqual([m.version for m in rolled_back], [3, 2, 1])
        self.assertEqual(self.runner.current_version(self.conn), 0)
        self.assertFalse({"runs", "run_nodes", "approvals"} & tables(self.conn))

    def test_applied_records(self):
        self.runner.migrate(self.conn)

        applied = self.runner.applied(self.conn)

        self.assertEqual([(a.version, a.name) for a in applied],
                         [(1, "initial_schema"), (2, "add_run_nodes"), (3, "add_approvals")])
        self.assertEqual(len(applied[0].checksum), 16)


class TestMigrationRunner(unittest.TestCase):
    """Test registration and failure handling."""

    def setUp(self):
        self.conn = sqlite3.connect(":memory:")

    def tearDown(self):
        self.conn.close()

    def test_duplicate_version(self):
        runner = MigrationRunner()
        runner.register(1, "a", lambda conn: None)

        with self.assertRaises(ValueError):
            runner.register(1, "b", lambda conn: None)

    def test_failed_migration_keeps_earlier_ones(self):
        def broken(conn):
            raise sqlite3.OperationalError("boom")

        runner = MigrationRunner()
        runner.register(2, "broken", broken)
        runner.register(1, "create", lambda conn: conn.execute("CREATE TABLE t (x INTEGER)"))

        with self.assertRaises(sqlite3.OperationalError):
            runner.migrate(self.conn)

        self.assertEqual(runner.current_version(self.conn), 1)
        self.assertIn("t", tables(self.conn))

    def test_rollback_stops_without_down(self):
        runner = MigrationRunner()
        runner.register(1, "create", lambda conn: conn.execute("CREATE TABLE t (x INTEGER)"))
        runner.migrate(self.conn)

        self.assertEqual(runner.rollback(self.conn), [])
        self.assertEqual(runner.current_version(self.conn), 1)


if __name__ == "__main__":
    unittest.main()
