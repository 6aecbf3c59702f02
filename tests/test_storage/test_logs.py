"""Unit tests for run directory storage and retention pruning."""

import tempfile
import unittest
from datetime import datetime
from pathlib import Path

from pipewright.core.constants import RunOutcome
from pipewright.core.exceptions import LogNotFoundError
from pipewright.core.models import RunMetadata, Trigger
from pipewright.storage.database import Database
from pipewright.storage.logs import LogStorage, prune_runs


class TestLogStorage(unittest.TestCase):
    """Test the run directory layout."""

    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.storage = LogStorage(Path(self.temp_dir.name) / "runs")

    def tearDown(self):
        self.temp_dir.cleanup()

    def test_init_run_directories(self):
        run_dir, logs_dir, audit_dir = self.storage.init_run_directories("run-1")

        self.assertEqual(run_dir, self.storage.base_dir / "run-1")
        self.assertTrue(logs_dir.is_dir())
        self.assertTrue(audit_dir.is_dir())
        self.assertTrue((run_dir / "work").is_dir())

    def test_paths(self):
        self.assertEqual(
            self.storage.step_log_path("run-1", "Linux/Build/01"),
            self.storage.base_dir / "run-1" / "logs" / "Linux__Build__01.log",
        )
        self.assertEqual(
            self.storage.workspace_dir("run-1", "Linux/Build"),
            self.storage.base_dir / "run-1" / "work" / "Linux" / "Build",
        )

    def test_read_log(self):
        self.storage.init_run_directories("run-1")
        path = self.storage.step_log_path("run-1", "Linux/Build/01")
        path.write_text("##[section]Starting: build\n")

        self.assertEqual(self.storage.read_log(path), "##[section]Starting: build\n")

    def test_read_missing_log(self):
        with self.assertRaises(LogNotFoundError):
            self.storage.read_log(None)
        with self.assertRaises(LogNotFoundError):
            self.storage.read_log(self.storage.step_log_path("run-1", "A/B/01"))

    def test_size_and_delete(self):
        self.storage.init_run_directories("run-1")
        self.storage.step_log_path("run-1", "A/B/01").write_text("x" * 10)

        self.assertEqual(self.storage.get_run_size("run-1"), 10)
        self.assertTrue(self.storage.delete_run("run-1"))
        self.assertFalse(self.storage.delete_run("run-1"))
        self.assertEqual(self.storage.get_run_size("run-1"), 0)


class TestPruneRuns(unittest.TestCase):
    """Test retention pruning of finished runs."""

    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        root = Path(self.temp_dir.name)
        self.storage = LogStorage(root / "runs")
        self.db = Database(root / "pipewright.db")
        self.db.init_db()
        self.now = datetime(2024, 6, 30)

        self.add_run("old-2", datetime(2024, 5, 1))
        self.add_run("old-1", datetime(2024, 4, 1))
        self.add_run("running", datetime(2024, 4, 1), RunOutcome.RUNNING)
        self.add_run("fresh", datetime(2024, 6, 25))

    def tearDown(self):
        self.db.close()
        self.temp_dir.cleanup()

    def add_run(self, run_id, created_at, outcome=RunOutcome.FAILED):
        run_dir, logs_dir, audit_dir = self.storage.init_run_directories(run_id)
        self.db.save_run(RunMetadata(
            id=run_id,
            pipeline="product-build",
            trigger=Trigger(),
            outcome=outcome,
            created_at=created_at,
            run_dir=run_dir,
            logs_dir=logs_dir,
            audit_dir=audit_dir,
        ))

    def test_prune_expired_runs(self):
        pruned = prune_runs(self.db, self.storage, 30, now=self.now)

        self.assertEqual(pruned, ["old-1", "old-2"])
        self.assertIsNone(self.db.get_run("old-1"))
        self.assertFalse(self.storage.run_dir("old-1").exists())
        self.assertIsNotNone(self.db.get_run("running"))
        self.assertTrue(self.storage.run_dir("fresh").exists())

    def test_dry_run_keeps_everything(self):
        pruned = prune_runs(self.db, self.storage, 30, now=self.now, dry_run=True)

        self.assertEqual(pruned, ["old-1", "old-2"])
        self.assertIsNotNone(self.db.get_run("old-1"))
        self.assertTrue(self.storage.run_dir("old-1").exists())


if __name__ == "__main__":
    unittest.main()
