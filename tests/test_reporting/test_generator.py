"""Unit tests for run reports.

Covers statistics, the node tree, the text summary and the HTML and JSON
exporters.
"""

import json
import tempfile
import unittest
from datetime import datetime
from pathlib import Path

from pipewright.core.constants import NodeKind, NodeStatus, RunOutcome
from pipewright.core.exceptions import StorageError
from pipewright.core.models import NodeRecord, RunMetadata, Trigger
from pipewright.reporting.exporters.html import HTMLExporter
from pipewright.reporting.generator import (
    ReportGenerator,
    calculate_statistics,
    format_duration,
)
from pipewright.storage.database import Database


def node(node_id, kind, status, parent_id=None, **kwargs) -> NodeRecord:
    return NodeRecord(
        node_id=node_id,
        run_id="run-1",
        kind=kind,
        name=node_id.rsplit("/", 1)[-1],
        status=status,
        parent_id=parent_id,
        **kwargs,
    )


NODES = [
    node("Compile", NodeKind.STAGE, NodeStatus.SUCCEEDED, reused=True),
    node("Compile/Compile", NodeKind.JOB, NodeStatus.SUCCEEDED, "Compile", reused=True),
    node("Compile/Compile/01", NodeKind.STEP, NodeStatus.SUCCEEDED, "Compile/Compile",
         reused=True, exit_code=0),
    node("Linux", NodeKind.STAGE, NodeStatus.FAILED),
    node("Linux/Build", NodeKind.JOB, NodeStatus.FAILED, "Linux", issues=1,
         error_message="Step test failed: Process exited with code 1"),
    node("Linux/Build/01", NodeKind.STEP, NodeStatus.FAILED, "Linux/Build", exit_code=1),
    node("Linux/Build/02", NodeKind.STEP, NodeStatus.SKIPPED, "Linux/Build"),
    node("Linux/Snap", NodeKind.JOB, NodeStatus.SKIPPED, "Linux"),
]


class TestFormatting(unittest.TestCase):
    """Test duration formatting."""

    def test_format_duration(self):
        self.assertEqual(format_duration(None), "N/A")
        self.assertEqual(format_duration(42), "42s")
        self.assertEqual(format_duration(330), "5m 30s")
        self.assertEqual(format_duration(3725), "1h 2m 5s")


class TestStatistics(unittest.TestCase):
    """Test node counting."""

    def test_calculate_statistics(self):
        stats = calculate_statistics(NODES)

        self.assertEqual(stats.stages, {"succeeded": 1, "failed": 1})
        self.assertEqual(stats.jobs, {"succeeded": 1, "failed": 1, "skipped": 1})
        self.assertEqual(stats.steps, {"succeeded": 1, "failed": 1, "skipped": 1})
        self.assertEqual(stats.total_jobs, 3)
        self.assertEqual(stats.failed_jobs, 1)
        self.assertEqual(stats.issues, 1)
        self.assertEqual(stats.reused, 3)


class TestReportGenerator(unittest.TestCase):
    """Test report generation from the database and exports."""

    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.root = Path(self.temp_dir.name)
        self.db = Database(self.root / "pipewright.db")
        self.db.init_db()
        self.db.save_run(RunMetadata(
            id="run-1",
            pipeline="product-build",
            trigger=Trigger(branch="main", requested_for="alice"),
            outcome=RunOutcome.FAILED,
            created_at=datetime(2024, 3, 1, 12, 0),
            started_at=datetime(2024, 3, 1, 12, 0),
            completed_at=datetime(2024, 3, 1, 12, 5, 30),
            retry_of="run-0",
            plan={"pipeline": "product-build", "stages": [], "excluded": ["Linux/SnapArm64"]},
        ))
        self.db.save_nodes(NODES)
        self.generator = ReportGenerator(self.db)

    def tearDown(self):
        self.db.close()
        self.temp_dir.cleanup()

    def test_generate_report(self):
        report = self.generator.generate_report("run-1")

        self.assertEqual(report.duration_formatted, "5m 30s")
        self.assertEqual(len(report.nodes), 8)
        self.assertIn("Outcome:          failed", report.summary)
        self.assertIn("Branch:           refs/heads/main", report.summary)
        self.assertIn("Retry of:         run-0", report.summary)
        self.assertIn(
            "Linux/Build: Step test failed: Process exited with code 1", report.summary
        )

    def test_tree(self):
        tree = self.generator.generate_report("run-1").tree

        self.assertEqual([stage.record.node_id for stage in tree], ["Compile", "Linux"])
        linux = tree[1]
        self.assertEqual([job.record.name for job in linux.children], ["Build", "Snap"])
        self.assertEqual(len(linux.children[0].children), 2)

    def test_missing_run(self):
        with self.assertRaises(StorageError):
            self.generator.generate_report("nope")

    def test_html(self):
        html = HTMLExporter().render(self.generator.generate_report("run-1"))

        self.assertIn("<title>product-build run run-1</title>", html)
        self.assertIn('class="badge badge-failed"', html)
        self.assertIn("Linux/SnapArm64", html)
        self.assertIn("Step test failed", html)

    def test_generate_and_export(self):
        paths = self.generator.generate_and_export("run-1", self.root / "out")

        self.assertEqual(set(paths), {"html", "json"})
        self.assertTrue(paths["html"].exists())
        data = json.loads(paths["json"].read_text())
        self.assertEqual(data["run"]["outcome"], "failed")
        self.assertEqual(data["run"]["exit_code"], 1)
        self.assertEqual(data["run"]["excluded"], ["Linux/SnapArm64"])
        self.assertEqual(data["statistics"]["jobs"]["skipped"], 1)
        self.assertEqual(data["nodes"][2]["kind"], "step")
        self.assertEqual(data["nodes"][0]["started_at"], None)

    def test_unsupported_format(self):
        with self.assertRaises(ValueError):
            self.generator.generate_and_export("run-1", self.root / "out", formats=["pdf"])


if __name__ == "__main__":
    unittest.main()
