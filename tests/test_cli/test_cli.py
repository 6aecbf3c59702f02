"""Tests for the pipewright command line.

Drives the typer app with CliRunner against a temporary data directory
and a small pipeline that runs real `sh` steps through the local runner.
"""

import json
import tempfile
import unittest
from datetime import datetime
from pathlib import Path

from typer.testing import CliRunner

from pipewright import __version__
from pipewright.cli import app, parse_parameters
from pipewright.core.config import load_settings
from pipewright.core.constants import (
    CONFIGURATION_ERROR_EXIT_CODE,
    BuildReason,
    NodeStatus,
    RunOutcome,
)
from pipewright.core.models import NodeRecord, RunMetadata, Trigger
from pipewright.definition.loader import prepare_run
from pipewright.storage.database import Database


PIPELINE = """\
name: hello
parameters:
  - name: EXIT_CODE
    type: string
    default: "0"
trigger:
  branches:
    include: [main, release/*]
schedules:
  - cron: "0 3 * * 1-5"
    displayName: Nightly
    branches:
      include: [main, release/1.90]
stages:
  - stage: Build
    jobs:
      - job: Build
        steps:
          - script: echo hello from build
            displayName: Say hello
  - stage: Test
    dependsOn: Build
    jobs:
      - job: Test
        steps:
          - script: exit ${{ parameters.EXIT_CODE }}
  - stage: Docs
    condition: eq(variables['Build.SourceBranchName'], 'docs')
    jobs:
      - job: Docs
        steps:
          - script: echo docs
"""


class CliTestCase(unittest.TestCase):
    """Base class with a settings file and a pipeline on disk."""

    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.root = Path(self.temp_dir.name)
        self.config = self.root / "pipewright.yaml"
        self.config.write_text(
            f"data_dir: {self.root / 'data'}\n"
            "pools:\n"
            "  default:\n"
            "    max_concurrency: 2\n"
            "environment_retry:\n"
            "  attempts: 1\n"
        )
        self.pipeline = self.root / "hello.yml"
        self.pipeline.write_text(PIPELINE)
        self.runner = CliRunner()

    def tearDown(self):
        self.temp_dir.cleanup()

    def invoke(self, *args: str):
        return self.runner.invoke(app, ["--config", str(self.config), *args])

    def stored_runs(self):
        with Database(self.root / "data" / "pipewright.db") as db:
            return db.list_runs()

    def start_run(self, *args: str) -> str:
        """Run the pipeline and return the ID of the stored run."""
        self.invoke("run", str(self.pipeline), *args)
        return self.stored_runs()[0].id


class TestDefinitionCommands(CliTestCase):
    """Test validate and plan."""

    def test_version(self):
        result = self.invoke("version")

        self.assertEqual(result.exit_code, 0)
        self.assertIn(__version__, result.output)

    def test_validate(self):
        result = self.invoke("validate", str(self.pipeline))

        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("2 stage(s)", result.output)
        self.assertIn("1 node(s) excluded", result.output)

    def test_validate_invalid_definition(self):
        broken = self.root / "broken.yml"
        broken.write_text("name: broken\njobs: []\n")

        result = self.invoke("validate", str(broken))

        self.assertEqual(result.exit_code, CONFIGURATION_ERROR_EXIT_CODE)
        self.assertIn("Configuration error", result.output)

    def test_missing_settings_file(self):
        result = self.runner.invoke(
            app, ["--config", str(self.root / "missing.yaml"), "validate", str(self.pipeline)]
        )

        self.assertEqual(result.exit_code, CONFIGURATION_ERROR_EXIT_CODE)

    def test_plan(self):
        result = self.invoke("plan", str(self.pipeline), "--branch", "docs")

        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("refs/heads/docs", result.output)
        self.assertIn("Say hello", result.output)
        self.assertIn("Docs", result.output)
        self.assertNotIn("Excluded", result.output)

    def test_plan_bad_parameter(self):
        result = self.invoke("plan", str(self.pipeline), "-p", "EXIT_CODE")

        self.assertNotEqual(result.exit_code, 0)

    def test_parse_parameters(self):
        self.assertEqual(
            parse_parameters(["A=1", "B=x=y", "C="]),
            {"A": "1", "B": "x=y", "C": ""},
        )


class TestRunCommands(CliTestCase):
    """Test run, trigger and the runs sub-commands."""

    def test_successful_run(self):
        result = self.invoke("run", str(self.pipeline))

        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("succeeded", result.output)

    def test_failed_run_exit_code(self):
        result = self.invoke("run", str(self.pipeline), "-p", "EXIT_CODE=3")

        self.assertEqual(result.exit_code, 1, result.output)
        self.assertIn("failed", result.output)

    def test_runs_list_status_and_logs(self):
        run_id = self.start_run()

        status = self.invoke("runs", "status", run_id[:8])
        self.assertEqual(status.exit_code, 0)
        self.assertIn("succeeded", status.output)

        logs = self.invoke("runs", "logs", run_id[:8], "Build")
        self.assertEqual(logs.exit_code, 0, logs.output)
        self.assertIn("##[section]Starting: Say hello", logs.output)
        self.assertIn("hello from build", logs.output)

        missing = self.invoke("runs", "logs", run_id[:8], "Nope")
        self.assertEqual(missing.exit_code, 1)

    def test_runs_show(self):
        run_id = self.start_run()

        result = self.invoke("runs", "show", run_id[:8], "--steps")

        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("Build/Build", result.output)
        self.assertIn("Say hello", result.output)

    def test_unknown_run(self):
        result = self.invoke("runs", "status", "ffffffff")

        self.assertEqual(result.exit_code, 1)
        self.assertIn("No run matches", result.output)

    def test_retry_reuses_build(self):
        run_id = self.start_run("-p", "EXIT_CODE=1")
        self.assertEqual(self.invoke("runs", "status", run_id[:8]).exit_code, 1)

        result = self.invoke("runs", "retry", run_id[:8])

        # The retried run re-plans with the same parameters, so Test fails again
        self.assertEqual(result.exit_code, 1, result.output)
        self.assertIn("reused", result.output)
        retried = self.stored_runs()[0]
        self.assertEqual(retried.retry_of, run_id)

    def test_export_json(self):
        run_id = self.start_run()
        output = self.root / "report.json"

        result = self.invoke("export", run_id[:8], "--format", "json", "--output", str(output))

        self.assertEqual(result.exit_code, 0, result.output)
        data = json.loads(output.read_text())
        self.assertEqual(data["run"]["id"], run_id)
        self.assertEqual(data["run"]["excluded"], ["Docs"])

    def test_export_unsupported_format(self):
        result = self.invoke("export", "x", "--format", "pdf")

        self.assertEqual(result.exit_code, 1)

    def test_prune_and_delete(self):
        run_id = self.start_run()

        dry = self.invoke("runs", "prune", "--days", "0", "--dry-run")
        self.assertEqual(dry.exit_code, 0, dry.output)
        self.assertIn("Would delete 1 run(s)", dry.output)

        deleted = self.invoke("runs", "delete", run_id[:8], "--force")
        self.assertEqual(deleted.exit_code, 0, deleted.output)
        self.assertEqual(self.invoke("runs", "status", run_id[:8]).exit_code, 1)

    def test_trigger_filtered_branch(self):
        result = self.invoke("trigger", str(self.pipeline), "--branch", "feature/x")

        self.assertEqual(result.exit_code, 0)
        self.assertIn("does not include feature/x", result.output)

    def test_trigger_ci_run(self):
        result = self.invoke("trigger", str(self.pipeline), "--branch", "release/1.90")

        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("IndividualCI", result.output)


GATED = """\
name: gated
stages:
  - stage: Build
    jobs:
      - job: Build
        steps:
          - script: echo build
  - stage: Approve
    dependsOn: []
    jobs:
      - approval: Gate
"""


class TestApproveCommand(CliTestCase):
    """Test runs approve against a run waiting on its gate."""

    def setUp(self):
        super().setUp()
        path = self.root / "gated.yml"
        path.write_text(GATED)
        prepared = prepare_run(path, Trigger(), load_settings(self.config))
        self.db = Database(self.root / "data" / "pipewright.db")
        self.db.init_db()
        self.db.save_run(RunMetadata(
            id="abcdef123456",
            pipeline="gated",
            trigger=Trigger(),
            outcome=RunOutcome.RUNNING,
            created_at=datetime(2024, 3, 1, 12, 0),
            plan=prepared.plan.to_dict(),
        ))
        statuses = {"Build": NodeStatus.SUCCEEDED, "Build/Build": NodeStatus.SUCCEEDED,
                    "Build/Build/01": NodeStatus.SUCCEEDED}
        self.db.save_nodes(
            NodeRecord(
                node_id=node.node_id,
                run_id="abcdef123456",
                kind=node.kind,
                name=node.name,
                parent_id=node.parent_id,
                status=statuses.get(node.node_id, NodeStatus.RUNNING),
            )
            for node in prepared.plan.iter_nodes()
        )

    def tearDown(self):
        self.db.close()
        super().tearDown()

    def test_approve(self):
        result = self.invoke("runs", "approve", "abcdef", "Approve/Gate", "--by", "bob")

        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("Approved Approve/Gate", result.output)
        approval = self.db.get_approval("abcdef123456", "Approve/Gate")
        self.assertTrue(approval.approved)
        self.assertEqual(approval.approver, "bob")

    def test_reject_with_comment(self):
        result = self.invoke(
            "runs", "approve", "abcdef", "Approve/Gate", "--reject", "-m", "Not today"
        )

        self.assertEqual(result.exit_code, 0, result.output)
        approval = self.db.get_approval("abcdef123456", "Approve/Gate")
        self.assertFalse(approval.approved)
        self.assertEqual(approval.comment, "Not today")

    def test_second_decision_fails(self):
        self.assertEqual(self.invoke("runs", "approve", "abcdef", "Approve/Gate").exit_code, 0)

        result = self.invoke("runs", "approve", "abcdef", "Approve/Gate", "--reject")

        self.assertEqual(result.exit_code, 1)
        self.assertTrue(self.db.get_approval("abcdef123456", "Approve/Gate").approved)

    def test_only_waiting_approval_jobs(self):
        for node_id, message in (
            ("Build/Build", "no approval job"),
            ("Approve", "no approval job"),
            ("Missing/Gate", "no approval job"),
        ):
            with self.subTest(node_id):
                result = self.invoke("runs", "approve", "abcdef", node_id)
                self.assertEqual(result.exit_code, 1)
                self.assertIn(message, result.output)
        self.assertIsNone(self.db.get_approval("abcdef123456", "Build/Build"))

    def test_decided_job(self):
        record = self.db.get_node("abcdef123456", "Approve/Gate")
        record.status = NodeStatus.TIMED_OUT
        self.db.save_node(record)

        result = self.invoke("runs", "approve", "abcdef", "Approve/Gate")

        self.assertEqual(result.exit_code, 1)
        self.assertIn("already ended timed_out", result.output)


class TestScheduleCommands(CliTestCase):
    """Test schedule due and tick."""

    def test_due(self):
        result = self.invoke("schedule", "due", str(self.pipeline), "--at", "2024-03-04T03:00")

        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("Nightly", result.output)

    def test_nothing_due(self):
        result = self.invoke("schedule", "due", str(self.pipeline), "--at", "2024-03-03T03:00")

        self.assertEqual(result.exit_code, 0)
        self.assertIn("No schedule", result.output)

    def test_due_for_branch(self):
        args = ["schedule", "due", str(self.pipeline), "--at", "2024-03-04T03:00"]

        matching = self.invoke(*args, "--branch", "release/1.90")
        other = self.invoke(*args, "--branch", "feature/x")

        self.assertIn("Nightly", matching.output)
        self.assertIn("No schedule", other.output)

    def test_tick_runs_each_branch(self):
        result = self.invoke("schedule", "tick", str(self.pipeline), "--at", "2024-03-04T03:00")

        self.assertEqual(result.exit_code, 0, result.output)
        runs = self.stored_runs()
        self.assertEqual(
            sorted(r.trigger.branch for r in runs), ["main", "release/1.90"]
        )
        self.assertTrue(all(r.trigger.reason == BuildReason.SCHEDULE for r in runs))

    def test_invalid_timestamp(self):
        result = self.invoke("schedule", "due", str(self.pipeline), "--at", "tomorrow")

        self.assertNotEqual(result.exit_code, 0)


if __name__ == "__main__":
    unittest.main()
