"""Unit tests for RunStateTracker.

Covers:
- One pending record per planned node
- Legal and illegal transitions, timestamps, terminal immutability
- Bulk helpers (finish_pending, skip_subtree, carry_over)
- Outcome computation
- Persistence to the run database and the audit log
"""

import tempfile
import unittest
from datetime import datetime
from pathlib import Path

from pipewright.core.audit import AuditLogger
from pipewright.core.constants import NodeKind, NodeStatus, RunOutcome
from pipewright.core.exceptions import StateTransitionError
from pipewright.core.models import JobDef, NodeRecord, RunMetadata, StageDef, StepDef, Trigger
from pipewright.definition.graph import RunPlan
from pipewright.orchestrator.state import RunStateTracker
from pipewright.storage.database import Database


def make_plan() -> RunPlan:
    compile_job = JobDef(name="Compile", steps=[
        StepDef(name="install", script="yarn"),
        StepDef(name="compile", script="yarn compile"),
    ])
    docs_job = JobDef(name="Docs", steps=[StepDef(name="docs", script="make docs")])
    return RunPlan(pipeline="product-build", stages=[
        StageDef(name="Compile", jobs=[compile_job]),
        StageDef(name="Docs", jobs=[docs_job], depends_on=["Compile"], required=False),
    ])


def make_run(run_id: str = "run-1") -> RunMetadata:
    return RunMetadata(
        id=run_id,
        pipeline="product-build",
        trigger=Trigger(),
        outcome=RunOutcome.PENDING,
        created_at=datetime.now(),
    )


class TestTrackerRecords(unittest.IsolatedAsyncioTestCase):
    """Test node records and transitions."""

    def setUp(self):
        self.tracker = RunStateTracker(make_run(), make_plan())

    def test_initial_records(self):
        records = self.tracker.records

        self.assertEqual([r.node_id for r in records], [
            "Compile", "Compile/Compile", "Compile/Compile/01", "Compile/Compile/02",
            "Docs", "Docs/Docs", "Docs/Docs/01",
        ])
        self.assertTrue(all(r.status == NodeStatus.PENDING for r in records))
        self.assertEqual(self.tracker.counts(NodeKind.STEP), {NodeStatus.PENDING: 3})
        self.assertFalse(self.tracker.get("Docs/Docs").required)

    def test_unknown_node(self):
        with self.assertRaises(StateTransitionError):
            self.tracker.get("Nope")

    def test_children_and_descendants(self):
        self.assertEqual([r.node_id for r in self.tracker.children("Compile")], ["Compile/Compile"])
        self.assertEqual(
            [r.node_id for r in self.tracker.descendants("Compile")],
            ["Compile/Compile", "Compile/Compile/01", "Compile/Compile/02"],
        )

    async def test_transition_sets_timestamps(self):
        record = await self.tracker.transition("Compile/Compile/01", NodeStatus.RUNNING)
        self.assertIsNotNone(record.started_at)
        self.assertIsNone(record.completed_at)

        record = await self.tracker.transition(
            "Compile/Compile/01", NodeStatus.FAILED, exit_code=2, error_code="step_failed"
        )

        self.assertEqual(record.status, NodeStatus.FAILED)
        self.assertEqual(record.exit_code, 2)
        self.assertEqual(record.error_code, "step_failed")
        self.assertIsNotNone(record.completed_at)

    async def test_terminal_status_is_final(self):
        await self.tracker.transition("Compile", NodeStatus.RUNNING)
        await self.tracker.transition("Compile", NodeStatus.SUCCEEDED)

        for status in NodeStatus:
            with self.subTest(status=status):
                with self.assertRaises(StateTransitionError):
                    await self.tracker.transition("Compile", status)

    async def test_illegal_transitions(self):
        with self.assertRaises(StateTransitionError):
            await self.tracker.transition("Compile", NodeStatus.SUCCEEDED)
        with self.assertRaises(StateTransitionError):
            await self.tracker.transition("Compile", NodeStatus.TIMED_OUT)
        with self.assertRaises(StateTransitionError):
            await self.tracker.transition("Compile", NodeStatus.PENDING)

    async def test_pending_job_can_fail_without_running(self):
        record = await self.tracker.transition(
            "Compile/Compile", NodeStatus.FAILED, error_code="environment_unavailable"
        )

        self.assertEqual(record.status, NodeStatus.FAILED)
        self.assertIsNone(record.started_at)

    async def test_finish_pending_skips_non_pending(self):
        await self.tracker.transition("Compile/Compile/01", NodeStatus.RUNNING)

        changed = await self.tracker.finish_pending(
            ["Compile/Compile/01", "Compile/Compile/02"], NodeStatus.CANCELED
        )

        self.assertEqual(changed, ["Compile/Compile/02"])
        self.assertEqual(self.tracker.status("Compile/Compile/01"), NodeStatus.RUNNING)

    async def test_skip_subtree(self):
        await self.tracker.skip_subtree("Docs", "Dependency 'Compile' ended failed")

        for node_id in ("Docs", "Docs/Docs", "Docs/Docs/01"):
            self.assertEqual(self.tracker.status(node_id), NodeStatus.SKIPPED)
        self.assertEqual(self.tracker.get("Docs").error_message, "Dependency 'Compile' ended failed")
        self.assertEqual(self.tracker.get("Docs/Docs/01").error_code, "dependency_failed")

    async def test_carry_over(self):
        previous = NodeRecord(
            node_id="Compile/Compile/01",
            run_id="run-0",
            kind=NodeKind.STEP,
            name="install",
            status=NodeStatus.SUCCEEDED,
            started_at=datetime(2024, 1, 1, 5, 0),
            completed_at=datetime(2024, 1, 1, 5, 2),
            exit_code=0,
            log_path=Path("/runs/run-0/logs/Compile__Compile__01.log"),
        )

        record = await self.tracker.carry_over(previous)

        self.assertTrue(record.reused)
        self.assertEqual(record.status, NodeStatus.SUCCEEDED)
        self.assertEqual(record.run_id, "run-1")
        self.assertEqual(record.duration, 120)
        with self.assertRaises(StateTransitionError):
            await self.tracker.carry_over(previous)


class TestOutcome(unittest.IsolatedAsyncioTestCase):
    """Test run outcome computation."""

    def setUp(self):
        self.tracker = RunStateTracker(make_run(), make_plan())

    async def finish_stage(self, name: str, status: NodeStatus):
        await self.tracker.transition(name, NodeStatus.RUNNING)
        await self.tracker.transition(name, status)

    async def test_succeeded(self):
        await self.finish_stage("Compile", NodeStatus.SUCCEEDED)
        await self.finish_stage("Docs", NodeStatus.SUCCEEDED)

        self.assertEqual(await self.tracker.complete_run(), RunOutcome.SUCCEEDED)
        self.assertIsNotNone(self.tracker.run.completed_at)

    async def test_required_stage_failure(self):
        await self.finish_stage("Compile", NodeStatus.TIMED_OUT)

        self.assertEqual(self.tracker.compute_outcome(), RunOutcome.FAILED)

    async def test_optional_stage_failure_ignored(self):
        await self.finish_stage("Compile", NodeStatus.SUCCEEDED)
        await self.finish_stage("Docs", NodeStatus.FAILED)

        self.assertEqual(self.tracker.compute_outcome(), RunOutcome.SUCCEEDED)

    async def test_canceled(self):
        self.assertTrue(await self.tracker.cancel_run("stop"))
        self.assertFalse(await self.tracker.cancel_run("stop again"))

        self.assertTrue(self.tracker.is_canceled)
        self.assertTrue(self.tracker.run.canceled)
        self.assertEqual(self.tracker.compute_outcome(), RunOutcome.CANCELED)

    async def test_failure_wins_over_cancel(self):
        await self.finish_stage("Compile", NodeStatus.FAILED)
        await self.tracker.cancel_run()

        self.assertEqual(self.tracker.compute_outcome(), RunOutcome.FAILED)


class TestPersistence(unittest.IsolatedAsyncioTestCase):
    """Test database and audit log output."""

    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        root = Path(self.temp_dir.name)
        self.db = Database(root / "pipewright.db")
        self.db.init_db()
        self.audit = AuditLogger("run-1", root / "audit")
        self.tracker = RunStateTracker(make_run(), make_plan(), db=self.db, audit=self.audit)

    def tearDown(self):
        self.audit.close()
        self.db.close()
        self.temp_dir.cleanup()

    async def test_records_persisted(self):
        await self.tracker.initialize()
        await self.tracker.start_run()
        await self.tracker.transition("Compile", NodeStatus.RUNNING)

        run = self.db.get_run("run-1")
        nodes = {r.node_id: r for r in self.db.get_nodes("run-1")}

        self.assertEqual(run.outcome, RunOutcome.RUNNING)
        self.assertEqual(len(nodes), 7)
        self.assertEqual(nodes["Compile"].status, NodeStatus.RUNNING)
        self.assertEqual(nodes["Docs"].status, NodeStatus.PENDING)
        self.assertFalse(nodes["Docs"].required)

    async def test_attempts_persisted(self):
        await self.tracker.initialize()

        self.tracker.record_attempt("Compile/Compile", 2)

        self.assertEqual(self.db.get_node("run-1", "Compile/Compile").attempts, 2)

    async def test_audit_events(self):
        await self.tracker.initialize()
        await self.tracker.start_run()
        await self.tracker.transition("Compile/Compile/01", NodeStatus.RUNNING)
        await self.tracker.transition("Compile/Compile/01", NodeStatus.FAILED, exit_code=1)
        await self.tracker.complete_run()

        events = self.audit.read_events()

        self.assertEqual(
            [e["event_type"] for e in events],
            ["run_start", "node_transition", "node_transition", "run_finish"],
        )
        self.assertEqual(events[2]["details"], {
            "node": "Compile/Compile/01", "from": "running", "to": "failed", "exit_code": 1,
        })
        self.assertEqual(events[3]["details"]["outcome"], "succeeded")


if __name__ == "__main__":
    unittest.main()
