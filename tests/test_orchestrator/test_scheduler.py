"""Unit tests for DependencyScheduler.

Covers ready-set computation, failure propagation under both dependency
policies, cancellation and statistics.
"""

import unittest

from pipewright.core.constants import DependencyPolicy, NodeStatus
from pipewright.core.exceptions import ConfigurationError, StateTransitionError
from pipewright.orchestrator.scheduler import DependencyScheduler


STAGES = {
    "Compile": [],
    "CompileCLI": [],
    "Windows": ["Compile", "CompileCLI"],
    "Linux": ["Compile"],
    "LinuxSnap": ["Linux"],
    "Publish": ["Windows", "LinuxSnap"],
}


class TestReadySet(unittest.TestCase):
    """Test which nodes become ready."""

    def setUp(self):
        self.scheduler = DependencyScheduler(STAGES)

    def test_roots_ready_first(self):
        self.assertEqual(self.scheduler.ready(), {"Compile", "CompileCLI"})

    def test_running_nodes_not_ready(self):
        self.scheduler.mark_running("Compile")

        self.assertEqual(self.scheduler.ready(), {"CompileCLI"})
        self.assertEqual(self.scheduler.running, {"Compile"})

    def test_ready_after_all_dependencies_succeed(self):
        self.scheduler.mark_running("Compile")
        self.scheduler.complete("Compile", NodeStatus.SUCCEEDED)

        self.assertEqual(self.scheduler.ready(), {"CompileCLI", "Linux"})

        self.scheduler.mark_running("CompileCLI")
        self.scheduler.complete("CompileCLI", NodeStatus.SUCCEEDED)

        self.assertEqual(self.scheduler.ready(), {"Linux", "Windows"})

    def test_mark_running_twice(self):
        self.scheduler.mark_running("Compile")

        with self.assertRaises(StateTransitionError):
            self.scheduler.mark_running("Compile")

    def test_invalid_graph(self):
        with self.assertRaises(ConfigurationError):
            DependencyScheduler({"A": ["B"], "B": ["A"]})
        with self.assertRaises(ConfigurationError):
            DependencyScheduler({"A": ["Missing"]})


class TestFailurePropagation(unittest.TestCase):
    """Test skipping of dependents."""

    def test_failure_skips_transitive_dependents(self):
        scheduler = DependencyScheduler(STAGES)
        scheduler.mark_running("Compile")

        skipped = scheduler.complete("Compile", NodeStatus.FAILED)

        self.assertEqual(skipped, ["Linux", "Windows", "LinuxSnap", "Publish"])
        self.assertEqual(scheduler.status("Publish"), NodeStatus.SKIPPED)
        # Independent work is unaffected
        self.assertEqual(scheduler.ready(), {"CompileCLI"})

    def test_timeout_and_cancel_propagate_like_failure(self):
        for status in (NodeStatus.TIMED_OUT, NodeStatus.CANCELED, NodeStatus.SKIPPED):
            with self.subTest(status=status):
                scheduler = DependencyScheduler({"A": [], "B": ["A"]})
                scheduler.mark_running("A")

                self.assertEqual(scheduler.complete("A", status), ["B"])

    def test_completed_policy_runs_after_failure(self):
        scheduler = DependencyScheduler(
            {"Build": [], "Cleanup": ["Build"], "Publish": ["Cleanup"]},
            {"Cleanup": DependencyPolicy.COMPLETED},
        )
        scheduler.mark_running("Build")

        skipped = scheduler.complete("Build", NodeStatus.FAILED)

        self.assertEqual(skipped, [])
        self.assertEqual(scheduler.ready(), {"Cleanup"})

    def test_completed_policy_waits_for_all_dependencies(self):
        scheduler = DependencyScheduler(
            {"A": [], "B": [], "Report": ["A", "B"]},
            {"Report": DependencyPolicy.COMPLETED},
        )
        scheduler.mark_running("A")
        scheduler.complete("A", NodeStatus.FAILED)

        self.assertEqual(scheduler.ready(), {"B"})

    def test_complete_rejects_non_terminal_and_repeats(self):
        scheduler = DependencyScheduler({"A": []})
        scheduler.mark_running("A")

        with self.assertRaises(StateTransitionError):
            scheduler.complete("A", NodeStatus.RUNNING)

        scheduler.complete("A", NodeStatus.SUCCEEDED)
        with self.assertRaises(StateTransitionError):
            scheduler.complete("A", NodeStatus.FAILED)


class TestFinish(unittest.TestCase):
    """Test finishing and statistics."""

    def test_finish_pending_on_cancel(self):
        scheduler = DependencyScheduler(STAGES)
        scheduler.mark_running("Compile")

        canceled = scheduler.finish_pending(NodeStatus.CANCELED)

        self.assertEqual(len(canceled), 5)
        self.assertNotIn("Compile", canceled)
        self.assertFalse(scheduler.is_finished)

        scheduler.complete("Compile", NodeStatus.CANCELED)
        self.assertTrue(scheduler.is_finished)

    def test_statistics(self):
        scheduler = DependencyScheduler(STAGES)
        scheduler.mark_running("Compile")
        scheduler.mark_running("CompileCLI")
        scheduler.complete("CompileCLI", NodeStatus.SUCCEEDED)

        stats = scheduler.get_statistics()

        self.assertEqual(stats.total, 6)
        self.assertEqual(stats.running, 1)
        self.assertEqual(stats.succeeded, 1)
        self.assertEqual(stats.pending, 4)
        self.assertEqual(stats.failed, 0)

    def test_empty_graph_is_finished(self):
        self.assertTrue(DependencyScheduler({}).is_finished)


if __name__ == "__main__":
    unittest.main()
