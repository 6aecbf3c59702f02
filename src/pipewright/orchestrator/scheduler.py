"""Dependency scheduler for one level of a run graph.

This module provides the DependencyScheduler class which tracks which
nodes of a level (the stages of a plan, or the jobs of a stage) are ready
to dispatch, and propagates failures to dependents as skips.
"""

from dataclasses import dataclass
from typing import Optional

from pipewright.core.constants import DependencyPolicy, NodeStatus
from pipewright.core.exceptions import StateTransitionError
from pipewright.definition.graph import build_dag, topo_levels


@dataclass(frozen=True)
class SchedulerStats:
    pending: int
    running: int
    succeeded: int
    failed: int
    skipped: int
    total: int


class DependencyScheduler:
    """Ready-set tracking with failure propagation.

    A node is ready once every dependency is terminal and, under the
    `succeeded` policy, succeeded. When a dependency ends in anything but
    success, dependents under the `succeeded` policy (and their own
    dependents, transitively) are skipped without being dispatched.

    Ready nodes come back as a set: there is no tie-break between nodes
    that become ready together.

    Example:
        >>> scheduler = DependencyScheduler({"Compile": [], "Linux": ["Compile"]})
        >>> scheduler.ready()
        {'Compile'}
        >>> scheduler.mark_running("Compile")
        >>> scheduler.complete("Compile", NodeStatus.FAILED)
        ['Linux']
    """

    def __init__(
        self,
        dependencies: dict[str, list[str]],
        policies: Optional[dict[str, DependencyPolicy]] = None,
        *,
        scope: str = "pipeline",
    ) -> None:
        """Initialize scheduler.

        Args:
            dependencies: Node name -> names it depends on
            policies: Node name -> dependency policy (default `succeeded`)
            scope: Description used in error messages

        Raises:
            ConfigurationError: On unknown dependencies or cycles
        """
        self.scope = scope
        self._dependencies = {name: list(deps) for name, deps in dependencies.items()}
        self._dependents, indegree = build_dag(self._dependencies, scope=scope)
        # Rejects cycles before anything runs
        topo_levels(self._dependents, indegree, scope=scope)

        self._policies = policies or {}
        self._status: dict[str, NodeStatus] = {
            name: NodeStatus.PENDING for name in self._dependencies
        }

    def policy(self, name: str) -> DependencyPolicy:
        return self._policies.get(name, DependencyPolicy.SUCCEEDED)

    def status(self, name: str) -> NodeStatus:
        return self._status[name]

    def _is_satisfied(self, name: str) -> bool:
        deps = [self._status[dep] for dep in self._dependencies[name]]
        if not all(status.is_terminal for status in deps):
            return False
        if self.policy(name) == DependencyPolicy.COMPLETED:
            return True
        return all(status == NodeStatus.SUCCEEDED for status in deps)

    def ready(self) -> set[str]:
        """Pending nodes whose dependencies are satisfied."""
        return {
            name
            for name, status in self._status.items()
            if status == NodeStatus.PENDING and self._is_satisfied(name)
        }

    def mark_running(self, name: str) -> None:
        """Record that a ready node was dispatched.

        Raises:
            StateTransitionError: If the node is not pending
        """
        if self._status[name] != NodeStatus.PENDING:
            raise StateTransitionError(
                f"Cannot dispatch '{name}' in {self.scope}: it is {self._status[name].value}"
            )
        self._status[name] = NodeStatus.RUNNING

    def complete(self, name: str, status: NodeStatus) -> list[str]:
        """Record a terminal status and propagate failure.

        Args:
            name: Node that finished
            status: Its terminal status

        Returns:
            Names of nodes newly skipped because of this completion, in
            propagation order

        Raises:
            StateTransitionError: If the status is not terminal or the node
                already finished
        """
        if not status.is_terminal:
            raise StateTransitionError(f"{status.value} is not a terminal status")
        if self._status[name].is_terminal:
            raise StateTransitionError(
                f"'{name}' in {self.scope} already finished as {self._status[name].value}"
            )
        self._status[name] = status

        if status == NodeStatus.SUCCEEDED:
            return []

        skipped: list[str] = []
        frontier = [name]
        while frontier:
            current = frontier.pop(0)
            for dependent in sorted(self._dependents.get(current, ())):
                if self._status[dependent] != NodeStatus.PENDING:
                    continue
                if self.policy(dependent) == DependencyPolicy.COMPLETED:
                    continue
                self._status[dependent] = NodeStatus.SKIPPED
                skipped.append(dependent)
                frontier.append(dependent)
        return skipped

    def finish_pending(self, status: NodeStatus) -> list[str]:
        """Move every pending node to `status` (used on cancel)."""
        names = [n for n, s in self._status.items() if s == NodeStatus.PENDING]
        for name in names:
            self._status[name] = status
        return names

    @property
    def is_finished(self) -> bool:
        return all(status.is_terminal for status in self._status.values())

    @property
    def running(self) -> set[str]:
        return {n for n, s in self._status.items() if s == NodeStatus.RUNNING}

    def get_statistics(self) -> SchedulerStats:
        """Get node counts by status."""
        values = list(self._status.values())
        return SchedulerStats(
            pending=values.count(NodeStatus.PENDING),
            running=values.count(NodeStatus.RUNNING),
            succeeded=values.count(NodeStatus.SUCCEEDED),
            failed=sum(1 for s in values if s.is_failure),
            skipped=values.count(NodeStatus.SKIPPED),
            total=len(values),
        )
