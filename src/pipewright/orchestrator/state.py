"""Run state tracking.

This module provides the RunStateTracker class which owns the per-run
table of node records. Every status change goes through `transition`,
which enforces monotonic legal transitions under a per-run lock, persists
the record and writes it to the run's audit log.
"""

import asyncio
import logging
from collections import Counter
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional

from pipewright.core.audit import AuditLogger
from pipewright.core.constants import (
    ALLOWED_TRANSITIONS,
    AuditEventType,
    ErrorCode,
    NodeKind,
    NodeStatus,
    RunOutcome,
)
from pipewright.core.exceptions import StateTransitionError
from pipewright.core.models import NodeRecord, RunMetadata
from pipewright.definition.graph import RunPlan
from pipewright.storage.database import Database


logger = logging.getLogger(__name__)


class RunStateTracker:
    """Authoritative state of one run.

    Example:
        >>> tracker = RunStateTracker(run, plan, db=db, audit=audit)
        >>> await tracker.start_run()
        >>> await tracker.transition("Compile", NodeStatus.RUNNING)
        >>> await tracker.transition("Compile", NodeStatus.SUCCEEDED)
        >>> await tracker.complete_run()
        <RunOutcome.SUCCEEDED: 'succeeded'>
    """

    def __init__(
        self,
        run: RunMetadata,
        plan: RunPlan,
        *,
        db: Optional[Database] = None,
        audit: Optional[AuditLogger] = None,
    ) -> None:
        """Initialize tracker with one pending record per planned node.

        Args:
            run: Run metadata (updated in place)
            plan: Active subgraph of the run
            db: Database for persistence (None keeps state in memory only)
            audit: Audit logger for transitions
        """
        self.run = run
        self.plan = plan
        self.db = db
        self.audit = audit
        self._lock = asyncio.Lock()
        self._canceled = False
        self._records: dict[str, NodeRecord] = {}

        for node in plan.iter_nodes():
            self._records[node.node_id] = NodeRecord(
                node_id=node.node_id,
                run_id=run.id,
                kind=node.kind,
                name=node.name,
                parent_id=node.parent_id,
                required=node.required,
            )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, node_id: str) -> NodeRecord:
        try:
            return self._records[node_id]
        except KeyError:
            raise StateTransitionError(f"Run {self.run.id} has no node '{node_id}'") from None

    def status(self, node_id: str) -> NodeStatus:
        return self.get(node_id).status

    @property
    def records(self) -> list[NodeRecord]:
        return list(self._records.values())

    def children(self, node_id: str) -> list[NodeRecord]:
        return [r for r in self._records.values() if r.parent_id == node_id]

    def descendants(self, node_id: str) -> list[NodeRecord]:
        """Child records, then their children, in plan order."""
        found: list[NodeRecord] = []
        for child in self.children(node_id):
            found.append(child)
            found.extend(self.descendants(child.node_id))
        return found

    @property
    def is_canceled(self) -> bool:
        return self._canceled

    def counts(self, kind: Optional[NodeKind] = None) -> dict[NodeStatus, int]:
        """Node counts by status, optionally for one node kind."""
        counter = Counter(
            r.status for r in self._records.values() if kind is None or r.kind == kind
        )
        return dict(counter)

    def compute_outcome(self) -> RunOutcome:
        """Outcome from the current stage statuses.

        Failed if any required stage failed or timed out; otherwise canceled
        if the run was canceled; otherwise succeeded.
        """
        for record in self._records.values():
            if record.kind == NodeKind.STAGE and record.required and record.status.is_failure:
                return RunOutcome.FAILED
        if self._canceled:
            return RunOutcome.CANCELED
        return RunOutcome.SUCCEEDED

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _persist(self, records: Iterable[NodeRecord]) -> None:
        if self.db is not None:
            self.db.save_nodes(records)

    async def transition(
        self,
        node_id: str,
        status: NodeStatus,
        *,
        exit_code: Optional[int] = None,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
        log_path: Optional[Path] = None,
        issues: Optional[int] = None,
    ) -> NodeRecord:
        """Move a node to a new status.

        Args:
            node_id: Node to update
            status: New status
            exit_code: Process exit code (steps)
            error_code: Error code for failed/timed out/canceled nodes
            error_message: Human readable failure description
            log_path: Step log file
            issues: Continue-on-error failures (jobs)

        Returns:
            The updated record

        Raises:
            StateTransitionError: If the transition is not allowed
        """
        async with self._lock:
            record = self.get(node_id)
            old = record.status
            if status not in ALLOWED_TRANSITIONS.get(old, frozenset()):
                raise StateTransitionError(
                    f"Illegal transition for {node_id}: {old.value} -> {status.value}"
                )

            now = datetime.now()
            record.status = status
            if status == NodeStatus.RUNNING:
                record.started_at = now
            if status.is_terminal:
                record.completed_at = now
            if exit_code is not None:
                record.exit_code = exit_code
            if error_code is not None:
                record.error_code = error_code
            if error_message is not None:
                record.error_message = error_message
            if log_path is not None:
                record.log_path = log_path
            if issues is not None:
                record.issues = issues

            self._persist([record])
            if self.audit is not None:
                details = {"error_code": error_code} if error_code else {}
                if exit_code is not None:
                    details["exit_code"] = exit_code
                self.audit.log_transition(node_id, old, status, **details)

        logger.debug(f"{node_id}: {old.value} -> {status.value}")
        return record

    async def finish_pending(
        self,
        node_ids: Iterable[str],
        status: NodeStatus,
        *,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> list[str]:
        """Move the given nodes that are still pending to `status`.

        Returns:
            IDs of the nodes that changed
        """
        changed = []
        for node_id in node_ids:
            if self.status(node_id) != NodeStatus.PENDING:
                continue
            await self.transition(
                node_id, status, error_code=error_code, error_message=error_message
            )
            changed.append(node_id)
        return changed

    async def skip_subtree(self, node_id: str, reason: str) -> None:
        """Skip a pending stage or job along with all of its pending children."""
        ids = [node_id] + [r.node_id for r in self.descendants(node_id)]
        await self.finish_pending(
            ids,
            NodeStatus.SKIPPED,
            error_code=ErrorCode.DEPENDENCY_FAILED.value,
            error_message=reason,
        )

    def record_attempt(self, node_id: str, attempt: int) -> None:
        """Record the environment acquisition attempt count of a job."""
        record = self.get(node_id)
        record.attempts = attempt
        self._persist([record])

    async def carry_over(self, previous: NodeRecord) -> NodeRecord:
        """Reuse a node that succeeded in the run being retried.

        Raises:
            StateTransitionError: If the node is no longer pending
        """
        async with self._lock:
            record = self.get(previous.node_id)
            if record.status != NodeStatus.PENDING:
                raise StateTransitionError(
                    f"Cannot reuse {record.node_id}: it is {record.status.value}"
                )
            record.status = NodeStatus.SUCCEEDED
            record.reused = True
            record.started_at = previous.started_at
            record.completed_at = previous.completed_at
            record.exit_code = previous.exit_code
            record.log_path = previous.log_path
            record.attempts = previous.attempts
            record.issues = previous.issues

            self._persist([record])
            if self.audit is not None:
                self.audit.log_transition(
                    record.node_id,
                    NodeStatus.PENDING,
                    NodeStatus.SUCCEEDED,
                    reused_from=self.run.retry_of,
                )
        return record

    # ------------------------------------------------------------------
    # Run lifecycle
    # ------------------------------------------------------------------

    def _save_run(self) -> None:
        if self.db is not None:
            self.db.save_run(self.run)

    async def initialize(self) -> None:
        """Persist the run and its pending node records."""
        async with self._lock:
            self._save_run()
            self._persist(self._records.values())

    async def start_run(self) -> None:
        """Mark the run as running."""
        async with self._lock:
            self.run.outcome = RunOutcome.RUNNING
            self.run.started_at = datetime.now()
            self._save_run()
            if self.audit is not None:
                self.audit.log_event(AuditEventType.RUN_START, {
                    "pipeline": self.run.pipeline,
                    "trigger": self.run.trigger.to_dict(),
                    "retry_of": self.run.retry_of,
                    "nodes": len(self._records),
                    "excluded": list(self.plan.excluded),
                })
        logger.info(f"Run {self.run.id} started ({self.plan.pipeline})")

    async def cancel_run(self, reason: str = "Canceled by user") -> bool:
        """Mark the run as canceled. Further dispatch stops.

        Returns:
            False if the run was already canceled
        """
        async with self._lock:
            if self._canceled:
                return False
            self._canceled = True
            self.run.canceled = True
            self._save_run()
            if self.audit is not None:
                self.audit.log_event(AuditEventType.CANCEL_REQUESTED, {"reason": reason})
        logger.warning(f"Run {self.run.id} canceled: {reason}")
        return True

    async def complete_run(self) -> RunOutcome:
        """Compute and record the final outcome."""
        async with self._lock:
            outcome = self.compute_outcome()
            self.run.outcome = outcome
            self.run.completed_at = datetime.now()
            self._save_run()
            if self.audit is not None:
                self.audit.log_event(AuditEventType.RUN_FINISH, {
                    "outcome": outcome.value,
                    "duration": self.run.duration,
                    "counts": {s.value: n for s, n in self.counts().items()},
                })
        logger.info(f"Run {self.run.id} finished: {outcome.value}")
        return outcome
