"""Pipeline orchestrator.

This module provides the PipelineOrchestrator class that drives a planned
run: stages are scheduled by their dependencies, the jobs of each running
stage are scheduled by theirs, ready jobs are admitted to worker pools and
their steps executed, and every completion unblocks or skips dependents.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Optional
from uuid import uuid4

from pipewright.core.audit import AuditLogger
from pipewright.core.config import Settings
from pipewright.core.constants import ErrorCode, NodeKind, NodeStatus, RunnerKind, RunOutcome
from pipewright.core.exceptions import ConfigurationError, EnvironmentUnavailable, StorageError
from pipewright.core.models import JobDef, NodeRecord, RunMetadata, StageDef
from pipewright.definition.graph import RunPlan, job_id, job_step_ids, stage_id
from pipewright.definition.loader import PreparedRun, prepare_run
from pipewright.notifications.webhook import WebhookManager
from pipewright.orchestrator.approvals import ApprovalGate
from pipewright.orchestrator.dispatcher import PoolDispatcher
from pipewright.orchestrator.executor import StepExecutor
from pipewright.orchestrator.scheduler import DependencyScheduler
from pipewright.orchestrator.state import RunStateTracker
from pipewright.runner.base import Runner
from pipewright.runner.docker import DockerRunner
from pipewright.runner.local import LocalRunner
from pipewright.storage.database import Database
from pipewright.storage.logs import LogStorage


logger = logging.getLogger(__name__)


def default_runners() -> dict[RunnerKind, Runner]:
    return {
        RunnerKind.LOCAL: LocalRunner(),
        RunnerKind.DOCKER: DockerRunner(),
    }


async def _stop_tasks(tasks: dict[asyncio.Task, str]) -> None:
    """Cancel tasks and wait until every one has finished."""
    for task in tasks:
        task.cancel()
    if tasks:
        await asyncio.gather(*tasks, return_exceptions=True)


def stage_status(statuses: list[NodeStatus]) -> NodeStatus:
    """Terminal status of a stage from the terminal statuses of its jobs."""
    if any(status.is_failure for status in statuses):
        return NodeStatus.FAILED
    if NodeStatus.CANCELED in statuses:
        return NodeStatus.CANCELED
    return NodeStatus.SUCCEEDED


@dataclass
class _RunContext:
    run: RunMetadata
    plan: RunPlan
    tracker: RunStateTracker
    dispatcher: PoolDispatcher
    executor: StepExecutor
    approvals: ApprovalGate
    audit: AuditLogger
    reuse: dict[str, NodeRecord] = field(default_factory=dict)


class PipelineOrchestrator:
    """Runs planned pipelines.

    Example:
        >>> orchestrator = PipelineOrchestrator(settings, db=db)
        >>> prepared = prepare_run("product-build.yml", Trigger(branch="main"), settings)
        >>> run = await orchestrator.run(prepared)
        >>> run.outcome
        <RunOutcome.SUCCEEDED: 'succeeded'>
    """

    def __init__(
        self,
        settings: Settings,
        *,
        db: Optional[Database] = None,
        storage: Optional[LogStorage] = None,
        runners: Optional[dict[RunnerKind, Runner]] = None,
        webhooks: Optional[WebhookManager] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize orchestrator.

        Args:
            settings: Pools, retry, timeouts and data directory
            db: Database for run persistence (None keeps runs in memory)
            storage: Run directory storage (default under settings.runs_dir)
            runners: Runner per kind (default local and docker)
            webhooks: Webhook manager for run and stage events
            sleep: Backoff sleep used by the dispatcher (replaced in tests)
        """
        self.settings = settings
        self.db = db
        self.storage = storage or LogStorage(settings.runs_dir)
        self.runners = runners if runners is not None else default_runners()
        self.webhooks = webhooks
        self._sleep = sleep
        self._cancel_event = asyncio.Event()
        self._cancel_reason = "Canceled by user"
        self._running = False
        self.tracker: Optional[RunStateTracker] = None
        self.approvals: Optional[ApprovalGate] = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def request_cancel(self, reason: str = "Canceled by user") -> None:
        """Ask the running run to cancel. Safe to call from a signal handler."""
        self._cancel_reason = reason
        self._cancel_event.set()

    async def run(
        self,
        prepared: PreparedRun,
        *,
        retry_of: Optional[str] = None,
        reuse: Optional[dict[str, NodeRecord]] = None,
    ) -> RunMetadata:
        """Create and execute a run.

        Args:
            prepared: Loaded, resolved and planned pipeline
            retry_of: ID of the run being retried
            reuse: Node records of that run that succeeded, by node ID

        Returns:
            The finished run's metadata
        """
        if self._running:
            raise RuntimeError("Orchestrator is already running a run")
        self._running = True
        self._cancel_event.clear()

        try:
            context = self._create_run(prepared, retry_of=retry_of, reuse=reuse or {})
            try:
                await self._execute(context)
            finally:
                context.audit.close()
            return context.run
        finally:
            self._running = False

    async def retry(self, run_id: str) -> RunMetadata:
        """Re-run a previous run; nodes that succeeded there are reused.

        Raises:
            StorageError: If the run does not exist
            ConfigurationError: If its definition can no longer be loaded
        """
        if self.db is None:
            raise StorageError("Retry needs a run database")
        previous = self.db.get_run(run_id)
        if previous is None:
            raise StorageError(f"Run not found: {run_id}")
        if previous.definition_path is None:
            raise ConfigurationError(f"Run {run_id} has no definition path to retry from")

        prepared = prepare_run(previous.definition_path, previous.trigger, self.settings)
        reuse = {
            record.node_id: record
            for record in self.db.get_nodes(previous.id)
            if record.status == NodeStatus.SUCCEEDED
        }
        logger.info(f"Retrying run {previous.id}: {len(reuse)} succeeded node(s) can be reused")
        return await self.run(prepared, retry_of=previous.id, reuse=reuse)

    # ------------------------------------------------------------------
    # Run setup
    # ------------------------------------------------------------------

    def _create_run(
        self,
        prepared: PreparedRun,
        *,
        retry_of: Optional[str],
        reuse: dict[str, NodeRecord],
    ) -> _RunContext:
        run_id = str(uuid4())
        run_dir, logs_dir, audit_dir = self.storage.init_run_directories(run_id)
        definition_path = prepared.document.path

        run = RunMetadata(
            id=run_id,
            pipeline=prepared.plan.pipeline,
            trigger=prepared.snapshot.trigger,
            outcome=RunOutcome.PENDING,
            created_at=datetime.now(),
            definition_path=definition_path.resolve() if definition_path else None,
            retry_of=retry_of,
            plan=prepared.plan.to_dict(),
            variables=dict(prepared.snapshot.variables),
            run_dir=run_dir,
            logs_dir=logs_dir,
            audit_dir=audit_dir,
        )
        audit = AuditLogger(run_id, audit_dir)
        tracker = RunStateTracker(run, prepared.plan, db=self.db, audit=audit)
        dispatcher = PoolDispatcher(self.settings, self.runners, audit=audit, sleep=self._sleep)
        executor = StepExecutor(
            tracker,
            self.storage,
            prepared.snapshot,
            grace_period=self.settings.cancel_grace_period,
        )
        self.tracker = tracker
        approvals = ApprovalGate(
            run_id,
            db=self.db,
            audit=audit,
            poll_interval=self.settings.approval_poll_interval,
        )
        self.approvals = approvals
        return _RunContext(
            run=run,
            plan=prepared.plan,
            tracker=tracker,
            dispatcher=dispatcher,
            executor=executor,
            approvals=approvals,
            audit=audit,
            reuse=reuse,
        )

    # ------------------------------------------------------------------
    # Control loop
    # ------------------------------------------------------------------

    async def _execute(self, ctx: _RunContext) -> RunOutcome:
        tracker = ctx.tracker
        await tracker.initialize()
        await tracker.start_run()
        if self.webhooks is not None:
            await self.webhooks.emit(self.webhooks.create_run_started_event(ctx.run))

        stages = DependencyScheduler(
            {stage.name: stage.depends_on for stage in ctx.plan.stages},
            {stage.name: stage.dependency_policy for stage in ctx.plan.stages},
            scope="stages",
        )
        running: dict[asyncio.Task, str] = {}
        cancel_wait = asyncio.create_task(self._cancel_event.wait())

        try:
            while not stages.is_finished:
                if not tracker.is_canceled:
                    for name in sorted(stages.ready()):
                        stages.mark_running(name)
                        task = asyncio.create_task(
                            self._run_stage(ctx, ctx.plan.get_stage(name)),
                            name=f"stage:{name}",
                        )
                        running[task] = name

                if not running:
                    break

                waiting = set(running)
                if not cancel_wait.done():
                    waiting.add(cancel_wait)
                done, _ = await asyncio.wait(waiting, return_when=asyncio.FIRST_COMPLETED)

                if self._cancel_event.is_set() and not tracker.is_canceled:
                    await tracker.cancel_run(self._cancel_reason)
                    for name in stages.finish_pending(NodeStatus.CANCELED):
                        await self._cancel_subtree(ctx, stage_id(name))

                for task in done:
                    if task is cancel_wait:
                        continue
                    name = running.pop(task)
                    status = await self._stage_finished(ctx, name, task)
                    for skipped in stages.complete(name, status):
                        await tracker.skip_subtree(
                            stage_id(skipped),
                            f"Dependency '{name}' ended {status.value}",
                        )
        except asyncio.CancelledError:
            # run() itself was canceled by its caller
            await _stop_tasks(running)
            await tracker.cancel_run("Run task canceled")
            await self._cancel_unfinished(ctx)
            await tracker.complete_run()
            raise
        finally:
            cancel_wait.cancel()
            await _stop_tasks(running)

        outcome = await tracker.complete_run()
        if self.webhooks is not None:
            counts = {s.value: n for s, n in tracker.counts(NodeKind.JOB).items()}
            await self.webhooks.emit(self.webhooks.create_run_finished_event(ctx.run, counts))
        return outcome

    async def _stage_finished(self, ctx: _RunContext, name: str, task: asyncio.Task) -> NodeStatus:
        try:
            return task.result()
        except Exception as e:
            logger.exception(f"Stage {name} crashed: {e}")
            node = stage_id(name)
            await self._fail_job(ctx, node, ErrorCode.INTERNAL.value, str(e))
            return NodeStatus.FAILED

    async def _cancel_unfinished(self, ctx: _RunContext) -> None:
        for record in ctx.tracker.records:
            if not record.is_terminal:
                await ctx.tracker.transition(
                    record.node_id,
                    NodeStatus.CANCELED,
                    error_code=ErrorCode.CANCELED.value,
                    error_message="Run canceled",
                )

    async def _cancel_subtree(self, ctx: _RunContext, node_id: str) -> None:
        ids = [node_id] + [r.node_id for r in ctx.tracker.descendants(node_id)]
        await ctx.tracker.finish_pending(ids, NodeStatus.CANCELED, error_code=ErrorCode.CANCELED.value)

    def _reusable(self, ctx: _RunContext, stage: StageDef, job: JobDef) -> bool:
        node = job_id(stage.name, job.name)
        if node not in ctx.reuse:
            return False
        return all(node_id in ctx.reuse for node_id in job_step_ids(stage.name, job))

    async def _reuse_job(self, ctx: _RunContext, stage: StageDef, job: JobDef) -> None:
        for node_id in job_step_ids(stage.name, job):
            await ctx.tracker.carry_over(ctx.reuse[node_id])
        await ctx.tracker.carry_over(ctx.reuse[job_id(stage.name, job.name)])
        logger.info(f"Reused {job_id(stage.name, job.name)} from run {ctx.run.retry_of}")

    async def _run_stage(self, ctx: _RunContext, stage: StageDef) -> NodeStatus:
        """Run the jobs of one stage; returns the stage's terminal status."""
        tracker = ctx.tracker
        node = stage_id(stage.name)

        if node in ctx.reuse and all(self._reusable(ctx, stage, job) for job in stage.jobs):
            for job in stage.jobs:
                await self._reuse_job(ctx, stage, job)
            await tracker.carry_over(ctx.reuse[node])
            return NodeStatus.SUCCEEDED

        await tracker.transition(node, NodeStatus.RUNNING)
        logger.info(f"Stage {stage.name} started ({len(stage.jobs)} job(s))")

        jobs = DependencyScheduler(
            {job.name: job.depends_on for job in stage.jobs},
            {job.name: job.dependency_policy for job in stage.jobs},
            scope=f"stage '{stage.name}'",
        )
        running: dict[asyncio.Task, str] = {}
        statuses: dict[str, NodeStatus] = {}
        cancel_wait = asyncio.create_task(self._cancel_event.wait())

        try:
            while not jobs.is_finished:
                progressed = True
                while progressed and not self._cancel_event.is_set():
                    progressed = False
                    for name in sorted(jobs.ready()):
                        job = stage.get_job(name)
                        jobs.mark_running(name)
                        if self._reusable(ctx, stage, job):
                            await self._reuse_job(ctx, stage, job)
                            jobs.complete(name, NodeStatus.SUCCEEDED)
                            statuses[name] = NodeStatus.SUCCEEDED
                            progressed = True
                            continue
                        task = asyncio.create_task(
                            self._run_job(ctx, stage, job),
                            name=f"job:{stage.name}/{name}",
                        )
                        running[task] = name

                if self._cancel_event.is_set():
                    for name in jobs.finish_pending(NodeStatus.CANCELED):
                        statuses[name] = NodeStatus.CANCELED
                        await self._cancel_subtree(ctx, job_id(stage.name, name))
                    for task in running:
                        task.cancel()

                if not running:
                    break

                waiting = set(running)
                if not cancel_wait.done():
                    waiting.add(cancel_wait)
                done, _ = await asyncio.wait(waiting, return_when=asyncio.FIRST_COMPLETED)

                for task in done:
                    if task is cancel_wait:
                        continue
                    name = running.pop(task)
                    status = await self._job_finished(ctx, stage, name, task)
                    statuses[name] = status
                    for skipped in jobs.complete(name, status):
                        statuses[skipped] = NodeStatus.SKIPPED
                        await tracker.skip_subtree(
                            job_id(stage.name, skipped),
                            f"Dependency '{name}' ended {status.value}",
                        )
        finally:
            cancel_wait.cancel()
            # Jobs are still in flight only if this stage task was canceled or crashed
            if running:
                await _stop_tasks(running)
                for task, name in running.items():
                    statuses[name] = await self._job_finished(ctx, stage, name, task)

        status = stage_status(list(statuses.values()))
        record = await tracker.transition(node, status)
        logger.info(f"Stage {stage.name} {status.value}")
        if self.webhooks is not None:
            await self.webhooks.emit(self.webhooks.create_stage_event(ctx.run, record))
        return status

    async def _job_finished(
        self,
        ctx: _RunContext,
        stage: StageDef,
        name: str,
        task: asyncio.Task,
    ) -> NodeStatus:
        """Terminal status of a finished job task, recording cancellation."""
        if not task.cancelled():
            return task.result()

        node = job_id(stage.name, name)
        for record in [ctx.tracker.get(node)] + ctx.tracker.descendants(node):
            if not record.is_terminal:
                await ctx.tracker.transition(
                    record.node_id,
                    NodeStatus.CANCELED,
                    error_code=ErrorCode.CANCELED.value,
                    error_message="Run canceled",
                )
        return NodeStatus.CANCELED

    async def _run_job(self, ctx: _RunContext, stage: StageDef, job: JobDef) -> NodeStatus:
        """Admit, run and record one job; returns its terminal status."""
        tracker = ctx.tracker
        node = job_id(stage.name, job.name)
        if job.approval:
            return await self._run_approval(ctx, node, job)
        workspace = self.storage.workspace_dir(ctx.run.id, node)

        try:
            async with ctx.dispatcher.dispatch(
                node,
                job.environment,
                workspace,
                on_attempt=lambda attempt: tracker.record_attempt(node, attempt),
            ) as environment:
                await tracker.transition(node, NodeStatus.RUNNING)
                logger.info(f"Job {node} started on {environment.description}")
                result = await ctx.executor.run_job(stage, job, environment)
        except EnvironmentUnavailable as e:
            logger.error(f"Job {node} failed: {e}")
            await self._fail_job(ctx, node, ErrorCode.ENVIRONMENT_UNAVAILABLE.value, str(e))
            return NodeStatus.FAILED
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"Job {node} failed unexpectedly: {e}")
            await self._fail_job(ctx, node, ErrorCode.INTERNAL.value, str(e))
            return NodeStatus.FAILED

        await tracker.transition(
            node,
            result.status,
            error_code=result.error_code,
            error_message=result.error_message,
            issues=result.issues,
        )
        suffix = f" with {result.issues} issue(s)" if result.issues else ""
        logger.info(f"Job {node} {result.status.value}{suffix}")
        return result.status

    async def _run_approval(self, ctx: _RunContext, node: str, job: JobDef) -> NodeStatus:
        """Hold an approval job until it is decided or times out."""
        tracker = ctx.tracker
        await tracker.transition(node, NodeStatus.RUNNING)
        hint = f": {job.instructions}" if job.instructions else ""
        logger.info(f"Job {node} waiting for approval{hint}")

        try:
            approval = await ctx.approvals.wait(node, job.timeout_minutes)
        except StorageError as e:
            logger.error(f"Job {node} failed: {e}")
            await self._fail_job(ctx, node, ErrorCode.INTERNAL.value, str(e))
            return NodeStatus.FAILED

        if approval is None:
            status = NodeStatus.TIMED_OUT
            await tracker.transition(
                node,
                status,
                error_code=ErrorCode.TIMEOUT.value,
                error_message=f"No decision within {job.timeout_minutes:g} minute(s)",
            )
        elif approval.approved:
            status = NodeStatus.SUCCEEDED
            await tracker.transition(node, status)
        else:
            status = NodeStatus.FAILED
            reason = f": {approval.comment}" if approval.comment else ""
            await tracker.transition(
                node,
                status,
                error_code=ErrorCode.APPROVAL_REJECTED.value,
                error_message=f"Rejected by {approval.approver}{reason}",
            )
        logger.info(f"Job {node} {status.value}")
        return status

    async def _fail_job(self, ctx: _RunContext, node: str, code: str, message: str) -> None:
        tracker = ctx.tracker
        for record in tracker.descendants(node):
            if record.status == NodeStatus.PENDING:
                await tracker.transition(record.node_id, NodeStatus.SKIPPED)
            elif record.status == NodeStatus.RUNNING:
                await tracker.transition(
                    record.node_id, NodeStatus.FAILED, error_code=code, error_message=message
                )
        if not tracker.get(node).is_terminal:
            await tracker.transition(node, NodeStatus.FAILED, error_code=code, error_message=message)
