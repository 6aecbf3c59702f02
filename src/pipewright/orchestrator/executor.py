"""Step execution for one job.

This module provides the StepExecutor class which runs a job's steps in
order on an acquired environment, enforcing per-step timeouts and the
job deadline, honouring continue-on-error and best-effort steps, and
recording every step transition through the run state tracker.
"""

import asyncio
import logging
import re
import time
from typing import Callable, Mapping, Optional

from pipewright.core.constants import BUILD_ID_VAR, ErrorCode, NodeStatus
from pipewright.core.exceptions import StepFailure, StepTimeout
from pipewright.core.models import JobDef, JobResult, StageDef, StepDef, StepResult
from pipewright.definition.expressions import format_value
from pipewright.definition.graph import job_id, job_step_ids
from pipewright.definition.snapshot import RunSnapshot
from pipewright.orchestrator.state import RunStateTracker
from pipewright.runner.base import Environment
from pipewright.storage.logs import LogStorage


logger = logging.getLogger(__name__)

MACRO_RE = re.compile(r"\$\(([A-Za-z_][A-Za-z0-9_.]*)\)")


def env_name(variable: str) -> str:
    """Environment variable name of a pipeline variable (Build.Reason -> BUILD_REASON)."""
    return variable.upper().replace(".", "_")


def expand_macros(text: str, variables: Mapping[str, str]) -> str:
    """Replace `$(Name)` macros with variable values.

    Unknown macros are left untouched since they may be shell command
    substitution.
    """
    def replace(match: re.Match) -> str:
        name = match.group(1)
        return variables[name] if name in variables else match.group(0)

    return MACRO_RE.sub(replace, text)


def job_variables(
    snapshot: RunSnapshot,
    stage: StageDef,
    job: JobDef,
    run_id: Optional[str] = None,
) -> dict[str, str]:
    """Variables visible to a job's steps; job overrides stage overrides run.

    `Build.BuildId` only exists at runtime, once the run has an ID.
    """
    variables = {name: format_value(value) for name, value in snapshot.variables.items()}
    if run_id is not None:
        variables[BUILD_ID_VAR] = run_id
    variables.update(stage.variables)
    variables.update(job.variables)
    return variables


def step_environment(variables: Mapping[str, str], step: StepDef) -> dict[str, str]:
    """Build the process environment of one step."""
    env = {env_name(name): expand_macros(value, variables) for name, value in variables.items()}
    env.update({key: expand_macros(value, variables) for key, value in step.env.items()})
    return env


class StepExecutor:
    """Run the steps of jobs for one run.

    Steps run strictly in order. The first failure aborts the job and the
    remaining steps end `skipped`, unless the failing step is
    continue-on-error. A best-effort step that times out is recorded as
    `timed_out` without aborting the job.
    """

    def __init__(
        self,
        tracker: RunStateTracker,
        storage: LogStorage,
        snapshot: RunSnapshot,
        *,
        grace_period: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize executor.

        Args:
            tracker: State tracker of the run
            storage: Run directory storage (step log paths)
            snapshot: Run snapshot (variables for macros and environment)
            grace_period: Seconds between terminate and kill on timeout/cancel
            clock: Monotonic clock (replaced in tests)
        """
        self.tracker = tracker
        self.storage = storage
        self.snapshot = snapshot
        self.grace_period = grace_period
        self._clock = clock

    async def run_job(
        self,
        stage: StageDef,
        job: JobDef,
        environment: Environment,
    ) -> JobResult:
        """Run every step of a job.

        The job node must already be `running`; its final status is left to
        the caller, based on the returned result.

        Raises:
            asyncio.CancelledError: The run was canceled; the running step
                and all remaining steps are marked `canceled` first
        """
        node = job_id(stage.name, job.name)
        variables = job_variables(self.snapshot, stage, job, self.tracker.run.id)
        deadline = None
        if job.timeout_minutes is not None:
            deadline = self._clock() + job.timeout_minutes * 60

        results: list[StepResult] = []
        issues = 0
        abort: Optional[JobResult] = None
        step_ids = job_step_ids(stage.name, job)

        for index, step in enumerate(job.steps):
            sid = step_ids[index]
            if abort is not None:
                await self.tracker.transition(
                    sid, NodeStatus.SKIPPED, error_message="An earlier step failed"
                )
                results.append(StepResult(status=NodeStatus.SKIPPED))
                continue

            remaining = None if deadline is None else deadline - self._clock()
            if remaining is not None and remaining <= 0:
                message = f"Job {node} exceeded its {job.timeout_minutes:g} minute timeout"
                abort = JobResult(
                    status=NodeStatus.TIMED_OUT,
                    error_code=ErrorCode.TIMEOUT.value,
                    error_message=message,
                )
                await self.tracker.transition(sid, NodeStatus.SKIPPED, error_message=message)
                results.append(StepResult(status=NodeStatus.SKIPPED))
                continue

            timeout = step.timeout_minutes * 60 if step.timeout_minutes is not None else None
            deadline_bound = remaining is not None and (timeout is None or remaining < timeout)
            if deadline_bound:
                timeout = remaining

            try:
                result = await self._run_step(sid, step, environment, variables, timeout)
            except asyncio.CancelledError:
                await self.tracker.finish_pending(
                    step_ids[index:],
                    NodeStatus.CANCELED,
                    error_code=ErrorCode.CANCELED.value,
                )
                raise
            results.append(result)

            if result.success:
                continue

            if result.status == NodeStatus.TIMED_OUT and deadline_bound:
                abort = JobResult(
                    status=NodeStatus.TIMED_OUT,
                    error_code=ErrorCode.TIMEOUT.value,
                    error_message=f"Job {node} exceeded its {job.timeout_minutes:g} minute timeout",
                )
            elif result.status == NodeStatus.TIMED_OUT and step.best_effort:
                issues += 1
                logger.warning(f"{sid} timed out (best effort, continuing)")
            elif result.status == NodeStatus.FAILED and step.continue_on_error:
                issues += 1
                logger.warning(f"{sid} failed (continue on error): {result.error_message}")
            else:
                abort = JobResult(
                    status=result.status,
                    error_code=result.error_code,
                    error_message=f"Step {step.name} failed: {result.error_message}",
                )

        if abort is not None:
            abort.steps = results
            abort.issues = issues
            return abort
        return JobResult(status=NodeStatus.SUCCEEDED, steps=results, issues=issues)

    async def _run_step(
        self,
        node_id: str,
        step: StepDef,
        environment: Environment,
        variables: Mapping[str, str],
        timeout: Optional[float],
    ) -> StepResult:
        """Run one step and record its terminal status."""
        log_path = self.storage.step_log_path(self.tracker.run.id, node_id)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        script = expand_macros(step.script, variables)
        cwd = expand_macros(step.working_directory, variables) if step.working_directory else None
        env = step_environment(variables, step)

        with log_path.open("a", encoding="utf-8") as f:
            f.write(f"##[section]Starting: {step.display_name or step.name}\n")

        await self.tracker.transition(node_id, NodeStatus.RUNNING, log_path=log_path)
        logger.info(f"Running {node_id}: {step.display_name or step.name}")
        started = self._clock()

        try:
            exit_code = await environment.run(
                script,
                env=env,
                log_path=log_path,
                cwd=cwd,
                timeout=timeout,
                grace_period=self.grace_period,
            )
        except asyncio.CancelledError:
            await asyncio.shield(self.tracker.transition(
                node_id,
                NodeStatus.CANCELED,
                error_code=ErrorCode.CANCELED.value,
                error_message="Run canceled",
            ))
            raise
        except StepTimeout as e:
            await self.tracker.transition(
                node_id,
                NodeStatus.TIMED_OUT,
                error_code=e.code,
                error_message=str(e),
            )
            return StepResult(
                status=NodeStatus.TIMED_OUT,
                duration=self._clock() - started,
                log_path=log_path,
                error_code=e.code,
                error_message=str(e),
            )
        except StepFailure as e:
            with log_path.open("a", encoding="utf-8") as f:
                f.write(f"##[error]{e}\n")
            await self.tracker.transition(
                node_id,
                NodeStatus.FAILED,
                exit_code=e.exit_code,
                error_code=e.code,
                error_message=str(e),
            )
            return StepResult(
                status=NodeStatus.FAILED,
                exit_code=e.exit_code,
                duration=self._clock() - started,
                log_path=log_path,
                error_code=e.code,
                error_message=str(e),
            )

        duration = self._clock() - started
        if exit_code != 0:
            message = f"Process exited with code {exit_code}"
            await self.tracker.transition(
                node_id,
                NodeStatus.FAILED,
                exit_code=exit_code,
                error_code=ErrorCode.STEP_FAILED.value,
                error_message=message,
            )
            return StepResult(
                status=NodeStatus.FAILED,
                exit_code=exit_code,
                duration=duration,
                log_path=log_path,
                error_code=ErrorCode.STEP_FAILED.value,
                error_message=message,
            )

        await self.tracker.transition(node_id, NodeStatus.SUCCEEDED, exit_code=0)
        return StepResult(
            status=NodeStatus.SUCCEEDED,
            exit_code=0,
            duration=duration,
            log_path=log_path,
        )
