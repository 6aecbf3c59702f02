"""Base runner interface for job environments.

This module defines the abstract Runner and Environment classes that all
execution backends must implement. A Runner acquires an Environment for a
job (a host shell, a started container); the Environment runs the job's
steps one at a time and is released when the job ends.
"""

import asyncio
import os
import signal
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from pipewright.core.constants import RunnerKind
from pipewright.core.exceptions import StepFailure, StepTimeout
from pipewright.core.models import EnvironmentSelector


class Environment(ABC):
    """An acquired place to run a job's steps.

    Attributes:
        description: Human-readable description for logs and audit
        workspace: Host directory shared by the job's steps
    """

    def __init__(self, description: str, workspace: Path) -> None:
        self.description = description
        self.workspace = workspace

    @abstractmethod
    def build_command(
        self,
        script: str,
        *,
        env: dict[str, str],
        cwd: Optional[str] = None,
    ) -> list[str]:
        """Build the argv that runs `script` in this environment.

        Args:
            script: Shell script text
            env: Step environment variables
            cwd: Working directory, relative to the workspace

        Returns:
            List of command arguments ready for execution
        """
        pass

    def process_env(self, env: dict[str, str]) -> Optional[dict[str, str]]:
        """Environment of the spawned host process (None inherits ours)."""
        return None

    def process_cwd(self, cwd: Optional[str]) -> Optional[Path]:
        """Working directory of the spawned host process."""
        return None

    async def run(
        self,
        script: str,
        *,
        env: dict[str, str],
        log_path: Path,
        cwd: Optional[str] = None,
        timeout: Optional[float] = None,
        grace_period: float = 10.0,
    ) -> int:
        """Run one script, streaming its output to `log_path`.

        Args:
            script: Shell script text
            env: Step environment variables
            log_path: File receiving interleaved stdout and stderr
            cwd: Working directory, relative to the workspace
            timeout: Timeout in seconds (None for no limit)
            grace_period: Seconds between terminate and kill

        Returns:
            Process exit code

        Raises:
            StepTimeout: Script exceeded the timeout
            StepFailure: Script could not be started
            asyncio.CancelledError: Run was canceled (process is stopped first)
        """
        cmd = self.build_command(script, env=env, cwd=cwd)
        return await _run_subprocess(
            cmd,
            log_path=log_path,
            timeout=timeout,
            env=self.process_env(env),
            cwd=self.process_cwd(cwd),
            grace_period=grace_period,
        )

    async def release(self) -> None:
        """Give the environment back (stop containers, clean up)."""
        pass


class Runner(ABC):
    """Abstract base class for environment providers.

    Runners are responsible for turning an EnvironmentSelector into a
    usable Environment. Acquisition failures raise EnvironmentUnavailable
    so the dispatcher can retry them.
    """

    kind: RunnerKind

    @abstractmethod
    async def is_available(self) -> bool:
        """Check if runner is available and functional.

        Returns:
            True if runner can provide environments, False otherwise
        """
        pass

    @abstractmethod
    async def acquire(
        self,
        selector: Optional[EnvironmentSelector],
        workspace: Path,
        *,
        image: Optional[str] = None,
    ) -> Environment:
        """Acquire an environment for one job.

        Args:
            selector: Job environment selector (None for the default pool)
            workspace: Host directory for the job's files
            image: Container image to use when the selector names none

        Returns:
            Ready Environment

        Raises:
            EnvironmentUnavailable: Environment could not be provided
        """
        pass


def _signal_group(process: asyncio.subprocess.Process, sig: signal.Signals) -> None:
    try:
        os.killpg(process.pid, sig)
    except (ProcessLookupError, PermissionError):
        pass


async def _stop_process(process: asyncio.subprocess.Process, grace_period: float) -> None:
    """Terminate a process group, killing it after the grace period."""
    if process.returncode is not None:
        return
    _signal_group(process, signal.SIGTERM)
    try:
        await asyncio.wait_for(process.wait(), timeout=grace_period)
    except asyncio.TimeoutError:
        _signal_group(process, signal.SIGKILL)
        await process.wait()


async def _pump_output(process: asyncio.subprocess.Process, log_path: Path) -> int:
    assert process.stdout is not None
    with log_path.open("ab") as log:
        while True:
            chunk = await process.stdout.read(4096)
            if not chunk:
                break
            log.write(chunk)
            log.flush()
    return await process.wait()


async def _run_subprocess(
    cmd: list[str],
    *,
    log_path: Path,
    timeout: Optional[float],
    env: Optional[dict[str, str]] = None,
    cwd: Optional[Path] = None,
    grace_period: float = 10.0,
) -> int:
    """Run a subprocess in its own process group and stream its output.

    Raises:
        StepTimeout: Process exceeded timeout
        StepFailure: Process could not be started
    """
    log_path.parent.mkdir(parents=True, exist_ok=True)

    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            stdin=asyncio.subprocess.DEVNULL,
            env=env,
            cwd=cwd,
            start_new_session=True,
        )
    except OSError as e:
        raise StepFailure(f"Failed to start {cmd[0]}: {e}") from e

    try:
        exit_code = await asyncio.wait_for(_pump_output(process, log_path), timeout=timeout)
    except asyncio.TimeoutError as e:
        await _stop_process(process, grace_period)
        raise StepTimeout(f"Step exceeded timeout of {timeout:.0f}s") from e
    except asyncio.CancelledError:
        await asyncio.shield(_stop_process(process, grace_period))
        raise

    return exit_code if exit_code is not None else -1
