"""Local job execution runner.

This module provides a Runner implementation that runs job steps directly
on the host with `sh -c`. It serves named pools configured with
`runner: local` and hosted VM images mapped to the local runner.
"""

import os
import shutil
from pathlib import Path
from typing import Optional

from pipewright.core.constants import RunnerKind
from pipewright.core.exceptions import EnvironmentUnavailable
from pipewright.core.models import EnvironmentSelector
from pipewright.runner.base import Environment, Runner


SHELL = "sh"


class LocalEnvironment(Environment):
    """Host shell rooted at the job workspace."""

    def build_command(
        self,
        script: str,
        *,
        env: dict[str, str],
        cwd: Optional[str] = None,
    ) -> list[str]:
        return [SHELL, "-c", script]

    def process_env(self, env: dict[str, str]) -> Optional[dict[str, str]]:
        return {**os.environ, **env}

    def process_cwd(self, cwd: Optional[str]) -> Optional[Path]:
        if cwd is None:
            return self.workspace
        path = Path(cwd)
        return path if path.is_absolute() else self.workspace / path


class LocalRunner(Runner):
    """Run steps directly on the local system.

    Provides direct execution without isolation; every job gets its own
    workspace directory.
    """

    kind = RunnerKind.LOCAL

    async def is_available(self) -> bool:
        """Check that a POSIX shell is on PATH."""
        return shutil.which(SHELL) is not None

    async def acquire(
        self,
        selector: Optional[EnvironmentSelector],
        workspace: Path,
        *,
        image: Optional[str] = None,
    ) -> Environment:
        """Create the workspace and hand out a host shell environment.

        Raises:
            EnvironmentUnavailable: The workspace cannot be created or no
                shell is available
        """
        if not await self.is_available():
            raise EnvironmentUnavailable(f"No '{SHELL}' found on PATH for the local runner")

        try:
            workspace.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise EnvironmentUnavailable(f"Failed to create workspace {workspace}: {e}") from e

        description = selector.describe() if selector else "local"
        return LocalEnvironment(description=f"local ({description})", workspace=workspace)
