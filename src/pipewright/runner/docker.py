"""Docker-based job execution runner.

This module provides a Runner implementation that runs job steps inside a
long-lived container: the image is pulled, one container is started per
job with the workspace mounted, each step runs through `docker exec`, and
the container is removed when the job releases it.
"""

import asyncio
import shlex
from pathlib import Path
from typing import Optional
from uuid import uuid4

from pipewright.core.constants import EnvironmentKind, RunnerKind
from pipewright.core.exceptions import DockerNotAvailableError, EnvironmentUnavailable
from pipewright.core.models import EnvironmentSelector
from pipewright.runner.base import Environment, Runner


CONTAINER_WORKSPACE = "/workspace"


async def _docker(*args: str) -> tuple[int, str]:
    """Run a docker CLI command and return (exit code, combined output)."""
    try:
        process = await asyncio.create_subprocess_exec(
            "docker",
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
    except FileNotFoundError as e:
        raise DockerNotAvailableError("Docker is not installed") from e
    output, _ = await process.communicate()
    return process.returncode or 0, output.decode("utf-8", errors="replace").strip()


class DockerEnvironment(Environment):
    """A running container; steps run via `docker exec`."""

    def __init__(
        self,
        description: str,
        workspace: Path,
        container_id: str,
        image: str,
        base_env: tuple[tuple[str, str], ...] = (),
    ) -> None:
        super().__init__(description, workspace)
        self.container_id = container_id
        self.image = image
        self.base_env = base_env

    def build_command(
        self,
        script: str,
        *,
        env: dict[str, str],
        cwd: Optional[str] = None,
    ) -> list[str]:
        """Build `docker exec` command with environment and working directory."""
        workdir = CONTAINER_WORKSPACE
        if cwd:
            workdir = cwd if cwd.startswith("/") else f"{CONTAINER_WORKSPACE}/{cwd}"

        cmd = ["docker", "exec", "-w", workdir]
        for key, value in env.items():
            cmd.extend(["-e", f"{key}={value}"])
        cmd.extend([self.container_id, "sh", "-c", script])
        return cmd

    async def release(self) -> None:
        """Remove the container."""
        await _docker("rm", "-f", self.container_id)


class DockerRunner(Runner):
    """Provide container environments through the docker CLI.

    Serves `container:` selections and pools configured with
    `runner: docker` (using the pool's image).
    """

    kind = RunnerKind.DOCKER

    def __init__(self) -> None:
        self._docker_available: Optional[bool] = None
        self._pulled: set[str] = set()
        self._pull_lock = asyncio.Lock()

    async def is_available(self) -> bool:
        """Check if Docker is installed and accessible."""
        if self._docker_available is not None:
            return self._docker_available

        try:
            code, _ = await _docker("--version")
            self._docker_available = code == 0
        except DockerNotAvailableError:
            self._docker_available = False
        return self._docker_available

    async def pull_image(self, image: str) -> None:
        """Pull an image once per runner.

        Raises:
            EnvironmentUnavailable: The pull failed
        """
        async with self._pull_lock:
            if image in self._pulled:
                return
            code, output = await _docker("pull", image)
            if code != 0:
                raise EnvironmentUnavailable(f"Failed to pull image {image}: {output}")
            self._pulled.add(image)

    def build_run_command(
        self,
        image: str,
        workspace: Path,
        name: str,
        *,
        options: str = "",
        env: tuple[tuple[str, str], ...] = (),
    ) -> list[str]:
        """Build the `docker run` command that starts the job container."""
        cmd = [
            "docker",
            "run",
            "-d",
            "--rm",
            "--name", name,
            "-v", f"{workspace.resolve()}:{CONTAINER_WORKSPACE}",
            "-w", CONTAINER_WORKSPACE,
        ]
        for key, value in env:
            cmd.extend(["-e", f"{key}={value}"])
        cmd.extend(shlex.split(options))
        cmd.extend([image, "sleep", "infinity"])
        return cmd

    async def acquire(
        self,
        selector: Optional[EnvironmentSelector],
        workspace: Path,
        *,
        image: Optional[str] = None,
    ) -> Environment:
        """Pull the image and start a container for the job.

        Raises:
            EnvironmentUnavailable: Docker missing, pull or start failed
        """
        if not await self.is_available():
            raise DockerNotAvailableError(
                "Docker is not available. Install Docker or use a local pool."
            )

        options = ""
        env: tuple[tuple[str, str], ...] = ()
        if selector is not None and selector.kind == EnvironmentKind.CONTAINER:
            image = selector.image
            options = selector.options
            env = selector.env
        if not image:
            raise EnvironmentUnavailable("No container image configured for docker runner")

        try:
            workspace.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise EnvironmentUnavailable(f"Failed to create workspace {workspace}: {e}") from e

        await self.pull_image(image)

        name = f"pipewright-{uuid4().hex[:12]}"
        cmd = self.build_run_command(image, workspace, name, options=options, env=env)
        code, output = await _docker(*cmd[1:])
        if code != 0:
            raise EnvironmentUnavailable(f"Failed to start container from {image}: {output}")

        container_id = output.splitlines()[-1] if output else name
        return DockerEnvironment(
            description=f"docker ({image})",
            workspace=workspace,
            container_id=container_id,
            image=image,
            base_env=env,
        )
