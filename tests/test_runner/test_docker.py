"""Unit tests for the docker runner.

The docker CLI is replaced with a mock; tests check the commands built
for starting containers and running steps, image pulling and the
acquisition failure paths.
"""

import tempfile
import unittest
from pathlib import Path
from unittest.mock import AsyncMock, patch

from pipewright.core.exceptions import DockerNotAvailableError, EnvironmentUnavailable
from pipewright.core.models import ContainerResource, EnvironmentSelector
from pipewright.runner.docker import DockerEnvironment, DockerRunner


class TestDockerEnvironment(unittest.TestCase):
    """Test docker exec command building."""

    def setUp(self):
        self.environment = DockerEnvironment(
            description="docker (node:18)",
            workspace=Path("/tmp/work"),
            container_id="abc123",
            image="node:18",
        )

    def test_build_command(self):
        cmd = self.environment.build_command("yarn test", env={"CI": "true"})

        self.assertEqual(cmd, [
            "docker", "exec", "-w", "/workspace", "-e", "CI=true",
            "abc123", "sh", "-c", "yarn test",
        ])

    def test_build_command_working_directory(self):
        relative = self.environment.build_command("make", env={}, cwd="build")
        absolute = self.environment.build_command("make", env={}, cwd="/opt/src")

        self.assertEqual(relative[3], "/workspace/build")
        self.assertEqual(absolute[3], "/opt/src")


class TestDockerRunner(unittest.IsolatedAsyncioTestCase):
    """Test container acquisition with a mocked docker CLI."""

    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.workspace = Path(self.temp_dir.name) / "work"
        self.runner = DockerRunner()
        self.selector = EnvironmentSelector.container(ContainerResource(
            name="snapcraft",
            image="snapcore/snapcraft:stable",
            options="--privileged",
            env=(("SNAPCRAFT_BUILD_ENVIRONMENT", "host"),),
        ))

    def tearDown(self):
        self.temp_dir.cleanup()

    def test_build_run_command(self):
        cmd = self.runner.build_run_command(
            "alpine:3.19",
            Path("/tmp/work"),
            "pipewright-1",
            options="--cpus 2",
            env=(("A", "1"),),
        )

        self.assertEqual(cmd[:6], ["docker", "run", "-d", "--rm", "--name", "pipewright-1"])
        self.assertIn(f"{Path('/tmp/work').resolve()}:/workspace", cmd)
        self.assertIn("A=1", cmd)
        self.assertEqual(cmd[-5:], ["--cpus", "2", "alpine:3.19", "sleep", "infinity"])

    async def test_acquire_container_selector(self):
        docker = AsyncMock(side_effect=[(0, "Docker 24"), (0, "pulled"), (0, "c0ffee")])

        with patch("pipewright.runner.docker._docker", docker):
            environment = await self.runner.acquire(self.selector, self.workspace)

        self.assertEqual(environment.container_id, "c0ffee")
        self.assertEqual(environment.image, "snapcore/snapcraft:stable")
        self.assertTrue(self.workspace.is_dir())
        docker.assert_any_await("pull", "snapcore/snapcraft:stable")
        run_args = docker.await_args_list[2].args
        self.assertIn("--privileged", run_args)
        self.assertIn("SNAPCRAFT_BUILD_ENVIRONMENT=host", run_args)

    async def test_pool_image_used_without_container(self):
        docker = AsyncMock(side_effect=[(0, "Docker 24"), (0, "pulled"), (0, "beef")])

        with patch("pipewright.runner.docker._docker", docker):
            environment = await self.runner.acquire(
                EnvironmentSelector.named_pool("containers"), self.workspace, image="ubuntu:22.04"
            )

        self.assertEqual(environment.image, "ubuntu:22.04")

    async def test_image_pulled_once(self):
        docker = AsyncMock(return_value=(0, ""))

        with patch("pipewright.runner.docker._docker", docker):
            await self.runner.pull_image("node:18")
            await self.runner.pull_image("node:18")

        self.assertEqual(docker.await_count, 1)

    async def test_pull_failure(self):
        docker = AsyncMock(side_effect=[(0, "Docker 24"), (1, "manifest unknown")])

        with patch("pipewright.runner.docker._docker", docker):
            with self.assertRaises(EnvironmentUnavailable) as ctx:
                await self.runner.acquire(self.selector, self.workspace)

        self.assertIn("manifest unknown", str(ctx.exception))

    async def test_start_failure(self):
        docker = AsyncMock(side_effect=[(0, "Docker 24"), (0, ""), (125, "no space left")])

        with patch("pipewright.runner.docker._docker", docker):
            with self.assertRaises(EnvironmentUnavailable):
                await self.runner.acquire(self.selector, self.workspace)

    async def test_no_image(self):
        docker = AsyncMock(return_value=(0, "Docker 24"))

        with patch("pipewright.runner.docker._docker", docker):
            with self.assertRaises(EnvironmentUnavailable):
                await self.runner.acquire(None, self.workspace)

    async def test_docker_missing(self):
        docker = AsyncMock(side_effect=DockerNotAvailableError("Docker is not installed"))

        with patch("pipewright.runner.docker._docker", docker):
            self.assertFalse(await self.runner.is_available())
            with self.assertRaises(DockerNotAvailableError):
                await self.runner.acquire(self.selector, self.workspace)

    async def test_release_removes_container(self):
        environment = DockerEnvironment("docker", self.workspace, "abc123", "node:18")
        docker = AsyncMock(return_value=(0, ""))

        with patch("pipewright.runner.docker._docker", docker):
            await environment.release()

        docker.assert_awaited_once_with("rm", "-f", "abc123")


if __name__ == "__main__":
    unittest.main()
