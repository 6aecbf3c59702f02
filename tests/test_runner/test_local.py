"""Unit tests for the local runner.

Runs real `sh` processes and checks exit codes, log streaming, working
directories, environment passing, timeouts and cancellation.
"""

import asyncio
import tempfile
import unittest
from pathlib import Path

from pipewright.core.exceptions import StepFailure, StepTimeout
from pipewright.core.models import EnvironmentSelector
from pipewright.runner.base import _run_subprocess
from pipewright.runner.local import LocalEnvironment, LocalRunner


class LocalRunnerTestCase(unittest.IsolatedAsyncioTestCase):
    """Base class acquiring a local environment in a temp workspace."""

    async def asyncSetUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.root = Path(self.temp_dir.name)
        self.log_path = self.root / "logs" / "step.log"
        self.runner = LocalRunner()
        self.environment = await self.runner.acquire(
            EnvironmentSelector.named_pool("default"), self.root / "work"
        )

    async def asyncTearDown(self):
        await self.environment.release()
        self.temp_dir.cleanup()

    async def run_script(self, script: str, **kwargs) -> int:
        return await self.environment.run(
            script, env=kwargs.pop("env", {}), log_path=self.log_path, **kwargs
        )


class TestLocalEnvironment(LocalRunnerTestCase):
    """Test script execution on the host."""

    async def test_acquire_creates_workspace(self):
        self.assertIsInstance(self.environment, LocalEnvironment)
        self.assertTrue((self.root / "work").is_dir())
        self.assertEqual(self.environment.description, "local (pool:default)")
        self.assertTrue(await self.runner.is_available())

    async def test_exit_code_and_output(self):
        code = await self.run_script("echo hello; echo oops >&2; exit 3")

        self.assertEqual(code, 3)
        output = self.log_path.read_text()
        self.assertIn("hello\n", output)
        self.assertIn("oops\n", output)

    async def test_log_is_appended(self):
        self.log_path.parent.mkdir(parents=True)
        self.log_path.write_text("##[section]Starting: build\n")

        await self.run_script("echo done")

        self.assertEqual(self.log_path.read_text(), "##[section]Starting: build\ndone\n")

    async def test_environment_variables(self):
        await self.run_script('echo "$VSCODE_ARCH"', env={"VSCODE_ARCH": "arm64"})

        self.assertEqual(self.log_path.read_text(), "arm64\n")

    async def test_working_directory(self):
        (self.root / "work" / "build").mkdir()

        await self.run_script("pwd")
        await self.run_script("pwd", cwd="build")

        lines = self.log_path.read_text().splitlines()
        self.assertEqual(Path(lines[0]).resolve(), (self.root / "work").resolve())
        self.assertEqual(Path(lines[1]).resolve(), (self.root / "work" / "build").resolve())

    async def test_timeout(self):
        with self.assertRaises(StepTimeout) as ctx:
            await self.run_script("sleep 10", timeout=0.2, grace_period=1.0)

        self.assertIn("timeout", str(ctx.exception))

    async def test_cancellation_stops_process(self):
        task = asyncio.create_task(self.run_script("sleep 10", grace_period=1.0))
        await asyncio.sleep(0.2)
        task.cancel()

        with self.assertRaises(asyncio.CancelledError):
            await asyncio.wait_for(task, timeout=5)


class TestSubprocess(unittest.IsolatedAsyncioTestCase):
    """Test the shared subprocess helper."""

    async def test_missing_executable(self):
        with tempfile.TemporaryDirectory() as tmp:
            with self.assertRaises(StepFailure) as ctx:
                await _run_subprocess(
                    ["/nonexistent/pipewright-tool"],
                    log_path=Path(tmp) / "step.log",
                    timeout=None,
                )

        self.assertIn("Failed to start", str(ctx.exception))


if __name__ == "__main__":
    unittest.main()
