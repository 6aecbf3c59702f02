"""Worker pool dispatcher.

This module provides bounded, strictly FIFO worker pools and the
PoolDispatcher that maps a job's environment selector to a pool and a
runner, holds a pool slot for the job, and acquires its environment with
bounded exponential backoff.
"""

import asyncio
import logging
from collections import deque
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from pipewright.core.audit import AuditLogger
from pipewright.core.config import Settings
from pipewright.core.constants import AuditEventType, EnvironmentKind, RunnerKind
from pipewright.core.exceptions import ConfigurationError, EnvironmentUnavailable
from pipewright.core.models import EnvironmentSelector
from pipewright.runner.base import Environment, Runner


logger = logging.getLogger(__name__)

HOSTED_POOL_PREFIX = "vm:"


class WorkerPool:
    """A counting slot pool with strict first-come first-served admission.

    Waiters are queued in arrival order and a released slot is handed
    directly to the oldest waiter, so admission order does not depend on
    event loop scheduling.
    """

    def __init__(self, name: str, max_concurrency: int) -> None:
        if max_concurrency < 1:
            raise ConfigurationError(f"Pool '{name}' needs max_concurrency >= 1")
        self.name = name
        self.max_concurrency = max_concurrency
        self._in_use = 0
        self._waiters: deque[asyncio.Future[None]] = deque()
        self.peak_in_use = 0

    @property
    def in_use(self) -> int:
        return self._in_use

    @property
    def queued(self) -> int:
        return sum(1 for waiter in self._waiters if not waiter.done())

    def _take(self) -> None:
        self._in_use += 1
        self.peak_in_use = max(self.peak_in_use, self._in_use)

    async def acquire(self) -> None:
        """Wait for a slot."""
        if self._in_use < self.max_concurrency and not self._waiters:
            self._take()
            return

        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # The slot was handed over just before we were cancelled
                self.release()
            else:
                try:
                    self._waiters.remove(waiter)
                except ValueError:
                    pass
            raise

    def release(self) -> None:
        """Return a slot, handing it to the oldest waiter if any."""
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                # Slot passes over without dropping the count
                waiter.set_result(None)
                return
        self._in_use -= 1

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        await self.acquire()
        try:
            yield
        finally:
            self.release()


class PoolDispatcher:
    """Admit jobs to pools and acquire their environments.

    Selector resolution:

    * named pool -> that pool, using the pool's runner
    * hosted VM image -> pool ``vm:<image>``, using the runner configured
      for that image
    * container -> the container's admission pool (or the default pool),
      using the docker runner
    """

    def __init__(
        self,
        settings: Settings,
        runners: dict[RunnerKind, Runner],
        *,
        audit: Optional[AuditLogger] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize dispatcher.

        Args:
            settings: Pool, hosted and retry configuration
            runners: Runner per kind
            audit: Audit logger for dispatch and acquisition events
            sleep: Backoff sleep function (replaced in tests)
        """
        self.settings = settings
        self.runners = runners
        self.audit = audit
        self._sleep = sleep
        self._pools: dict[str, WorkerPool] = {}

    def pool_key(self, selector: Optional[EnvironmentSelector]) -> str:
        """Name of the pool a selector is admitted on."""
        if selector is None:
            return self.settings.default_pool
        if selector.kind == EnvironmentKind.VM_IMAGE:
            return f"{HOSTED_POOL_PREFIX}{selector.image}"
        return selector.pool or self.settings.default_pool

    def get_pool(self, key: str) -> WorkerPool:
        """Get (creating on first use) the worker pool for a key.

        Raises:
            ConfigurationError: If a named pool is not configured
        """
        if key not in self._pools:
            if key.startswith(HOSTED_POOL_PREFIX):
                limit = self.settings.hosted.max_concurrency
            else:
                limit = self.settings.get_pool(key).max_concurrency
            self._pools[key] = WorkerPool(key, limit)
        return self._pools[key]

    @property
    def pools(self) -> dict[str, WorkerPool]:
        return dict(self._pools)

    def resolve_runner(
        self,
        selector: Optional[EnvironmentSelector],
    ) -> tuple[Runner, Optional[str]]:
        """Pick the runner (and default image) for a selector.

        Raises:
            ConfigurationError: If no runner of the required kind is registered
        """
        image: Optional[str] = None
        if selector is not None and selector.kind == EnvironmentKind.CONTAINER:
            kind = RunnerKind.DOCKER
        elif selector is not None and selector.kind == EnvironmentKind.VM_IMAGE:
            kind = self.settings.hosted.runner_for(selector.image or "")
        else:
            pool = self.settings.get_pool(self.pool_key(selector))
            kind = pool.runner
            image = pool.image

        runner = self.runners.get(kind)
        if runner is None:
            raise ConfigurationError(f"No {kind.value} runner available")
        return runner, image

    async def _acquire_environment(
        self,
        node_id: str,
        selector: Optional[EnvironmentSelector],
        workspace: Path,
        on_attempt: Optional[Callable[[int], None]],
    ) -> Environment:
        runner, image = self.resolve_runner(selector)
        policy = self.settings.environment_retry

        for attempt in range(1, policy.attempts + 1):
            if on_attempt is not None:
                on_attempt(attempt)
            try:
                environment = await runner.acquire(selector, workspace, image=image)
            except EnvironmentUnavailable as e:
                self._audit(AuditEventType.ENVIRONMENT_ACQUIRE, {
                    "node": node_id,
                    "attempt": attempt,
                    "success": False,
                    "error": str(e),
                })
                if attempt >= policy.attempts:
                    raise EnvironmentUnavailable(
                        f"Could not acquire {self._describe(selector)} for {node_id} "
                        f"after {attempt} attempt(s): {e}"
                    ) from e
                delay = policy.delay(attempt)
                logger.warning(
                    f"Environment for {node_id} unavailable (attempt {attempt}/"
                    f"{policy.attempts}), retrying in {delay:.1f}s: {e}"
                )
                await self._sleep(delay)
                continue

            self._audit(AuditEventType.ENVIRONMENT_ACQUIRE, {
                "node": node_id,
                "attempt": attempt,
                "success": True,
                "environment": environment.description,
            })
            return environment

        raise EnvironmentUnavailable(f"No acquisition attempts configured for {node_id}")

    @asynccontextmanager
    async def dispatch(
        self,
        node_id: str,
        selector: Optional[EnvironmentSelector],
        workspace: Path,
        *,
        on_attempt: Optional[Callable[[int], None]] = None,
    ) -> AsyncIterator[Environment]:
        """Hold a pool slot and a ready environment for one job.

        The slot is taken first (FIFO per pool) and kept while the
        environment is acquired, including backoff between retries.

        Raises:
            EnvironmentUnavailable: All acquisition attempts failed
        """
        key = self.pool_key(selector)
        pool = self.get_pool(key)
        logger.debug(f"{node_id} queued on pool {key} ({pool.in_use}/{pool.max_concurrency} busy)")

        async with pool.slot():
            environment = await self._acquire_environment(
                node_id, selector, workspace, on_attempt
            )
            self._audit(AuditEventType.DISPATCH, {
                "node": node_id,
                "pool": key,
                "environment": environment.description,
            })
            try:
                yield environment
            finally:
                try:
                    await asyncio.shield(environment.release())
                except Exception as e:
                    logger.warning(f"Failed to release environment for {node_id}: {e}")

    def _describe(self, selector: Optional[EnvironmentSelector]) -> str:
        return selector.describe() if selector else f"pool:{self.settings.default_pool}"

    def _audit(self, event_type: AuditEventType, details: dict) -> None:
        if self.audit is not None:
            self.audit.log_event(event_type, details)
