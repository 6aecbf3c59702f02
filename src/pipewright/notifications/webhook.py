from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional, TYPE_CHECKING

from pipewright.core.config import NotificationSettings
from pipewright.core.constants import RunOutcome
from pipewright.core.exceptions import ConfigurationError
from pipewright.core.models import NodeRecord, RunMetadata

if TYPE_CHECKING:
    from pipewright.notifications.providers.base import WebhookProvider


logger = logging.getLogger(__name__)


class EventType(str, Enum):
    RUN_STARTED = "run_started"
    RUN_COMPLETED = "run_completed"
    RUN_FAILED = "run_failed"
    RUN_CANCELED = "run_canceled"
    STAGE_COMPLETED = "stage_completed"
    STAGE_FAILED = "stage_failed"


_FINISH_EVENTS = {
    RunOutcome.SUCCEEDED: EventType.RUN_COMPLETED,
    RunOutcome.FAILED: EventType.RUN_FAILED,
    RunOutcome.CANCELED: EventType.RUN_CANCELED,
}


@dataclass
class WebhookEvent:
    event_type: EventType
    timestamp: datetime
    run_id: str
    pipeline: str
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_type": self.event_type.value,
            "timestamp": self.timestamp.isoformat(),
            "run_id": self.run_id,
            "pipeline": self.pipeline,
            "data": self.data,
        }


@dataclass
class WebhookConfig:
    enabled: bool = False
    providers: list[str] = field(default_factory=list)
    events: list[EventType] = field(default_factory=lambda: list(EventType))
    rate_limit_per_minute: int = 30
    max_retries: int = 3
    retry_delay_base: float = 1.0
    queue_size: int = 100

    @classmethod
    def from_settings(cls, settings: NotificationSettings) -> "WebhookConfig":
        """Build from the `notifications` settings section.

        Raises:
            ConfigurationError: On an unknown event name
        """
        events = list(EventType)
        if settings.events:
            try:
                events = [EventType(name) for name in settings.events]
            except ValueError as e:
                allowed = ", ".join(t.value for t in EventType)
                raise ConfigurationError(
                    f"Unknown notification event ({e}). Allowed: {allowed}"
                ) from e
        return cls(
            enabled=settings.enabled,
            providers=list(settings.providers),
            events=events,
        )


@dataclass
class QueuedEvent:
    event: WebhookEvent
    provider_name: str
    attempt: int = 0
    next_retry: Optional[datetime] = None


class WebhookManager:
    """Queue-backed delivery of run events to webhook providers.

    Delivery runs in a background task with per-provider rate limiting and
    bounded retry. Failures are logged and never reach the caller.
    """

    def __init__(self, config: WebhookConfig) -> None:
        self.config = config
        self._providers: dict[str, WebhookProvider] = {}
        self._queue: asyncio.Queue[QueuedEvent] = asyncio.Queue(maxsize=config.queue_size)
        self._running = False
        self._worker_task: Optional[asyncio.Task] = None
        self._rate_limiter: dict[str, list[datetime]] = {}
        self.delivered = 0
        self.dropped = 0

    def register_provider(self, name: str, provider: WebhookProvider) -> None:
        self._providers[name] = provider
        self._rate_limiter[name] = []

    def unregister_provider(self, name: str) -> None:
        self._providers.pop(name, None)
        self._rate_limiter.pop(name, None)

    def get_provider(self, name: str) -> Optional[WebhookProvider]:
        return self._providers.get(name)

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._worker_task = asyncio.create_task(self._process_queue())
        logger.debug("Webhook manager started")

    async def stop(self, drain_timeout: float = 10.0) -> None:
        """Deliver what is queued (up to `drain_timeout` seconds), then stop."""
        if self._running and not self._queue.empty():
            try:
                await asyncio.wait_for(self._queue.join(), timeout=drain_timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    f"Dropping {self._queue.qsize()} undelivered webhook event(s)"
                )
        self._running = False
        if self._worker_task:
            self._worker_task.cancel()
            try:
                await self._worker_task
            except asyncio.CancelledError:
                pass
            self._worker_task = None
        logger.debug("Webhook manager stopped")

    async def emit(self, event: WebhookEvent) -> None:
        if not self.config.enabled:
            return

        if event.event_type not in self.config.events:
            return

        for provider_name in self.config.providers:
            if provider_name not in self._providers:
                continue

            queued = QueuedEvent(event=event, provider_name=provider_name)
            try:
                self._queue.put_nowait(queued)
            except asyncio.QueueFull:
                self.dropped += 1
                logger.warning(f"Webhook queue full, dropping event: {event.event_type.value}")

    async def _process_queue(self) -> None:
        while self._running:
            try:
                queued = await asyncio.wait_for(self._queue.get(), timeout=1.0)
            except asyncio.TimeoutError:
                continue

            try:
                await self._deliver(queued)
            finally:
                self._queue.task_done()

    async def _deliver(self, queued: QueuedEvent) -> None:
        if queued.next_retry and datetime.now() < queued.next_retry:
            await self._queue.put(queued)
            await asyncio.sleep(0.1)
            return

        provider = self._providers.get(queued.provider_name)
        if not provider:
            return

        if not self._check_rate_limit(queued.provider_name):
            queued.next_retry = datetime.now() + timedelta(seconds=1)
            await self._queue.put(queued)
            return

        try:
            await provider.send(queued.event)
            self._record_request(queued.provider_name)
            self.delivered += 1
            logger.debug(f"Sent {queued.event.event_type.value} to {queued.provider_name}")
        except Exception as e:
            queued.attempt += 1
            if queued.attempt < self.config.max_retries:
                delay = self.config.retry_delay_base * (2 ** (queued.attempt - 1))
                queued.next_retry = datetime.now() + timedelta(seconds=delay)
                await self._queue.put(queued)
                logger.warning(
                    f"Webhook to {queued.provider_name} failed (attempt {queued.attempt}), "
                    f"retrying in {delay}s: {e}"
                )
            else:
                self.dropped += 1
                logger.error(
                    f"Webhook to {queued.provider_name} failed after "
                    f"{self.config.max_retries} attempts: {e}"
                )

    def _check_rate_limit(self, provider_name: str) -> bool:
        window_start = datetime.now() - timedelta(minutes=1)
        requests = [r for r in self._rate_limiter.get(provider_name, []) if r > window_start]
        self._rate_limiter[provider_name] = requests
        return len(requests) < self.config.rate_limit_per_minute

    def _record_request(self, provider_name: str) -> None:
        self._rate_limiter.setdefault(provider_name, []).append(datetime.now())

    # ------------------------------------------------------------------
    # Event factories
    # ------------------------------------------------------------------

    def create_run_started_event(self, run: RunMetadata) -> WebhookEvent:
        return WebhookEvent(
            event_type=EventType.RUN_STARTED,
            timestamp=datetime.now(),
            run_id=run.id,
            pipeline=run.pipeline,
            data={
                "reason": run.trigger.reason.value,
                "branch": run.trigger.branch,
                "requested_for": run.trigger.requested_for,
                "retry_of": run.retry_of,
            },
        )

    def create_run_finished_event(
        self,
        run: RunMetadata,
        counts: dict[str, int],
    ) -> WebhookEvent:
        return WebhookEvent(
            event_type=_FINISH_EVENTS.get(run.outcome, EventType.RUN_FAILED),
            timestamp=datetime.now(),
            run_id=run.id,
            pipeline=run.pipeline,
            data={
                "outcome": run.outcome.value,
                "duration": run.duration or 0.0,
                "branch": run.trigger.branch,
                "counts": counts,
            },
        )

    def create_stage_event(self, run: RunMetadata, stage: NodeRecord) -> WebhookEvent:
        failed = stage.status.is_failure
        return WebhookEvent(
            event_type=EventType.STAGE_FAILED if failed else EventType.STAGE_COMPLETED,
            timestamp=datetime.now(),
            run_id=run.id,
            pipeline=run.pipeline,
            data={
                "stage": stage.name,
                "status": stage.status.value,
                "duration": stage.duration or 0.0,
                "error": stage.error_message,
            },
        )


def create_webhook_manager(settings: NotificationSettings) -> Optional[WebhookManager]:
    """Build a manager with the configured providers, or None when disabled.

    Raises:
        ConfigurationError: On an unknown provider or event name
    """
    if not settings.enabled:
        return None

    from pipewright.notifications.providers import PROVIDERS

    manager = WebhookManager(WebhookConfig.from_settings(settings))
    for name, options in settings.providers.items():
        provider_class = PROVIDERS.get(name)
        if provider_class is None:
            raise ConfigurationError(
                f"Unknown notification provider '{name}'. "
                f"Available: {', '.join(sorted(PROVIDERS))}"
            )
        options = dict(options)
        url = options.pop("url")
        manager.register_provider(name, provider_class(url, **options))
    return manager
