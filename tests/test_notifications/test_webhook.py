"""Unit tests for webhook notifications.

Covers:
- Event factories for run and stage events
- Settings parsing and manager construction
- Queue delivery with filtering, retry and rate limiting
- Provider payloads and HTTP delivery through httpx
"""

import asyncio
import json
import unittest
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, patch

import httpx

from pipewright.core.config import NotificationSettings
from pipewright.core.constants import NodeKind, NodeStatus, RunOutcome
from pipewright.core.exceptions import ConfigurationError, NotificationError
from pipewright.core.models import NodeRecord, RunMetadata, Trigger
from pipewright.notifications import (
    EventType,
    GenericProvider,
    SlackProvider,
    WebhookConfig,
    WebhookEvent,
    WebhookManager,
    create_webhook_manager,
)
from pipewright.notifications.providers.slack import _format_duration


def make_run(outcome: RunOutcome = RunOutcome.SUCCEEDED) -> RunMetadata:
    return RunMetadata(
        id="3fa85f64-5717-4562-b3fc-2c963f66afa6",
        pipeline="product-build",
        trigger=Trigger(branch="release/1.90", requested_for="alice"),
        outcome=outcome,
        created_at=datetime(2024, 3, 1, 12, 0),
        started_at=datetime(2024, 3, 1, 12, 0),
        completed_at=datetime(2024, 3, 1, 12, 5, 30),
    )


def make_event(event_type: EventType = EventType.RUN_STARTED) -> WebhookEvent:
    return WebhookEvent(
        event_type=event_type,
        timestamp=datetime(2024, 3, 1, 12, 0),
        run_id="3fa85f64-5717",
        pipeline="product-build",
        data={"branch": "main", "reason": "Manual"},
    )


class TestEventFactories(unittest.TestCase):
    """Test building events from runs and node records."""

    def setUp(self):
        self.manager = WebhookManager(WebhookConfig(enabled=True))

    def test_run_started(self):
        event = self.manager.create_run_started_event(make_run(RunOutcome.RUNNING))

        self.assertEqual(event.event_type, EventType.RUN_STARTED)
        self.assertEqual(event.data["branch"], "release/1.90")
        self.assertEqual(event.data["requested_for"], "alice")
        self.assertEqual(event.data["reason"], "Manual")

    def test_run_finished_event_types(self):
        cases = [
            (RunOutcome.SUCCEEDED, EventType.RUN_COMPLETED),
            (RunOutcome.FAILED, EventType.RUN_FAILED),
            (RunOutcome.CANCELED, EventType.RUN_CANCELED),
        ]
        for outcome, expected in cases:
            with self.subTest(outcome=outcome):
                event = self.manager.create_run_finished_event(make_run(outcome), {"succeeded": 3})
                self.assertEqual(event.event_type, expected)
                self.assertEqual(event.data["duration"], 330)
                self.assertEqual(event.data["counts"], {"succeeded": 3})

    def test_stage_event(self):
        record = NodeRecord(
            node_id="Linux",
            run_id="run-1",
            kind=NodeKind.STAGE,
            name="Linux",
            status=NodeStatus.TIMED_OUT,
            error_message="Job Linux/Build exceeded its 60 minute timeout",
        )

        event = self.manager.create_stage_event(make_run(), record)

        self.assertEqual(event.event_type, EventType.STAGE_FAILED)
        self.assertEqual(event.data["stage"], "Linux")
        self.assertEqual(event.data["status"], "timed_out")

    def test_to_dict_is_json(self):
        data = json.loads(json.dumps(make_event().to_dict()))

        self.assertEqual(data["event_type"], "run_started")
        self.assertEqual(data["timestamp"], "2024-03-01T12:00:00")


class TestConfiguration(unittest.TestCase):
    """Test notification settings handling."""

    def test_from_settings(self):
        config = WebhookConfig.from_settings(NotificationSettings(
            enabled=True,
            events=("run_failed", "stage_failed"),
            providers={"slack": {"url": "https://hooks.slack.test/x"}},
        ))

        self.assertEqual(config.events, [EventType.RUN_FAILED, EventType.STAGE_FAILED])
        self.assertEqual(config.providers, ["slack"])

    def test_unknown_event(self):
        with self.assertRaises(ConfigurationError):
            WebhookConfig.from_settings(NotificationSettings(enabled=True, events=("build_done",)))

    def test_create_manager(self):
        manager = create_webhook_manager(NotificationSettings(
            enabled=True,
            providers={
                "slack": {"url": "https://hooks.slack.test/x", "channel": "#builds"},
                "generic": {"url": "https://ci.test/hook", "headers": {"X-Token": "t"}},
            },
        ))

        slack = manager.get_provider("slack")
        self.assertIsInstance(slack, SlackProvider)
        self.assertEqual(slack.channel, "#builds")
        self.assertEqual(manager.get_provider("generic").headers()["X-Token"], "t")

    def test_disabled_returns_none(self):
        self.assertIsNone(create_webhook_manager(NotificationSettings()))

    def test_unknown_provider(self):
        with self.assertRaises(ConfigurationError):
            create_webhook_manager(NotificationSettings(
                enabled=True, providers={"teams": {"url": "https://x.test"}}
            ))


class TestDelivery(unittest.IsolatedAsyncioTestCase):
    """Test queued delivery to providers."""

    def make_manager(self, **kwargs) -> tuple[WebhookManager, AsyncMock]:
        config = WebhookConfig(enabled=True, providers=["generic"], **kwargs)
        manager = WebhookManager(config)
        provider = GenericProvider("https://ci.test/hook")
        provider.send = AsyncMock()
        manager.register_provider("generic", provider)
        return manager, provider.send

    async def test_emit_and_drain(self):
        manager, send = self.make_manager()
        await manager.start()

        await manager.emit(make_event())
        await manager.stop()

        send.assert_awaited_once()
        self.assertEqual(manager.delivered, 1)

    async def test_filtered_events_not_queued(self):
        manager, send = self.make_manager(events=[EventType.RUN_FAILED])

        await manager.emit(make_event(EventType.RUN_STARTED))

        self.assertTrue(manager._queue.empty())

    async def test_disabled_manager_ignores_events(self):
        manager = WebhookManager(WebhookConfig(enabled=False, providers=["generic"]))
        manager.register_provider("generic", GenericProvider("https://ci.test/hook"))

        await manager.emit(make_event())

        self.assertTrue(manager._queue.empty())

    async def test_full_queue_drops(self):
        manager, _ = self.make_manager(queue_size=1)

        await manager.emit(make_event())
        await manager.emit(make_event())

        self.assertEqual(manager.dropped, 1)

    async def test_failed_delivery_is_retried(self):
        manager, send = self.make_manager(retry_delay_base=0.0)
        send.side_effect = [NotificationError("502"), None]
        await manager.start()

        await manager.emit(make_event())
        await asyncio.wait_for(manager._queue.join(), timeout=5)
        await manager.stop()

        self.assertEqual(send.await_count, 2)
        self.assertEqual(manager.delivered, 1)

    async def test_delivery_gives_up(self):
        manager, send = self.make_manager(retry_delay_base=0.0, max_retries=2)
        send.side_effect = NotificationError("502")
        await manager.start()

        await manager.emit(make_event())
        await asyncio.wait_for(manager._queue.join(), timeout=5)
        await manager.stop()

        self.assertEqual(send.await_count, 2)
        self.assertEqual(manager.dropped, 1)

    def test_rate_limit(self):
        manager, _ = self.make_manager(rate_limit_per_minute=2)
        now = datetime.now()
        manager._rate_limiter["generic"] = [now - timedelta(minutes=2), now, now]

        self.assertFalse(manager._check_rate_limit("generic"))
        self.assertEqual(len(manager._rate_limiter["generic"]), 2)


class TestProviders(unittest.IsolatedAsyncioTestCase):
    """Test provider payloads and HTTP delivery."""

    def test_slack_payload(self):
        provider = SlackProvider("https://hooks.slack.test/x", channel="#builds")
        event = make_event(EventType.RUN_FAILED)
        event.data = {"duration": 330.0, "counts": {"succeeded": 4, "failed": 1}}

        payload = provider.format_message(event)

        self.assertEqual(payload["channel"], "#builds")
        attachment = payload["attachments"][0]
        self.assertEqual(attachment["color"], "#dc3545")
        self.assertEqual(attachment["blocks"][0]["text"]["text"], ":x: Run Failed")
        details = [f["text"] for f in attachment["blocks"][2]["fields"]]
        self.assertEqual(details, ["*Duration:*\n5m 30s", "*Jobs:*\nsucceeded: 4, failed: 1"])

    def test_format_duration(self):
        self.assertEqual(_format_duration(59.9), "0m 59s")
        self.assertEqual(_format_duration(3725), "62m 5s")

    async def send_with(self, provider, handler):
        real_client = httpx.AsyncClient

        def client_factory(**kwargs):
            return real_client(transport=httpx.MockTransport(handler), **kwargs)

        with patch("pipewright.notifications.providers.base.httpx.AsyncClient", client_factory):
            await provider.send(make_event())

    async def test_generic_send(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(204)

        provider = GenericProvider("https://ci.test/hook", headers={"X-Token": "secret"})
        await self.send_with(provider, handler)

        self.assertEqual(len(requests), 1)
        self.assertEqual(requests[0].headers["X-Token"], "secret")
        self.assertEqual(json.loads(requests[0].content)["pipeline"], "product-build")

    async def test_send_error_status(self):
        provider = GenericProvider("https://ci.test/hook")

        with self.assertRaises(NotificationError):
            await self.send_with(provider, lambda request: httpx.Response(500))


if __name__ == "__main__":
    unittest.main()
