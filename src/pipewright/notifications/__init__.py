from pipewright.notifications.webhook import (
    WebhookManager,
    WebhookConfig,
    WebhookEvent,
    EventType,
    create_webhook_manager,
)
from pipewright.notifications.providers.base import WebhookProvider
from pipewright.notifications.providers.generic import GenericProvider
from pipewright.notifications.providers.slack import SlackProvider

__all__ = [
    "WebhookManager",
    "WebhookConfig",
    "WebhookEvent",
    "EventType",
    "create_webhook_manager",
    "WebhookProvider",
    "GenericProvider",
    "SlackProvider",
]
