from pipewright.notifications.providers.base import WebhookProvider
from pipewright.notifications.providers.generic import GenericProvider
from pipewright.notifications.providers.slack import SlackProvider

PROVIDERS: dict[str, type[WebhookProvider]] = {
    SlackProvider.name: SlackProvider,
    GenericProvider.name: GenericProvider,
}

__all__ = [
    "PROVIDERS",
    "WebhookProvider",
    "GenericProvider",
    "SlackProvider",
]
