from __future__ import annotations

from typing import Any, TYPE_CHECKING

from pipewright.notifications.providers.base import WebhookProvider

if TYPE_CHECKING:
    from pipewright.notifications.webhook import WebhookEvent


class GenericProvider(WebhookProvider):
    """POST the event as plain JSON, with optional extra headers."""

    name = "generic"

    def __init__(
        self,
        webhook_url: str,
        *,
        headers: dict[str, str] | None = None,
        **kwargs,
    ) -> None:
        super().__init__(webhook_url, **kwargs)
        self.extra_headers = dict(headers or {})

    def headers(self) -> dict[str, str]:
        return {**super().headers(), **self.extra_headers}

    def format_message(self, event: WebhookEvent) -> dict[str, Any]:
        return event.to_dict()
