from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, TYPE_CHECKING

import httpx

from pipewright.core.exceptions import NotificationError

if TYPE_CHECKING:
    from pipewright.notifications.webhook import WebhookEvent


class WebhookProvider(ABC):
    name: str = "base"
    timeout: float = 30.0

    def __init__(self, webhook_url: str, **kwargs) -> None:
        self.webhook_url = webhook_url
        self.options = kwargs

    async def send(self, event: WebhookEvent) -> None:
        """POST the formatted event.

        Raises:
            NotificationError: On transport errors and non-2xx responses
        """
        payload = self.format_message(event)
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    self.webhook_url,
                    json=payload,
                    headers=self.headers(),
                )
                response.raise_for_status()
        except httpx.HTTPError as e:
            raise NotificationError(f"{self.name} webhook failed: {e}") from e

    def headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json"}

    @abstractmethod
    def format_message(self, event: WebhookEvent) -> dict[str, Any]:
        pass

    def get_status_color(self, event_type: str) -> str:
        colors = {
            "run_started": "#17a2b8",
            "run_completed": "#28a745",
            "run_failed": "#dc3545",
            "run_canceled": "#ffc107",
            "stage_completed": "#28a745",
            "stage_failed": "#dc3545",
        }
        return colors.get(event_type, "#6c757d")

    def get_event_emoji(self, event_type: str) -> str:
        emojis = {
            "run_started": ":rocket:",
            "run_completed": ":white_check_mark:",
            "run_failed": ":x:",
            "run_canceled": ":no_entry_sign:",
            "stage_completed": ":checkered_flag:",
            "stage_failed": ":rotating_light:",
        }
        return emojis.get(event_type, ":bell:")
