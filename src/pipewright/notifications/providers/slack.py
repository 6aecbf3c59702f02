from __future__ import annotations

from typing import Any, TYPE_CHECKING

from pipewright.notifications.providers.base import WebhookProvider

if TYPE_CHECKING:
    from pipewright.notifications.webhook import WebhookEvent


def _format_duration(seconds: float) -> str:
    mins = int(seconds // 60)
    secs = int(seconds % 60)
    return f"{mins}m {secs}s"


def _field(label: str, value: Any) -> dict[str, str]:
    return {"type": "mrkdwn", "text": f"*{label}:*\n{value}"}


_TITLES = {
    "run_started": "Run Started",
    "run_completed": "Run Succeeded",
    "run_failed": "Run Failed",
    "run_canceled": "Run Canceled",
    "stage_completed": "Stage Completed",
    "stage_failed": "Stage Failed",
}


class SlackProvider(WebhookProvider):
    name = "slack"

    def __init__(
        self,
        webhook_url: str,
        *,
        channel: str = "",
        username: str = "pipewright",
        icon_emoji: str = ":building_construction:",
        **kwargs,
    ) -> None:
        super().__init__(webhook_url, **kwargs)
        self.channel = channel
        self.username = username
        self.icon_emoji = icon_emoji

    def format_message(self, event: WebhookEvent) -> dict[str, Any]:
        emoji = self.get_event_emoji(event.event_type.value)
        title = self._get_event_title(event)

        blocks = [
            {
                "type": "header",
                "text": {
                    "type": "plain_text",
                    "text": f"{emoji} {title}",
                    "emoji": True,
                },
            },
            {
                "type": "section",
                "fields": [
                    _field("Pipeline", event.pipeline),
                    _field("Run ID", f"`{event.run_id[:8]}`"),
                ],
            },
        ]

        detail_fields = self._get_detail_fields(event)
        if detail_fields:
            blocks.append({
                "type": "section",
                "fields": detail_fields,
            })

        blocks.append({
            "type": "context",
            "elements": [
                {
                    "type": "mrkdwn",
                    "text": f":clock1: {event.timestamp.strftime('%Y-%m-%d %H:%M:%S')}",
                },
            ],
        })

        payload: dict[str, Any] = {
            "username": self.username,
            "icon_emoji": self.icon_emoji,
            "attachments": [{
                "color": self.get_status_color(event.event_type.value),
                "blocks": blocks,
            }],
        }

        if self.channel:
            payload["channel"] = self.channel

        return payload

    def _get_event_title(self, event: WebhookEvent) -> str:
        return _TITLES.get(event.event_type.value, "Notification")

    def _get_detail_fields(self, event: WebhookEvent) -> list[dict[str, str]]:
        data = event.data
        kind = event.event_type.value
        fields = []

        if kind == "run_started":
            for key, label in (("branch", "Branch"), ("reason", "Reason")):
                if key in data:
                    fields.append(_field(label, data[key]))

        elif kind in ("run_completed", "run_failed", "run_canceled"):
            if "duration" in data:
                fields.append(_field("Duration", _format_duration(data["duration"])))
            if data.get("counts"):
                summary = ", ".join(f"{status}: {n}" for status, n in data["counts"].items())
                fields.append(_field("Jobs", summary))

        elif kind in ("stage_completed", "stage_failed"):
            if "stage" in data:
                fields.append(_field("Stage", data["stage"]))
            if "duration" in data:
                fields.append(_field("Duration", f"{data['duration']:.1f}s"))
            if data.get("error"):
                fields.append(_field("Error", f"```{data['error'][:200]}```"))

        return fields
