from __future__ import annotations

from typing import Protocol

import httpx
import structlog

from incident_engine.exceptions import FeedDeliveryError
from incident_engine.feed import OWNER_LABELS
from incident_engine.models import FeedEvent

log = structlog.get_logger(__name__)


class FeedSender(Protocol):
    async def post_feed_event(self, event: FeedEvent) -> bool: ...


class SlackFeedSender:
    def __init__(
        self,
        webhook_url: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.webhook_url = webhook_url
        self.timeout = timeout
        self.transport = transport

    def build_payload(self, event: FeedEvent) -> dict[str, object]:
        body_lines = [event.markdown]
        if event.more_info_markdown:
            body_lines.append(event.more_info_markdown)
        text = "\n\n".join(line for line in body_lines if line)
        title = f"{OWNER_LABELS[event.owner_kind]} {event.event_type.replace('_', ' ')}"
        blocks: list[dict[str, object]] = [
            {
                "type": "header",
                "text": {
                    "type": "plain_text",
                    "text": title,
                    "emoji": True,
                },
            },
            {
                "type": "section",
                "text": {
                    "type": "mrkdwn",
                    "text": text,
                },
            },
        ]
        tags = [event.owner_kind, event.owner_id]
        if event.notify_user_id:
            tags.append(f"user:{event.notify_user_id}")
        blocks.append(
            {
                "type": "context",
                "elements": [{"type": "mrkdwn", "text": " ".join(f"`{tag}`" for tag in tags)}],
            }
        )
        return {"text": f"{title}\n{text}", "blocks": blocks}

    async def post_feed_event(self, event: FeedEvent) -> bool:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            response = await client.post(self.webhook_url, json=self.build_payload(event))
        return 200 <= response.status_code < 300


class LogFeedSender:
    def __init__(self) -> None:
        self.sent: list[FeedEvent] = []

    async def post_feed_event(self, event: FeedEvent) -> bool:
        self.sent.append(event)
        log.info(
            "feed_event",
            project_id=event.project_id,
            owner_kind=event.owner_kind,
            owner_id=event.owner_id,
            event_type=event.event_type,
            markdown=event.markdown,
        )
        return True


async def deliver_feed_event(event: FeedEvent, sender: FeedSender) -> None:
    if not await sender.post_feed_event(event):
        log.warning("feed_send_rejected", owner_id=event.owner_id, event_type=event.event_type)
        raise FeedDeliveryError(f"Feed sender rejected {event.event_type} for {event.owner_id}")
