from __future__ import annotations

import json

import httpx
import pytest

from incident_engine.alerting.slack import LogFeedSender, SlackFeedSender, deliver_feed_event
from incident_engine.config import Settings
from incident_engine.engine import build_engine, default_feed_sender
from incident_engine.exceptions import FeedDeliveryError
from incident_engine.models import FeedEvent

WEBHOOK = "https://hooks.slack.test/services/T000/B000/XXX"


def feed_event(**fields: object) -> FeedEvent:
    payload: dict[str, object] = {
        "project_id": "p",
        "owner_id": "inc-1",
        "owner_kind": "incident",
        "event_type": "state_changed",
        "markdown": "✅ Changed **Incident 4 State** to **Resolved**",
        "more_info_markdown": "**Cause:**\nRecovered",
    }
    payload.update(fields)
    return FeedEvent.model_validate(payload)


class FakeSender:
    def __init__(self, succeed: bool) -> None:
        self.succeed = succeed
        self.calls = 0

    async def post_feed_event(self, event: FeedEvent) -> bool:
        self.calls += 1
        return self.succeed


def test_slack_payload_layout() -> None:
    payload = SlackFeedSender(WEBHOOK).build_payload(feed_event(notify_user_id="u-1"))
    blocks = payload["blocks"]
    assert isinstance(blocks, list)
    assert blocks[0]["text"]["text"] == "Incident state changed"
    assert blocks[1]["text"]["text"] == "✅ Changed **Incident 4 State** to **Resolved**\n\n**Cause:**\nRecovered"
    assert blocks[2]["elements"][0]["text"] == "`incident` `inc-1` `user:u-1`"


@pytest.mark.asyncio
async def test_slack_sender_posts_to_webhook() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, text="ok")

    sender = SlackFeedSender(WEBHOOK, transport=httpx.MockTransport(handler))
    assert await sender.post_feed_event(feed_event()) is True

    assert len(seen) == 1
    assert str(seen[0].url) == WEBHOOK
    body = json.loads(seen[0].content)
    assert body["text"].startswith("Incident state changed\n")


@pytest.mark.asyncio
async def test_slack_rejection_raises_for_retry() -> None:
    sender = SlackFeedSender(WEBHOOK, transport=httpx.MockTransport(lambda request: httpx.Response(500)))
    assert await sender.post_feed_event(feed_event()) is False
    with pytest.raises(FeedDeliveryError):
        await deliver_feed_event(feed_event(), sender)


@pytest.mark.asyncio
async def test_engine_retries_rejected_feed_events(seed, settings: Settings) -> None:
    sender = FakeSender(succeed=False)
    engine = build_engine(settings, store=seed.store, feed_sender=sender)
    monitor = await seed.add_monitor()

    await engine.timeline.insert("monitor", monitor.id, "monitor-offline")
    await engine.events.drain()

    assert sender.calls == settings.event_max_attempts
    assert engine.events.dropped == 1


@pytest.mark.asyncio
async def test_log_sender_records_events() -> None:
    sender = LogFeedSender()
    await deliver_feed_event(feed_event(), sender)
    assert [event.owner_id for event in sender.sent] == ["inc-1"]


def test_default_sender_follows_webhook_setting() -> None:
    assert isinstance(default_feed_sender(Settings(slack_webhook_url=WEBHOOK)), SlackFeedSender)
    assert isinstance(default_feed_sender(Settings(slack_webhook_url="  ")), LogFeedSender)
