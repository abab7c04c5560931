from __future__ import annotations

import asyncio
import json
from datetime import timedelta
from typing import AsyncIterator, Dict, List

import httpx
import pytest

from access_sync.app.entitlements import (
    EntitlementCacheStore,
    EntitlementKey,
    EntitlementOrigin,
    FeatureCatalog,
    InMemoryStorage,
    NotificationResolver,
)
from access_sync.app.entitlements.models import to_epoch_ms
from access_sync.app.events import BroadcastBus
from access_sync.app.services.backend_client import AccessBackendClient
from access_sync.app.services.live_updates import (
    LiveUpdateChannel,
    LiveUpdateHub,
    PushMessage,
    SSEPushTransport,
    parse_event_stream,
)
from conftest import settle

KEY = EntitlementKey.of("video-playlist", "v1", "a@x.com")


class QueueTransport:
    """Push transport fed by the test, one queue per email."""

    def __init__(self) -> None:
        self.queues: Dict[str, asyncio.Queue] = {}
        self.subscriptions: List[str] = []

    def queue(self, email: str) -> asyncio.Queue:
        return self.queues.setdefault(email, asyncio.Queue())

    async def messages(self, email: str) -> AsyncIterator[PushMessage]:
        self.subscriptions.append(email)
        queue = self.queue(email)
        while True:
            yield await queue.get()


async def _lines(*lines: str) -> AsyncIterator[str]:
    for line in lines:
        yield line


@pytest.fixture
def store(clock) -> EntitlementCacheStore:
    return EntitlementCacheStore(InMemoryStorage(), BroadcastBus(), clock=clock)


@pytest.fixture
def resolver(store, clock) -> NotificationResolver:
    resolver = NotificationResolver(store, clock=clock)
    resolver.load_catalog(
        FeatureCatalog.of("video-playlist", [{"id": "v1", "name": "Calculus Basics", "slug": "calculus-basics"}])
    )
    return resolver


def _grant_message(clock, ref: str = "calculus-basics", **extra) -> PushMessage:
    payload = {"feature": "video-playlist", "featureId": ref, "expiry": to_epoch_ms(clock() + timedelta(hours=1))}
    payload.update(extra)
    return PushMessage(event="grant", data=json.dumps(payload))


@pytest.mark.asyncio
async def test_parse_event_stream_handles_comments_and_multiline_data():
    messages = [
        message
        async for message in parse_event_stream(
            _lines(
                ": keepalive comment",
                "retry: 1500",
                "",
                "event: grant",
                "id: 41",
                'data: {"a":',
                "data: 1}",
                "",
                "data: plain",
                "",
            )
        )
    ]

    assert messages == [
        PushMessage(event="message", retry=1500),
        PushMessage(event="grant", data='{"a":\n1}', id="41"),
        PushMessage(event="message", data="plain"),
    ]


def test_channel_applies_grant_for_its_email(resolver, store, clock):
    channel = LiveUpdateChannel("A@x.com", QueueTransport(), resolver)

    assert channel.handle_message(_grant_message(clock, email="a@x.com"))

    record = store.get(KEY)
    assert record is not None
    assert record.origin == EntitlementOrigin.PUSH


def test_channel_defaults_missing_email_to_its_own(resolver, store, clock):
    channel = LiveUpdateChannel("a@x.com", QueueTransport(), resolver)

    assert channel.handle_message(_grant_message(clock))
    assert store.get(KEY) is not None


def test_channel_revoke_and_redelivery_are_harmless(resolver, store, clock):
    channel = LiveUpdateChannel("a@x.com", QueueTransport(), resolver)
    revoke = PushMessage(event="revoke", data=json.dumps({"feature": "video-playlist", "featureId": "v1"}))
    channel.handle_message(_grant_message(clock))

    assert channel.handle_message(revoke)
    assert channel.handle_message(revoke)
    assert store.get(KEY) is None


def test_channel_skips_keepalive_malformed_and_foreign_messages(resolver, store, clock):
    channel = LiveUpdateChannel("a@x.com", QueueTransport(), resolver)

    assert channel.handle_message(PushMessage(event="ping")) is False
    assert channel.handle_message(PushMessage(event="grant", data="{broken")) is False
    assert channel.handle_message(PushMessage(event="grant", data='{"feature": "video-playlist"}')) is False
    assert channel.handle_message(PushMessage(event="unknown", data="{}")) is False
    assert channel.handle_message(_grant_message(clock, email="b@x.com")) is False
    assert store.get(KEY) is None


@pytest.mark.asyncio
async def test_hub_shares_one_subscription_per_email(resolver, store, clock):
    transport = QueueTransport()
    hub = LiveUpdateHub(transport, resolver)

    first = hub.open("a@x.com")
    second = hub.open("A@X.com")
    await settle()

    assert transport.subscriptions == ["a@x.com"]

    transport.queue("a@x.com").put_nowait(_grant_message(clock))
    await settle()
    assert store.get(KEY) is not None

    await hub.close(first)
    assert hub.is_open("a@x.com")
    await hub.close(second)
    assert not hub.is_open("a@x.com")


@pytest.mark.asyncio
async def test_hub_rejects_empty_email(resolver):
    hub = LiveUpdateHub(QueueTransport(), resolver)

    with pytest.raises(ValueError):
        hub.open("  ")


@pytest.mark.asyncio
async def test_sse_transport_reconnects_with_last_event_id(clock, fast_sleep):
    seen: List[httpx.Request] = []
    body = "retry: 1500\n\nevent: grant\nid: 7\ndata: " + _grant_message(clock).data + "\n\n"

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if len(seen) == 1:
            return httpx.Response(200, text=body, headers={"Content-Type": "text/event-stream"})
        return httpx.Response(204)

    client = AccessBackendClient("http://backend.test/api", transport=httpx.MockTransport(handler))
    transport = SSEPushTransport(client, retry_ms=3000, sleep=fast_sleep)

    messages = [message async for message in transport.messages("a@x.com")]
    await client.close()

    assert [message.event for message in messages] == ["message", "grant"]
    assert seen[0].url.params["email"] == "a@x.com"
    assert "Last-Event-ID" not in seen[0].headers
    assert seen[1].headers["Last-Event-ID"] == "7"
    assert fast_sleep.calls == [1.5]


@pytest.mark.asyncio
async def test_sse_transport_stops_on_client_error(fast_sleep):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401)

    client = AccessBackendClient("http://backend.test/api", transport=httpx.MockTransport(handler))
    transport = SSEPushTransport(client, sleep=fast_sleep)

    messages = [message async for message in transport.messages("a@x.com")]
    await client.close()

    assert messages == []
    assert fast_sleep.calls == []


@pytest.mark.asyncio
async def test_sse_transport_retries_server_errors(fast_sleep):
    calls: List[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        if len(calls) < 3:
            return httpx.Response(503)
        return httpx.Response(204)

    client = AccessBackendClient("http://backend.test/api", transport=httpx.MockTransport(handler))
    transport = SSEPushTransport(client, retry_ms=250, sleep=fast_sleep)

    assert [message async for message in transport.messages("a@x.com")] == []
    await client.close()

    assert fast_sleep.calls == [0.25, 0.25]


def test_channel_rejects_out_of_range_expiry(resolver, store):
    channel = LiveUpdateChannel("a@x.com", QueueTransport(), resolver)
    message = PushMessage(event="grant", data='{"feature": "video-playlist", "featureId": "v1", "expiry": 1e300}')

    assert channel.handle_message(message) is False
    assert store.get(KEY) is None


@pytest.mark.asyncio
async def test_hub_keeps_running_after_out_of_range_expiry(resolver, store, clock):
    transport = QueueTransport()
    hub = LiveUpdateHub(transport, resolver)
    handle = hub.open("a@x.com")
    await settle()

    queue = transport.queue("a@x.com")
    queue.put_nowait(PushMessage(event="grant", data='{"feature": "video-playlist", "featureId": "v1", "expiry": 1e300}'))
    queue.put_nowait(_grant_message(clock))
    await settle()

    assert hub.is_open("a@x.com")
    assert store.get(KEY) is not None
    await hub.close(handle)
