"""Tests for the live measurement websocket feed."""

import asyncio
import json
from unittest.mock import AsyncMock

import pytest

from tibber_bridge.clients.tibber_feed import TibberFeed
from tibber_bridge.config.settings import TibberConfig
from tibber_bridge.models import FeedEvent


class FakeWebSocket:
    """Websocket that replays scripted frames, then blocks."""

    def __init__(self, frames):
        self.frames = [json.dumps(f) if isinstance(f, dict) else f for f in frames]
        self.sent = []

    async def send(self, message):
        self.sent.append(json.loads(message))

    async def recv(self):
        if self.frames:
            return self.frames.pop(0)
        await asyncio.Event().wait()

    async def close(self):
        pass


@pytest.fixture
def tibber_config():
    return TibberConfig(access_token="test-token", home_id="home-1", feed_timeout=1, connection_timeout=1)


@pytest.fixture
def events():
    return []


@pytest.fixture
def tibber_feed(tibber_config, events):
    query_client = AsyncMock()
    query_client.get_websocket_subscription_url.return_value = "wss://example/subscriptions"
    feed = TibberFeed(tibber_config, query_client)

    async def listener(event, payload):
        events.append((event, payload))

    feed.set_listener(listener)
    feed._running = True
    return feed


def next_frame(measurement):
    return {"id": "1", "type": "next", "payload": {"data": {"liveMeasurement": measurement}}}


class TestMessageHandling:

    @pytest.mark.asyncio
    async def test_next_message_emits_data(self, tibber_feed, events):
        measurement = {"timestamp": "2024-01-01T00:00:00.000Z", "power": 100}

        keep_going = await tibber_feed._handle_message(FakeWebSocket([]), json.dumps(next_frame(measurement)))

        assert keep_going
        assert events == [(FeedEvent.DATA, measurement)]
        assert tibber_feed.stats["measurements"] == 1

    @pytest.mark.asyncio
    async def test_error_message_emits_error(self, tibber_feed, events):
        frame = {"id": "1", "type": "error", "payload": [{"message": "unauthorized"}]}

        await tibber_feed._handle_message(FakeWebSocket([]), json.dumps(frame))

        assert events == [(FeedEvent.ERROR, [{"message": "unauthorized"}])]

    @pytest.mark.asyncio
    async def test_ping_is_answered(self, tibber_feed, events):
        websocket = FakeWebSocket([])

        await tibber_feed._handle_message(websocket, json.dumps({"type": "ping"}))

        assert websocket.sent == [{"type": "pong"}]
        assert events == []

    @pytest.mark.asyncio
    async def test_complete_ends_subscription(self, tibber_feed):
        assert not await tibber_feed._handle_message(FakeWebSocket([]), json.dumps({"id": "1", "type": "complete"}))

    @pytest.mark.asyncio
    async def test_garbage_is_ignored(self, tibber_feed, events):
        assert await tibber_feed._handle_message(FakeWebSocket([]), "not json")
        assert events == []

    @pytest.mark.asyncio
    async def test_listener_errors_are_contained(self, tibber_config):
        feed = TibberFeed(tibber_config, AsyncMock())
        feed.set_listener(AsyncMock(side_effect=RuntimeError("listener bug")))

        await feed._handle_message(FakeWebSocket([]), json.dumps(next_frame({"power": 1})))


class TestSession:

    @pytest.mark.asyncio
    async def test_handshake_and_subscription(self, tibber_feed, events):
        measurement = {"timestamp": "2024-01-01T00:00:00.000Z", "power": 100}
        websocket = FakeWebSocket([
            {"type": "connection_ack"},
            next_frame(measurement),
            {"id": "1", "type": "complete"},
        ])

        reason = await tibber_feed._session(websocket)

        assert reason == "complete"
        assert websocket.sent[0] == {"type": "connection_init", "payload": {"token": "test-token"}}
        assert websocket.sent[1]["type"] == "subscribe"
        assert websocket.sent[1]["payload"]["variables"] == {"homeId": "home-1"}
        assert [e for e, _ in events] == [FeedEvent.CONNECTION_ACK, FeedEvent.DATA]

    @pytest.mark.asyncio
    async def test_silent_feed_reports_heartbeat_timeout(self, tibber_feed, events):
        websocket = FakeWebSocket([{"type": "connection_ack"}])

        reason = await tibber_feed._session(websocket)

        assert reason == "heartbeat_timeout"
        assert events[-1][0] == FeedEvent.HEARTBEAT_TIMEOUT

    @pytest.mark.asyncio
    async def test_missing_ack_reports_connection_timeout(self, tibber_feed, events):
        websocket = FakeWebSocket([])

        reason = await tibber_feed._session(websocket)

        assert reason == "connection_timeout"
        assert [e for e, _ in events] == [FeedEvent.CONNECTION_TIMEOUT]
        assert len(websocket.sent) == 1
