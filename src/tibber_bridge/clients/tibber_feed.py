"""Tibber live measurement feed over a GraphQL websocket subscription."""

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

import websockets
from websockets.exceptions import ConnectionClosed

from ..config.settings import TibberConfig
from ..models import FeedEvent
from .tibber_query import TibberQueryClient, user_agent

logger = logging.getLogger(__name__)

SUBPROTOCOL = "graphql-transport-ws"
SUBSCRIPTION_ID = "1"
INITIAL_RECONNECT_DELAY = 1.0
MAX_RECONNECT_DELAY = 60.0

LIVE_MEASUREMENT_SUBSCRIPTION = """
subscription LiveMeasurement($homeId: ID!) {
  liveMeasurement(homeId: $homeId) {
    timestamp
    power
    lastMeterConsumption
    accumulatedConsumption
    accumulatedProduction
    accumulatedConsumptionLastHour
    accumulatedProductionLastHour
    accumulatedCost
    accumulatedReward
    currency
    minPower
    averagePower
    maxPower
    powerProduction
    powerReactive
    powerProductionReactive
    minPowerProduction
    maxPowerProduction
    lastMeterProduction
    powerFactor
    voltagePhase1
    voltagePhase2
    voltagePhase3
    currentL1
    currentL2
    currentL3
    signalStrength
  }
}
"""

FeedListener = Callable[[FeedEvent, Any], Awaitable[None]]


class TibberFeed:
    """
    Keeps one live-measurement subscription open and reports what happens to it.

    Every lifecycle change and every measurement is delivered to a single
    listener as a ``FeedEvent``. The feed reconnects on its own until
    ``close()`` is called.
    """

    def __init__(self, config: TibberConfig, query_client: TibberQueryClient):
        self.config = config
        self.query_client = query_client
        self.websocket = None

        self._listener: Optional[FeedListener] = None
        self._websocket_url: Optional[str] = None
        self._running = False
        self._acknowledged = False
        self._task: Optional[asyncio.Task] = None

        self.stats = {
            'messages_received': 0,
            'measurements': 0,
            'connection_count': 0,
            'reconnects': 0,
        }

    def set_listener(self, listener: FeedListener):
        self._listener = listener

    async def connect(self):
        """Start the subscription loop in the background. Idempotent."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run())

    async def close(self):
        """Stop reconnecting and close the socket."""
        self._running = False

        if self.websocket is not None:
            try:
                await self.websocket.close()
            except Exception as e:
                logger.debug(f"Error closing websocket: {e}")

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _emit(self, event: FeedEvent, payload: Any = None):
        if self._listener is None:
            return
        try:
            await self._listener(event, payload)
        except Exception as e:
            logger.error(f"Feed listener failed on {event.value}: {e}", exc_info=True)

    async def _resolve_url(self) -> str:
        if self._websocket_url is None:
            self._websocket_url = await self.query_client.get_websocket_subscription_url()
        return self._websocket_url

    async def _run(self):
        delay = INITIAL_RECONNECT_DELAY

        while self._running:
            reason = "error"
            self._acknowledged = False
            await self._emit(FeedEvent.CONNECTING, {'attempt': self.stats['connection_count'] + 1})

            try:
                url = await self._resolve_url()
                async with websockets.connect(
                    url,
                    subprotocols=[SUBPROTOCOL],
                    user_agent_header=user_agent(),
                    open_timeout=self.config.connection_timeout,
                ) as websocket:
                    self.websocket = websocket
                    self.stats['connection_count'] += 1
                    await self._emit(FeedEvent.CONNECTED, {'url': url})
                    reason = await self._session(websocket)

            except asyncio.CancelledError:
                raise
            except ConnectionClosed as e:
                logger.warning(f"Websocket connection closed: {e}")
                reason = "closed"
            except Exception as e:
                logger.error(f"Live feed connection failed: {e}")
                await self._emit(FeedEvent.ERROR, e)
            finally:
                self.websocket = None

            if not self._running:
                break

            if self._acknowledged:
                delay = INITIAL_RECONNECT_DELAY

            await self._emit(FeedEvent.DISCONNECTED, {'reason': reason})

            if reason == "heartbeat_timeout":
                await self._emit(FeedEvent.HEARTBEAT_RECONNECT, {'delay': delay})

            self.stats['reconnects'] += 1
            await asyncio.sleep(delay)
            delay = min(delay * 2, MAX_RECONNECT_DELAY)

    async def _session(self, websocket) -> str:
        """Run the subscription protocol on an open socket; returns why it ended."""
        self._acknowledged = False
        await websocket.send(json.dumps({
            'type': 'connection_init',
            'payload': {'token': self.config.access_token},
        }))

        try:
            await asyncio.wait_for(self._wait_for_ack(websocket), self.config.connection_timeout)
        except asyncio.TimeoutError:
            await self._emit(FeedEvent.CONNECTION_TIMEOUT, {'timeout': self.config.connection_timeout})
            return "connection_timeout"

        self._acknowledged = True
        await self._emit(FeedEvent.CONNECTION_ACK, None)

        await websocket.send(json.dumps({
            'id': SUBSCRIPTION_ID,
            'type': 'subscribe',
            'payload': {
                'query': LIVE_MEASUREMENT_SUBSCRIPTION,
                'variables': {'homeId': self.config.home_id},
            },
        }))

        while self._running:
            try:
                raw = await asyncio.wait_for(websocket.recv(), self.config.feed_timeout)
            except asyncio.TimeoutError:
                await self._emit(FeedEvent.HEARTBEAT_TIMEOUT, {'timeout': self.config.feed_timeout})
                return "heartbeat_timeout"

            if not await self._handle_message(websocket, raw):
                return "complete"

        return "subscribed"

    async def _wait_for_ack(self, websocket):
        while True:
            message = self._decode(await websocket.recv())
            if message is None:
                continue
            if message.get('type') == 'connection_ack':
                return
            if message.get('type') == 'ping':
                await websocket.send(json.dumps({'type': 'pong'}))

    def _decode(self, raw) -> Optional[Dict[str, Any]]:
        self.stats['messages_received'] += 1
        try:
            message = json.loads(raw)
        except (TypeError, ValueError) as e:
            logger.warning(f"Failed to parse feed message: {e}")
            return None
        return message if isinstance(message, dict) else None

    async def _handle_message(self, websocket, raw) -> bool:
        """Dispatch one protocol message. Returns False when the subscription ended."""
        message = self._decode(raw)
        if message is None:
            return True

        message_type = message.get('type')

        if message_type == 'next':
            payload = message.get('payload') or {}
            if payload.get('errors'):
                await self._emit(FeedEvent.ERROR, payload['errors'])
            measurement = (payload.get('data') or {}).get('liveMeasurement')
            if measurement:
                self.stats['measurements'] += 1
                await self._emit(FeedEvent.DATA, measurement)
        elif message_type == 'error':
            await self._emit(FeedEvent.ERROR, message.get('payload'))
        elif message_type == 'ping':
            await websocket.send(json.dumps({'type': 'pong'}))
        elif message_type == 'complete':
            logger.info("Subscription completed by server")
            return False
        else:
            logger.debug(f"Ignoring feed message of type {message_type}")

        return True
