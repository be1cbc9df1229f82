"""Live ingest connection: feed lifecycle state machine and reading persistence."""

import asyncio
import logging
import re
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional

from .config.settings import BridgeSettings
from .models import ConnectionState, FeedEvent, Notification
from .point_encoder import TIMESTAMP_KEY, encode, resolve_timestamp


logger = logging.getLogger(__name__)

# Single source of truth for state changes; DISCONNECTED is conditional
TRANSITIONS: Dict[FeedEvent, ConnectionState] = {
    FeedEvent.CONNECTING: ConnectionState.CONNECTING,
    FeedEvent.HEARTBEAT_RECONNECT: ConnectionState.CONNECTING,
    FeedEvent.CONNECTED: ConnectionState.CONNECTED,
    FeedEvent.CONNECTION_ACK: ConnectionState.CONNECTED,
    FeedEvent.DATA: ConnectionState.CONNECTED,
    FeedEvent.CONNECTION_TIMEOUT: ConnectionState.WAITING,
    FeedEvent.HEARTBEAT_TIMEOUT: ConnectionState.WAITING,
    FeedEvent.DISCONNECTED: ConnectionState.DISCONNECTED,
}

# A disconnect while already reconnecting is expected churn
RECONNECTING_STATES = (ConnectionState.WAITING, ConnectionState.CONNECTING)

PHASE_CURRENT = re.compile(r"^current(?:L)?(\d+)$", re.IGNORECASE)


def normalize_phases(reading: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Derive per-phase power from current and voltage.

    For every phase N with both a current (``currentLN``) and a
    ``voltagePhaseN`` value, adds ``powerLN = current * voltage`` and moves
    the voltage to ``voltageLN``. Returns a new dict; running it again is a
    no-op because ``voltagePhaseN`` is gone.
    """
    normalized = dict(reading)

    for key, current in reading.items():
        match = PHASE_CURRENT.match(key)
        if not match:
            continue

        phase = int(match.group(1))
        voltage_key = f"voltagePhase{phase}"
        if voltage_key not in normalized:
            continue

        voltage = normalized[voltage_key]
        if _is_number(current) and _is_number(voltage):
            normalized[f"powerL{phase}"] = current * voltage
        normalized[f"voltageL{phase}"] = voltage
        del normalized[voltage_key]

    return normalized


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class LiveIngestConnection:
    """Consumes live feed events and writes every measurement to storage."""

    def __init__(self, settings: BridgeSettings, feed, writer):
        self.settings = settings
        self.feed = feed
        self.writer = writer
        self.measurement = settings.influxdb.measurement

        self.status = ConnectionState.UNKNOWN
        self._handlers: Dict[Notification, List[Callable]] = defaultdict(list)

        self.stats = {
            "readings_received": 0,
            "points_written": 0,
            "write_errors": 0,
            "readings_dropped": 0,
            "last_reading_time": None,
        }

        self.feed.set_listener(self.handle_event)

    def register_handler(self, notification: Notification, handler: Callable):
        """Subscribe to a notification. Handlers may be plain or async callables."""
        self._handlers[notification].append(handler)

    async def _notify(self, notification: Notification, payload: Any):
        for handler in list(self._handlers[notification]):
            try:
                result = handler(payload)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(f"{notification.value} handler failed: {e}", exc_info=True)

    async def set_status(self, status: ConnectionState):
        if status == self.status:
            return
        logger.debug(f"Status: {status.name.lower()}")
        self.status = status
        await self._notify(Notification.STATUS, status)

    async def handle_event(self, event: FeedEvent, payload: Any = None):
        """Apply one feed event to the state machine and act on it."""
        if event is FeedEvent.ERROR:
            logger.error(f"Tibber feed error: {payload}")
            await self._notify(Notification.ERROR, payload)
            return

        if event is FeedEvent.DISCONNECTED:
            if self.status not in RECONNECTING_STATES:
                await self.set_status(ConnectionState.DISCONNECTED)
            logger.info(f"Disconnected: {payload}")
            return

        await self.set_status(TRANSITIONS[event])

        if event is FeedEvent.DATA:
            await self.handle_data(payload)
        elif event is FeedEvent.CONNECTING:
            logger.info(f"Connecting: {payload}")
        elif event is FeedEvent.CONNECTION_TIMEOUT:
            logger.warning(f"Connection timeout: {payload}")
        else:
            logger.debug(f"{event.value}: {payload}")

    async def handle_data(self, reading: Mapping[str, Any]):
        """Normalize, encode and write one live reading."""
        self.stats["readings_received"] += 1

        try:
            timestamp = resolve_timestamp(reading.get(TIMESTAMP_KEY))
            if timestamp is None:
                logger.warning(f"Dropping reading without a usable timestamp: {reading.get(TIMESTAMP_KEY)!r}")
                self.stats["readings_dropped"] += 1
                return

            logger.debug(f"Received data from Tibber at {timestamp.isoformat()}")

            point = encode(self.measurement, normalize_phases(reading))
            written = await self.writer.write_point(self.measurement, point)

            if written:
                self.stats["points_written"] += 1
            else:
                self.stats["write_errors"] += 1
            self.stats["last_reading_time"] = datetime.now(timezone.utc)

        except Exception as e:
            logger.error(f"Error handling data: {e}", exc_info=True)
            self.stats["write_errors"] += 1
            return

        await self._notify(Notification.PROCESSED, reading)

    async def connect(self):
        await self.set_status(ConnectionState.CONNECTING)
        logger.info("Connecting to Tibber...")
        await self.feed.connect()

    async def close(self):
        logger.info("Closing Tibber feed...")
        try:
            await self.feed.close()
        finally:
            try:
                await self.writer.close()
            finally:
                await self.set_status(ConnectionState.DISCONNECTED)

    def get_stats(self) -> Dict[str, Any]:
        stats = dict(self.stats)
        stats["status"] = self.status.name.lower()
        return stats

    async def health_check(self) -> Dict[str, Any]:
        health_status = {
            "status": "healthy" if self.status == ConnectionState.CONNECTED else "degraded",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "stats": self.get_stats(),
        }

        last = self.stats["last_reading_time"]
        if last is not None:
            silence = (datetime.now(timezone.utc) - last).total_seconds()
            if silence > self.settings.tibber.feed_timeout:
                health_status["status"] = "degraded"
                health_status["warning"] = f"No readings for {silence:.0f} seconds"

        return health_status
