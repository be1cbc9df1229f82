"""Pytest configuration and shared fixtures."""

from typing import Any, Dict, List, Optional

import pytest

from tibber_bridge.clients.tibber_query import ConsumptionPage
from tibber_bridge.config.settings import BridgeSettings


class FakeFeed:
    """Live feed stand-in; tests push events through ``emit``."""

    def __init__(self):
        self.listener = None
        self.connect_calls = 0
        self.closed = False

    def set_listener(self, listener):
        self.listener = listener

    async def connect(self):
        self.connect_calls += 1

    async def close(self):
        self.closed = True

    async def emit(self, event, payload=None):
        await self.listener(event, payload)


class RecordingWriter:
    """Storage writer stand-in that keeps every point it is given."""

    def __init__(self):
        self.points = []
        self.fail_times = 0
        self.closed = False

    async def write_point(self, measurement, point):
        if self.fail_times > 0:
            self.fail_times -= 1
            raise ConnectionError("write refused")
        self.points.append((measurement, point))
        return True

    async def close(self):
        self.closed = True


class FakeStorage(RecordingWriter):
    """Storage with canned query results for the backfill engine."""

    def __init__(self, rows: Optional[List[Dict[str, Any]]] = None, day_count: int = 0):
        super().__init__()
        self.rows = rows or []
        self.day_count = day_count
        self.query_error: Optional[Exception] = None
        self.queries: List[str] = []
        self.on_write = None

    async def query(self, flux):
        self.queries.append(flux)
        if self.query_error is not None:
            raise self.query_error
        if "count()" in flux:
            return [{"_value": self.day_count}]
        return self.rows

    async def write_point(self, measurement, point):
        result = await super().write_point(measurement, point)
        if self.on_write is not None:
            self.on_write(point)
        return result


class FakeQueryClient:
    """Historical API stand-in answering from a scripted list of pages or errors."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.cursors: List[Optional[str]] = []

    async def get_consumption_page(self, home_id, page_size, cursor=None):
        self.cursors.append(cursor)
        if not self.responses:
            return ConsumptionPage(nodes=[], has_next_page=False)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def make_node(start: str, consumption: Optional[float], cost: Optional[float] = None, **extra):
    node = {
        "from": start,
        "to": None,
        "consumption": consumption,
        "cost": cost,
        "currency": "NOK",
        "unitPrice": None,
        "unitPriceVAT": None,
        "totalCost": None,
        "unitCost": None,
        "consumptionUnit": "kWh",
    }
    node.update(extra)
    return node


@pytest.fixture
def settings() -> BridgeSettings:
    """Create test configuration."""
    return BridgeSettings(
        tibber={
            "access_token": "test-token",
            "home_id": "home-1",
            "feed_timeout": 60,
            "connection_timeout": 30,
        },
        influxdb={
            "url": "http://localhost:8086",
            "token": "influx-token",
            "bucket": "tibber",
            "measurement": "live_data",
        },
        backfill={
            "enabled": True,
            "from_date": "2024-01-01",
            "page_size": 3,
            "delay_ms": 0,
        },
    )


@pytest.fixture
def feed() -> FakeFeed:
    return FakeFeed()


@pytest.fixture
def writer() -> RecordingWriter:
    return RecordingWriter()


@pytest.fixture
def storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture
def sample_live_measurement() -> Dict[str, Any]:
    """Sample liveMeasurement payload as delivered by the subscription."""
    return {
        "timestamp": "2024-03-01T12:00:05.000+01:00",
        "power": 1520,
        "accumulatedConsumption": 12.345,
        "accumulatedCost": 14.2,
        "currency": "NOK",
        "currentL1": 2.5,
        "currentL2": 1.0,
        "currentL3": None,
        "voltagePhase1": 231.0,
        "voltagePhase2": 229.5,
        "voltagePhase3": None,
        "signalStrength": -72,
    }
