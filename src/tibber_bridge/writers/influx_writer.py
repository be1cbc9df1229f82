"""InfluxDB storage backend: buffered point writes and Flux queries."""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from influxdb_client.client.influxdb_client_async import InfluxDBClientAsync

from ..config.settings import InfluxConfig
from ..exceptions import StorageConnectionError
from ..point_encoder import Point
from ..utils.retry import exponential_backoff

logger = logging.getLogger(__name__)

MAX_PENDING_POINTS = 10000


@dataclass
class BatchStats:
    """Statistics for batch operations."""
    points_sent: int = 0
    points_failed: int = 0
    batches_sent: int = 0
    latency_ms: float = 0.0
    last_batch_time: Optional[float] = None


class InfluxStorage:
    """
    Storage writer and query interface on top of the async InfluxDB client.

    Points are buffered and sent in batches by a background task, as soon as
    ``batch_size`` points are pending or every ``flush_interval_seconds``.
    ``write_point`` never waits for the backend: it only reports whether the
    point was accepted into the buffer. Delivery failures are logged, the batch
    is re-queued and the next attempt waits one flush interval.
    """

    def __init__(self, config: InfluxConfig, client: Optional[InfluxDBClientAsync] = None):
        self.config = config
        self.batch_size = config.batch_size
        self.flush_interval = config.flush_interval_seconds

        self._client = client
        self._pending: List[Point] = []
        self._running = False
        self._flush_task: Optional[asyncio.Task] = None
        self._flush_lock = asyncio.Lock()
        self._batch_ready = asyncio.Event()

        self.batch_stats = BatchStats()
        self.stats = {
            'points_accepted': 0,
            'points_rejected': 0,
            'queries': 0,
            'query_errors': 0,
            'errors': 0,
        }

        logger.info(
            f"InfluxStorage initialized for {config.url} bucket={config.bucket} "
            f"batch_size={self.batch_size}"
        )

    async def connect(self):
        """Create the client and verify the server answers; start the flush task."""
        if self._client is None:
            self._client = InfluxDBClientAsync(
                url=self.config.url,
                token=self.config.token,
                org=self.config.org,
            )

        try:
            reachable = await self._client.ping()
        except Exception as e:
            raise StorageConnectionError(f"Failed to connect to InfluxDB at {self.config.url}: {e}") from e

        if not reachable:
            raise StorageConnectionError(f"InfluxDB at {self.config.url} did not answer the health check")

        logger.info("Successfully connected to InfluxDB")
        await self.start()

    async def start(self):
        """Start the background flush task."""
        if self._running:
            return

        self._running = True
        self._flush_task = asyncio.create_task(self._flush_loop())
        logger.debug("InfluxStorage flush loop started")

    async def close(self):
        """Stop the flush task, send what is still buffered and release the client."""
        self._running = False

        if self._flush_task:
            self._flush_task.cancel()
            try:
                await self._flush_task
            except asyncio.CancelledError:
                pass
            self._flush_task = None

        await self.flush()

        if self._client is not None:
            await self._client.close()
            self._client = None

        logger.info("InfluxDB connection resources released")

    async def write_point(self, measurement: str, point: Point) -> bool:
        """Queue one point for writing. Returns False when the point is refused."""
        if not self._running:
            logger.warning("Storage writer not running, dropping point")
            self.stats['points_rejected'] += 1
            return False

        if point.timestamp is None:
            logger.warning(f"Refusing point for {measurement} without a timestamp")
            self.stats['points_rejected'] += 1
            return False

        if not point.fields:
            logger.debug(f"Refusing point for {measurement} without fields")
            self.stats['points_rejected'] += 1
            return False

        if len(self._pending) >= MAX_PENDING_POINTS:
            logger.warning(f"Write buffer full ({len(self._pending)} points), dropping point for {measurement}")
            self.stats['points_rejected'] += 1
            return False

        if point.measurement != measurement:
            point = Point(measurement, point.timestamp, point.tags, point.fields)

        self._pending.append(point)
        self.stats['points_accepted'] += 1

        if len(self._pending) >= self.batch_size:
            self._batch_ready.set()

        return True

    async def flush(self) -> bool:
        """Send every buffered point in one batch. Returns False if the send failed."""
        async with self._flush_lock:
            if not self._pending:
                return True

            points = self._pending
            self._pending = []

            try:
                start_time = time.time()
                await exponential_backoff(
                    lambda: self._send_batch(points),
                    max_attempts=self.config.max_retries,
                    initial_delay=1.0,
                    max_delay=10.0,
                    operation="InfluxDB write",
                )

                self.batch_stats.points_sent += len(points)
                self.batch_stats.batches_sent += 1
                self.batch_stats.latency_ms = (time.time() - start_time) * 1000
                self.batch_stats.last_batch_time = time.time()

                logger.debug(f"Flushed {len(points)} points to {self.config.bucket}")
                return True

            except asyncio.CancelledError:
                self._pending = points + self._pending
                raise

            except Exception as e:
                logger.error(f"Failed to write {len(points)} points to InfluxDB: {e}")
                self.batch_stats.points_failed += len(points)
                self.stats['errors'] += 1

                # Re-queue with a cap so a dead backend cannot exhaust memory
                if len(self._pending) + len(points) <= MAX_PENDING_POINTS:
                    self._pending = points + self._pending
                else:
                    logger.warning(f"Dropping {len(points)} points due to queue overflow")
                return False

    async def _send_batch(self, points: List[Point]):
        if self._client is None:
            raise StorageConnectionError("InfluxDB client not initialized")

        write_api = self._client.write_api()
        await write_api.write(
            bucket=self.config.bucket,
            org=self.config.org,
            record=[p.to_influx() for p in points],
        )

    async def _flush_loop(self):
        """Background task sending full batches, and partial ones once per interval."""
        while self._running:
            try:
                try:
                    await asyncio.wait_for(self._batch_ready.wait(), timeout=self.flush_interval)
                except asyncio.TimeoutError:
                    pass
                self._batch_ready.clear()

                if not await self.flush():
                    await asyncio.sleep(self.flush_interval)

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in flush loop: {e}")
                await asyncio.sleep(1)

    async def query(self, flux: str) -> List[Dict[str, Any]]:
        """Run a Flux query and return one dict of column values per record."""
        if self._client is None:
            raise StorageConnectionError("InfluxDB client not initialized")

        self.stats['queries'] += 1
        try:
            tables = await self._client.query_api().query(flux, org=self.config.org)
        except Exception:
            self.stats['query_errors'] += 1
            raise

        rows = []
        for table in tables:
            for record in table.records:
                rows.append(dict(record.values))
        return rows

    def get_stats(self) -> Dict[str, Any]:
        return {
            'overall': dict(self.stats),
            'batches': {
                'points_sent': self.batch_stats.points_sent,
                'points_failed': self.batch_stats.points_failed,
                'batches_sent': self.batch_stats.batches_sent,
                'latency_ms': self.batch_stats.latency_ms,
                'last_batch_time': self.batch_stats.last_batch_time,
            },
            'pending': len(self._pending),
        }

    async def health_check(self) -> Dict[str, Any]:
        issues = []
        if not self._running:
            issues.append('Writer not running')
        if len(self._pending) > self.batch_size * 10:
            issues.append(f'Large write queue: {len(self._pending)}')

        return {
            'status': 'unhealthy' if issues else 'healthy',
            'issues': issues,
            'stats': self.get_stats(),
        }
