"""Resumable backfill of hourly consumption history into storage."""

import asyncio
import base64
import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Iterable, Optional

from .config.settings import BridgeSettings
from .point_encoder import encode, resolve_timestamp


logger = logging.getLogger(__name__)

SOURCE_TAG = "backfill"
PROGRESS_FIELD = "accumulatedConsumptionLastHour"
OPTIONAL_NUMERIC_FIELDS = ("cost", "unitPrice", "unitPriceVAT", "totalCost", "unitCost")


class BackfillCancelled(Exception):
    """The run was cancelled while waiting on a remote call."""


def format_instant(moment: datetime) -> str:
    """UTC ISO-8601 with millisecond precision, e.g. ``2024-01-01T00:00:00.000Z``."""
    moment = moment.astimezone(timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"


def to_cursor(moment: datetime) -> str:
    """Pagination cursor pointing at ``moment``."""
    return base64.b64encode(format_instant(moment).encode("utf-8")).decode("ascii")


def from_cursor(cursor: str) -> Optional[datetime]:
    """Instant a cursor points at, or None if it is not one of ours."""
    try:
        decoded = base64.b64decode(cursor.encode("ascii"), validate=True).decode("utf-8")
    except (ValueError, UnicodeError):
        return None
    return resolve_timestamp(decoded)


def _flux_string(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


@dataclass
class ResumePoint:
    """Newest backfilled record found in storage."""
    timestamp: datetime
    accumulated_consumption: Optional[float] = None
    accumulated_cost: Optional[float] = None


@dataclass
class BackfillStats:
    pages: int = 0
    records_written: int = 0
    records_skipped: int = 0
    request_failures: int = 0
    write_failures: int = 0
    cancelled: bool = False


class DayAccumulator:
    """Running consumption and cost totals for one UTC calendar day."""

    def __init__(self, day: Optional[date] = None, consumption: float = 0.0, cost: float = 0.0):
        self.day = day
        self.consumption = consumption
        self.cost = cost

    def add(self, day: date, consumption: float, cost: Optional[float]):
        """Add one record; totals reset first when ``day`` differs from the last one."""
        if day != self.day:
            self.day = day
            self.consumption = 0.0
            self.cost = 0.0

        self.consumption += consumption
        self.cost += cost or 0.0
        return self.consumption, self.cost


class BackfillEngine:
    """
    Fills storage with hourly consumption records from the Tibber history.

    The run resumes after the newest record already stored with the
    ``source=backfill`` tag, or from the configured start date when there is
    none. Pages are requested with a fixed pause between them; a failed request
    is retried with the same cursor after the pause. Setting ``cancel_event``
    stops the run at the next record and abandons any pending request, storage
    call or pause.
    """

    def __init__(self, settings: BridgeSettings, query_client, storage,
                 cancel_event: Optional[asyncio.Event] = None):
        self.settings = settings
        self.config = settings.backfill
        self.query_client = query_client
        self.storage = storage
        self.cancel_event = cancel_event or asyncio.Event()

        self.home_id = settings.tibber.home_id
        self.measurement = settings.influxdb.measurement
        self.bucket = settings.influxdb.bucket

        self.stats = BackfillStats()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def cancel(self):
        self.cancel_event.set()

    async def find_resume_point(self) -> Optional[ResumePoint]:
        """Newest backfilled record in storage, or None if there is none or the query fails."""
        start = self.config.start_instant
        range_start = format_instant(start) if start else "0"

        flux = f'''
        from(bucket: "{_flux_string(self.bucket)}")
            |> range(start: {range_start})
            |> filter(fn: (r) => r["_measurement"] == "{_flux_string(self.measurement)}")
            |> filter(fn: (r) => r["source"] == "{SOURCE_TAG}")
            |> filter(fn: (r) => r["_field"] == "{PROGRESS_FIELD}" or r["_field"] == "accumulatedConsumption" or r["_field"] == "accumulatedCost")
            |> last()
        '''

        try:
            rows = await self._until_cancelled(self.storage.query(flux))
        except BackfillCancelled:
            return None
        except Exception as e:
            logger.warning(f"Could not query backfill resume point: {e}")
            return None

        return self._resume_point_from_rows(rows)

    @staticmethod
    def _resume_point_from_rows(rows: Iterable[Dict[str, Any]]) -> Optional[ResumePoint]:
        rows = list(rows)
        progress_times = [
            resolve_timestamp(row.get("_time"))
            for row in rows
            if row.get("_field") == PROGRESS_FIELD
        ]
        progress_times = [t for t in progress_times if t is not None]
        if not progress_times:
            return None

        latest = max(progress_times)
        resume = ResumePoint(timestamp=latest)

        for row in rows:
            if resolve_timestamp(row.get("_time")) != latest:
                continue
            if row.get("_field") == "accumulatedConsumption":
                resume.accumulated_consumption = row.get("_value")
            elif row.get("_field") == "accumulatedCost":
                resume.accumulated_cost = row.get("_value")

        return resume

    async def count_day_records(self, day: date) -> int:
        """Number of backfilled hourly records stored for one UTC day."""
        day_start = datetime(day.year, day.month, day.day, tzinfo=timezone.utc)
        day_end = day_start + timedelta(days=1)

        flux = f'''
        from(bucket: "{_flux_string(self.bucket)}")
            |> range(start: {format_instant(day_start)}, stop: {format_instant(day_end)})
            |> filter(fn: (r) => r["_measurement"] == "{_flux_string(self.measurement)}")
            |> filter(fn: (r) => r["source"] == "{SOURCE_TAG}")
            |> filter(fn: (r) => r["_field"] == "{PROGRESS_FIELD}")
            |> group()
            |> count()
        '''

        try:
            rows = await self._until_cancelled(self.storage.query(flux))
        except BackfillCancelled:
            return 0
        except Exception as e:
            logger.warning(f"Could not query record count for {day.isoformat()}: {e}")
            return 0

        return int(sum(row.get("_value") or 0 for row in rows))

    def initial_cursor(self, resume: Optional[ResumePoint]) -> Optional[str]:
        if resume is not None:
            return to_cursor(resume.timestamp)
        if self.config.start_instant is None:
            return None
        return to_cursor(self.config.start_instant)

    async def run(self) -> BackfillStats:
        """Backfill until the history is exhausted or the run is cancelled."""
        self.stats = BackfillStats()

        resume = await self.find_resume_point()
        cursor = self.initial_cursor(resume)
        accumulator = DayAccumulator()
        last_written: Optional[datetime] = None

        if resume is not None:
            last_written = resume.timestamp
            resume_day = resume.timestamp.astimezone(timezone.utc).date()
            accumulator = DayAccumulator(
                day=resume_day,
                consumption=resume.accumulated_consumption or 0.0,
                cost=resume.accumulated_cost or 0.0,
            )
            existing = await self.count_day_records(resume_day)
            logger.info(
                f"Resuming backfill after {format_instant(resume.timestamp)} "
                f"({existing} records already stored for {resume_day.isoformat()})"
            )
        else:
            logger.info(f"Starting backfill from {self.config.from_date}")

        logger.info(
            f"Backfill settings: home={self.home_id} page_size={self.config.page_size} "
            f"delay_ms={self.config.delay_ms}"
        )

        while not self.cancelled:
            try:
                page = await self._until_cancelled(self.query_client.get_consumption_page(
                    self.home_id, self.config.page_size, cursor
                ))
            except BackfillCancelled:
                break
            except Exception as e:
                self.stats.request_failures += 1
                logger.error(f"Backfill request failed at cursor {cursor}, retrying after delay: {e}")
                if not await self._pause():
                    break
                continue

            self.stats.pages += 1

            for node in page.nodes:
                if self.cancelled:
                    break

                timestamp = resolve_timestamp(node.get("from"))
                if node.get("consumption") is None or timestamp is None:
                    self.stats.records_skipped += 1
                    continue

                if last_written is not None and timestamp <= last_written:
                    if timestamp < last_written:
                        logger.warning(
                            f"Record {node.get('from')} is older than {format_instant(last_written)}, skipping"
                        )
                    else:
                        logger.debug(f"Skipping {node.get('from')}: already written")
                    self.stats.records_skipped += 1
                    continue

                day = timestamp.astimezone(timezone.utc).date()
                accumulated_consumption, accumulated_cost = accumulator.add(
                    day, node["consumption"], node.get("cost")
                )

                point = encode(self.measurement, self._build_reading(
                    node, accumulated_consumption, accumulated_cost
                ))
                try:
                    written = await self._until_cancelled(self.storage.write_point(self.measurement, point))
                except BackfillCancelled:
                    break
                except Exception as e:
                    logger.error(f"Failed to write backfill record {node.get('from')}: {e}")
                    self.stats.write_failures += 1
                else:
                    if written:
                        self.stats.records_written += 1
                    else:
                        logger.warning(f"Storage refused backfill record {node.get('from')}")
                        self.stats.write_failures += 1

                last_written = timestamp

            if self.cancelled:
                break

            logger.info(
                f"Backfilled page {self.stats.pages}: {len(page.nodes)} nodes, "
                f"{self.stats.records_written} records written in total"
            )

            if not page.has_next_page:
                break

            if not page.end_cursor:
                logger.warning("Page reported more data but no cursor, stopping backfill")
                break

            next_instant = from_cursor(page.end_cursor)
            if next_instant is not None:
                logger.debug(f"Next page starts after {format_instant(next_instant)}")
            cursor = page.end_cursor
            if not await self._pause():
                break

        self.stats.cancelled = self.cancelled
        if self.stats.cancelled:
            logger.info(f"Backfill aborted: {self.stats}")
        else:
            logger.info(f"Backfill complete: {self.stats}")
        return self.stats

    def _build_reading(self, node: Dict[str, Any], accumulated_consumption: float,
                       accumulated_cost: float) -> Dict[str, Any]:
        reading: Dict[str, Any] = {
            "timestamp": node["from"],
            "source": SOURCE_TAG,
            PROGRESS_FIELD: node["consumption"],
            "accumulatedConsumption": accumulated_consumption,
            "accumulatedCost": accumulated_cost,
            "currency": node.get("currency"),
        }

        for key in OPTIONAL_NUMERIC_FIELDS:
            if node.get(key) is not None:
                reading[key] = node[key]
        if node.get("consumptionUnit"):
            reading["consumptionUnit"] = node["consumptionUnit"]

        return reading

    async def _until_cancelled(self, awaitable):
        """Await ``awaitable``, abandoning it with BackfillCancelled once the run is cancelled."""
        task = asyncio.ensure_future(awaitable)
        cancelled = asyncio.ensure_future(self.cancel_event.wait())
        try:
            await asyncio.wait({task, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancelled.cancel()
            if not task.done():
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)

        if task.cancelled():
            raise BackfillCancelled()
        return task.result()

    async def _pause(self) -> bool:
        """Wait one pacing delay. Returns False if cancelled meanwhile."""
        try:
            await asyncio.wait_for(self.cancel_event.wait(), timeout=self.config.delay_seconds)
        except asyncio.TimeoutError:
            return True
        return False
