"""
Clock sync estimator

Probes the provider right before a timed action to learn how far our wall
clock is from the provider's, and how long a request takes to get there.
Every probe, successful or not, is written to the audit log when a store
is attached.
"""
import logging
import math
import time
from datetime import datetime, timezone
from typing import Callable, Optional

import httpx
from dateutil import parser as date_parser

from ..common.errors import ClockSyncError
from ..common.interfaces import DataStore
from ..common.models import AuditEvent, ClockSyncResult

logger = logging.getLogger(__name__)

# Numeric time headers above this are epoch milliseconds, below it seconds
_EPOCH_MS_THRESHOLD = 1e11
# 9999-12-31T23:59:59.999Z, the last instant datetime can hold
_MAX_EPOCH_MS = 253402300799999


def parse_server_time(value: str) -> float:
    """Parse a server time header into epoch milliseconds"""
    value = value.strip()
    if not value:
        raise ClockSyncError("Empty server time header")

    try:
        number = float(value)
    except ValueError:
        number = None

    if number is not None:
        if not math.isfinite(number):
            raise ClockSyncError(f"Server time {value!r} is not a finite number")
        server_ms = number if number > _EPOCH_MS_THRESHOLD else number * 1000
        if not 0 <= server_ms <= _MAX_EPOCH_MS:
            raise ClockSyncError(f"Server time {value!r} is out of range")
        return server_ms

    try:
        parsed = date_parser.parse(value)
    except (ValueError, OverflowError) as e:
        raise ClockSyncError(f"Unparseable server time {value!r}: {e}") from e

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp() * 1000

class ClockSyncEstimator:
    """
    Estimates provider clock drift from a single lightweight probe.

    drift = server time - midpoint(send, receive)
    latency = (receive - send) / 2

    Each call is independent; nothing is cached between probes.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 3.0,
        time_header: str = "Date",
        warn_drift_ms: float = 500,
        clock: Callable[[], float] = time.time,
        store: Optional[DataStore] = None,
    ):
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(follow_redirects=True)
        self.timeout = timeout
        self.time_header = time_header
        self.warn_drift_ms = warn_drift_ms
        self.clock = clock
        self.store = store

    async def measure(self, url: str) -> ClockSyncResult:
        """
        Probe the provider and compute drift.

        Raises:
            ClockSyncError: network failure or missing/unparseable time header
        """
        try:
            result = await self._probe(url)
        except ClockSyncError as e:
            await self._audit(url, ClockSyncResult(synced=False, error=str(e)))
            raise

        await self._audit(url, result)
        return result

    async def _probe(self, url: str) -> ClockSyncResult:
        sent = self.clock()
        try:
            response = await self.client.head(url, timeout=self.timeout)
            if response.status_code == 405:
                response = await self.client.get(url, timeout=self.timeout)
        except httpx.HTTPError as e:
            raise ClockSyncError(f"Clock probe to {url} failed: {e}") from e
        received = self.clock()

        header = response.headers.get(self.time_header)
        if not header:
            raise ClockSyncError(f"{url} did not send a {self.time_header} header")

        server_ms = parse_server_time(header)
        try:
            server_time = datetime.fromtimestamp(server_ms / 1000, tz=timezone.utc)
        except (OverflowError, ValueError, OSError) as e:
            raise ClockSyncError(f"Server time {header!r} is out of range: {e}") from e

        midpoint_ms = (sent + received) / 2 * 1000
        drift_ms = server_ms - midpoint_ms
        latency_ms = max((received - sent) * 1000 / 2, 0.0)

        logger.info(
            f"Clock sync {url}: drift={drift_ms:+.1f}ms latency={latency_ms:.1f}ms "
            f"status={response.status_code}"
        )
        if abs(drift_ms) > self.warn_drift_ms:
            logger.warning(f"High clock drift against {url}: {drift_ms:+.1f}ms")

        return ClockSyncResult(
            synced=True,
            drift_ms=drift_ms,
            latency_ms=latency_ms,
            server_time=server_time,
        )

    async def _audit(self, url: str, result: ClockSyncResult):
        if not self.store:
            return
        event = AuditEvent(
            event_type="CLOCK_SYNC",
            summary=f"Clock sync against {url}: {'synced' if result.synced else 'failed'}",
            data={
                "url": url,
                "synced": result.synced,
                "drift_ms": result.drift_ms,
                "latency_ms": result.latency_ms,
                "error": result.error,
            },
        )
        try:
            await self.store.append_audit(event)
        except Exception as e:
            logger.warning(f"Failed to write clock sync audit event: {e}")

    async def estimate(self, url: Optional[str]) -> ClockSyncResult:
        """Like measure(), but degrades to an unsynced zero-drift result"""
        if not url:
            return ClockSyncResult(synced=False, error="No probe URL")
        try:
            return await self.measure(url)
        except ClockSyncError as e:
            logger.warning(f"Clock sync unavailable, assuming zero drift: {e}")
            return ClockSyncResult(synced=False, error=str(e))

    async def aclose(self):
        if self._owns_client:
            await self.client.aclose()
