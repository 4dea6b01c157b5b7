"""
Submission executor

Drives one registration attempt: clock sync, pre-connect, submit through the
automation executor, classify what came back, and write the outcome as a new
attempt record.
"""
import asyncio
import logging
import time
import uuid
from collections import defaultdict
from typing import Callable, Dict, Optional

import httpx

from ..common.errors import AttemptInProgressError, DuplicateSubmissionError
from ..common.interfaces import AutomationExecutor, DataStore, TelemetrySink
from ..common.models import (
    AttemptRecord,
    AttemptStatus,
    AutomationResult,
    BarrierType,
    ClockSyncResult,
    RegistrationPlan,
    TelemetryEvent,
    utcnow,
)
from .barriers import classify_result
from .clock_sync import ClockSyncEstimator

logger = logging.getLogger(__name__)


class LoggingTelemetrySink(TelemetrySink):
    """Writes attempt telemetry to the log"""

    async def emit(self, event: TelemetryEvent) -> None:
        logger.info(
            f"Telemetry plan={event.plan_id} attempt={event.attempt_number} "
            f"status={event.status.value} barrier={event.barrier.value if event.barrier else '-'} "
            f"latency={event.latency_ms}ms drift={event.clock_drift_ms}ms "
            f"queue={event.queue_position if event.queue_detected else '-'} "
            f"duration={event.duration_ms:.0f}ms"
        )


class SubmissionExecutor:
    """
    Runs registration attempts for any number of plans.

    Per plan, attempts are strictly ordered: attempt n+1 is refused while
    attempt n is still in progress. A nonce that already produced a
    confirmation is never submitted again.
    """

    def __init__(
        self,
        automation: AutomationExecutor,
        store: DataStore,
        clock_sync: Optional[ClockSyncEstimator] = None,
        telemetry: Optional[TelemetrySink] = None,
        submit_timeout_s: float = 30.0,
        telemetry_timeout_s: float = 1.0,
        classifier: Callable[[AutomationResult], BarrierType] = classify_result,
    ):
        self.automation = automation
        self.store = store
        self.clock_sync = clock_sync
        self.telemetry = telemetry or LoggingTelemetrySink()
        self.submit_timeout_s = submit_timeout_s
        self.telemetry_timeout_s = telemetry_timeout_s
        self.classifier = classifier

        self._current: Dict[str, AttemptRecord] = {}
        self._last_number: Dict[str, int] = {}
        self._confirmed: Dict[str, str] = {}
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def current_attempt(self, plan_id: str) -> Optional[AttemptRecord]:
        return self._current.get(plan_id)

    def last_attempt_number(self, plan_id: str) -> int:
        return self._last_number.get(plan_id, 0)

    async def load_history(self, plan_id: str):
        """
        Rebuild ordering state from the store after a restart.

        An attempt left non-terminal by a crash is closed as cancelled. An
        attempt still running in this process is left alone.
        """
        current = self._current.get(plan_id)
        if current is not None and not current.is_terminal:
            logger.debug(f"Plan {plan_id}: attempt #{current.attempt_number} is live; history not reloaded")
            return

        latest: Dict[int, AttemptRecord] = {}
        for record in await self.store.list_attempts(plan_id):
            latest[record.attempt_number] = record
            if record.status == AttemptStatus.SUCCESS and record.confirmation_id:
                self._confirmed[record.nonce] = record.confirmation_id

        if not latest:
            return

        last = max(latest)
        self._last_number[plan_id] = max(last, self._last_number.get(plan_id, 0))
        record = latest[last]
        if not record.is_terminal:
            record = record.mark_cancelled("Interrupted before completion")
            await self.store.append_attempt(record)
            logger.warning(f"Plan {plan_id}: attempt #{last} was interrupted; marked cancelled")
        self._current[plan_id] = record

    # ========================================
    # Execute
    # ========================================

    async def execute(
        self,
        plan: RegistrationPlan,
        attempt_number: int,
        nonce: Optional[str] = None,
        sync: Optional[ClockSyncResult] = None,
    ) -> AttemptRecord:
        """
        Run one attempt and return its terminal record.

        A clock sync measured during preparation can be passed as sync to
        skip the probe round trip at T0.

        Raises:
            AttemptInProgressError: another attempt for the plan is live, or
                attempt_number does not follow the last one
            DuplicateSubmissionError: the nonce already produced a confirmation
        """
        async with self._locks[plan.id]:
            current = self._current.get(plan.id)
            if current is not None and not current.is_terminal:
                raise AttemptInProgressError(plan.id, current.attempt_number)

            last = self._last_number.get(plan.id, 0)
            if attempt_number <= last:
                raise AttemptInProgressError(
                    plan.id, attempt_number,
                    f"Plan {plan.id}: attempt #{attempt_number} does not follow #{last}",
                )

            if nonce and nonce in self._confirmed:
                raise DuplicateSubmissionError(nonce, self._confirmed[nonce])

            record = AttemptRecord(
                plan_id=plan.id,
                attempt_number=attempt_number,
                status=AttemptStatus.IN_PROGRESS,
                nonce=nonce or uuid.uuid4().hex,
                started_at=utcnow(),
            )
            self._current[plan.id] = record
            self._last_number[plan.id] = attempt_number

        await self._append(record)
        logger.info(f"Plan {plan.id}: attempt #{attempt_number} started (nonce {record.nonce})")

        started = time.monotonic()
        try:
            final = await self._run(plan, record, sync)
        except asyncio.CancelledError:
            await self._finish(plan.id, record, None, started, cancelled=True)
            raise

        return await self._finish(plan.id, record, final, started)

    async def cancel(self, plan_id: str, reason: str = "Plan cancelled") -> Optional[AttemptRecord]:
        """Close a live attempt as cancelled. Returns the cancelled record, if any."""
        async with self._locks[plan_id]:
            current = self._current.get(plan_id)
            if current is None or current.is_terminal:
                return None
            cancelled = current.mark_cancelled(reason)
            self._current[plan_id] = cancelled

        await self._append(cancelled)
        logger.info(f"Plan {plan_id}: attempt #{cancelled.attempt_number} cancelled")
        return cancelled

    def forget(self, plan_id: str) -> bool:
        """Drop ordering state for a finished plan. Confirmed nonces are kept."""
        current = self._current.get(plan_id)
        if current is not None and not current.is_terminal:
            return False
        self._current.pop(plan_id, None)
        self._last_number.pop(plan_id, None)
        self._locks.pop(plan_id, None)
        return True

    async def _run(
        self,
        plan: RegistrationPlan,
        record: AttemptRecord,
        sync: Optional[ClockSyncResult] = None,
    ) -> AttemptRecord:
        # Step 1: clock sync
        if sync is None:
            sync = ClockSyncResult(synced=False)
        if self.clock_sync and not sync.synced:
            try:
                sync = await self.clock_sync.estimate(plan.probe_url)
            except Exception as e:
                logger.warning(f"Clock sync error for plan {plan.id}: {e}")
                sync = ClockSyncResult(synced=False, error=str(e))

        record = record.model_copy(update={
            "clock_synced": sync.synced,
            "clock_drift_ms": sync.drift_ms if sync.synced else 0.0,
            "latency_ms": sync.latency_ms if sync.synced else None,
        })
        if not sync.synced:
            record = record.model_copy(update={"metadata": {**record.metadata, "unsynced": True}})

        # Step 2: pre-connect, best effort
        try:
            if await self.automation.preconnect(plan):
                record = record.model_copy(update={"preconnected_at": utcnow()})
        except Exception as e:
            logger.warning(f"Pre-connect failed for plan {plan.id}: {e}")

        # Step 3: submit with the nonce as idempotency token
        submit_started = time.monotonic()
        try:
            result = await asyncio.wait_for(
                self.automation.submit(plan, record.nonce),
                timeout=self.submit_timeout_s,
            )
        except asyncio.TimeoutError:
            return record.mark_failed(
                f"Submission timed out after {self.submit_timeout_s}s",
                transient=True,
                submitted_at=utcnow(),
            )
        except httpx.TransportError as e:
            return record.mark_failed(f"Network error during submission: {e}", transient=True)
        except Exception as e:
            logger.error(f"Automation error for plan {plan.id}: {e}")
            return record.mark_failed(
                f"Automation error: {e}",
                metadata={**record.metadata, "internal_error": repr(e)},
            )

        submit_ms = (time.monotonic() - submit_started) * 1000
        metadata = {**record.metadata, "submit_ms": round(submit_ms, 1), "http_status": result.http_status}
        record = record.model_copy(update={
            "submitted_at": utcnow(),
            "latency_ms": record.latency_ms if record.latency_ms is not None else submit_ms / 2,
        })

        # Step 4: classify
        try:
            barrier = self.classifier(result)
        except Exception as e:
            logger.error(f"Barrier classification failed for plan {plan.id}: {e}")
            barrier = BarrierType.UNKNOWN_ERROR
            metadata["internal_error"] = repr(e)

        queue_detected = barrier == BarrierType.QUEUE or result.queue_position is not None
        outcome = {
            "queue_detected": queue_detected,
            "queue_position": result.queue_position,
            "metadata": metadata,
        }

        if barrier == BarrierType.NONE and result.success_indicator:
            return record.mark_success(result.confirmation_id, **outcome)
        if barrier == BarrierType.NONE:
            return record.mark_failed("No success marker in automation result", **outcome)
        if barrier == BarrierType.UNKNOWN_ERROR:
            return record.mark_failed(
                metadata.get("internal_error") or f"Provider error (HTTP {result.http_status})",
                transient=(result.http_status or 0) >= 500,
                **outcome,
            )
        return record.mark_blocked(barrier, **outcome)

    async def _finish(
        self,
        plan_id: str,
        started_record: AttemptRecord,
        final: Optional[AttemptRecord],
        started: float,
        cancelled: bool = False,
    ) -> AttemptRecord:
        async with self._locks[plan_id]:
            current = self._current.get(plan_id)
            if current is not None and current.attempt_number == started_record.attempt_number and current.is_terminal:
                # cancel() got there first; keep its record
                if final is not None and final.status == AttemptStatus.SUCCESS:
                    logger.warning(
                        f"Plan {plan_id}: attempt #{final.attempt_number} confirmed "
                        f"{final.confirmation_id} after it was cancelled"
                    )
                    self._confirmed[final.nonce] = final.confirmation_id or ""
                return current

            if cancelled or final is None:
                final = started_record.mark_cancelled("Attempt task cancelled")
            self._current[plan_id] = final
            if final.status == AttemptStatus.SUCCESS:
                self._confirmed[final.nonce] = final.confirmation_id or ""

        await self._append(final)
        await self._emit_telemetry(final, (time.monotonic() - started) * 1000)

        logger.info(
            f"Plan {plan_id}: attempt #{final.attempt_number} -> {final.status.value}"
            + (f" ({final.barrier.value})" if final.barrier and final.barrier != BarrierType.NONE else "")
        )
        return final

    async def _append(self, record: AttemptRecord):
        try:
            await self.store.append_attempt(record)
        except Exception as e:
            logger.error(f"Failed to persist attempt #{record.attempt_number} of plan {record.plan_id}: {e}")

    async def _emit_telemetry(self, record: AttemptRecord, duration_ms: float):
        event = TelemetryEvent(
            plan_id=record.plan_id,
            attempt_number=record.attempt_number,
            status=record.status,
            barrier=record.barrier,
            latency_ms=record.latency_ms,
            clock_drift_ms=record.clock_drift_ms,
            clock_synced=record.clock_synced,
            queue_detected=record.queue_detected,
            queue_position=record.queue_position,
            duration_ms=duration_ms,
        )
        try:
            await asyncio.wait_for(self.telemetry.emit(event), timeout=self.telemetry_timeout_s)
        except Exception as e:
            logger.warning(f"Telemetry dropped for plan {record.plan_id}: {e}")
