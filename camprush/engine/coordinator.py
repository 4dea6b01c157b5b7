"""
Registration coordinator

Wires the scheduler, executor, classifier, backoff policy and assistance
workflows together. One armed plan runs as one scheduler task; when it fires,
the attempt loop below keeps submitting until the registration is confirmed,
the retry budget is spent, or a parent gives up on a protected step.
"""
import asyncio
import logging
from typing import Dict, Optional, Tuple

from ..common.config import Config
from ..common.errors import DetectionTimeout, DuplicateSubmissionError
from ..common.interfaces import AutomationExecutor, DataStore, Notifier, TelemetrySink
from ..common.models import (
    AssistanceRequest,
    AttemptRecord,
    AttemptStatus,
    BarrierType,
    ClockSyncResult,
    ErrorRecoveryMode,
    FallbackStrategy,
    PlanStatus,
    PreflightReport,
    Priority,
    RegistrationPlan,
    WorkflowEventType,
)
from ..common.notifications import format_failure_message, format_success_message
from ..common.scheduler import BackoffPolicy
from .attempt_scheduler import AttemptScheduler
from .barriers import assistance_type_for
from .clock_sync import ClockSyncEstimator
from .executor import SubmissionExecutor
from .orchestrator import AssistanceWorkflow
from .preflight import run_preflight

logger = logging.getLogger(__name__)

# Barriers only a parent can clear
HUMAN_BARRIERS = frozenset({
    BarrierType.CAPTCHA,
    BarrierType.LOGIN_REQUIRED,
    BarrierType.PAYMENT_REQUIRED,
})


class RegistrationCoordinator:
    """Runs registration plans end to end"""

    def __init__(
        self,
        config: Config,
        store: DataStore,
        automation: AutomationExecutor,
        notifier: Optional[Notifier] = None,
        telemetry: Optional[TelemetrySink] = None,
        clock_sync: Optional[ClockSyncEstimator] = None,
        scheduler: Optional[AttemptScheduler] = None,
    ):
        self.config = config
        self.store = store
        self.notifier = notifier

        if clock_sync is None and config.clock_sync.enabled:
            clock_sync = ClockSyncEstimator(
                timeout=config.clock_sync.timeout,
                time_header=config.clock_sync.time_header,
                warn_drift_ms=config.clock_sync.warn_drift_ms,
                store=store,
            )
        self.clock_sync = clock_sync

        self.backoff = BackoffPolicy(max_delay_ms=config.retry.max_delay_ms)
        self.scheduler = scheduler or AttemptScheduler(config.schedule)
        self.executor = SubmissionExecutor(
            automation=automation,
            store=store,
            clock_sync=clock_sync,
            telemetry=telemetry,
            submit_timeout_s=config.executor.submit_timeout_s,
        )

        self._plans: Dict[str, RegistrationPlan] = {}
        self._workflows: Dict[Tuple[str, str], AssistanceWorkflow] = {}
        self._workflow_lock = asyncio.Lock()
        self._supervisors: Dict[str, asyncio.Task] = {}
        self._syncs: Dict[str, ClockSyncResult] = {}
        self._outcomes: Dict[str, str] = {}

    # ========================================
    # Plans
    # ========================================

    async def preflight(self, plan: RegistrationPlan) -> PreflightReport:
        """Run the preflight checks and save the plan with the result"""
        report = await run_preflight(plan)
        updated = plan.model_copy(update={"preflight_status": report.status})
        await self._save_plan(updated)
        self._plans[plan.id] = updated
        return report

    async def arm_plan(self, plan: RegistrationPlan, lead_time_s: Optional[float] = None) -> asyncio.Task:
        """
        Arm a plan. Re-arming an armed plan replaces its timer.

        Returns the task that completes with the plan's final attempt record.
        """
        # The old timer goes first so its live attempt closes itself before
        # history is reloaded
        if await self.scheduler.cancel(plan.id):
            logger.info(f"Plan {plan.id} re-armed; previous run stopped")

        await self._save_plan(plan)
        self._plans[plan.id] = plan
        self._outcomes.pop(plan.id, None)

        await self.executor.load_history(plan.id)
        await self.workflow_for(plan.session_id, plan.user_id, provider_url=plan.submit_url or "")

        await self.scheduler.arm(plan, fire=self._fire, prepare=self._prepare, lead_time_s=lead_time_s)
        supervisor = asyncio.create_task(self._supervise(plan), name=f"camprush-supervise-{plan.id}")
        self._supervisors[plan.id] = supervisor
        logger.info(f"Plan {plan.id} armed ({plan.open_strategy.value})")
        return supervisor

    async def cancel_plan(self, plan_id: str) -> bool:
        """
        Stop a plan: tear down its timer and close any live attempt.

        Assistance requests already queued for the parent are left alone.
        """
        cancelled = await self.scheduler.cancel(plan_id)
        record = await self.executor.cancel(plan_id)
        if cancelled or record is not None:
            self._outcomes[plan_id] = "cancelled"
            logger.info(f"Plan {plan_id} cancelled")
        return cancelled or record is not None

    def forget(self, plan_id: str) -> bool:
        """Drop a finished plan's bookkeeping. Armed or running plans are kept."""
        supervisor = self._supervisors.get(plan_id)
        if self.scheduler.is_armed(plan_id) or (supervisor is not None and not supervisor.done()):
            return False
        if not self.executor.forget(plan_id):
            return False

        self._plans.pop(plan_id, None)
        self._outcomes.pop(plan_id, None)
        self._supervisors.pop(plan_id, None)
        self._syncs.pop(plan_id, None)
        self.scheduler.forget(plan_id)
        return True

    async def wait(self, plan_id: str) -> Optional[AttemptRecord]:
        """Wait for an armed plan to finish and return its last attempt"""
        supervisor = self._supervisors.get(plan_id)
        if supervisor is None:
            return None
        return await supervisor

    def status(self, plan_id: str) -> PlanStatus:
        """Read-only view of a plan"""
        plan = self._plans.get(plan_id)
        attempt = self.executor.current_attempt(plan_id)
        status = PlanStatus(
            plan_id=plan_id,
            scheduler_state=self.scheduler.state(plan_id),
            current_attempt=attempt,
            current_barrier=attempt.barrier if attempt else None,
            outcome=self._outcomes.get(plan_id),
            finished=plan_id in self._outcomes,
        )

        if plan is not None:
            workflow = self._workflows.get((plan.session_id, plan.user_id))
            if workflow is not None:
                status.overall_progress = workflow.state.overall_progress
                status.estimated_time_remaining = workflow.state.estimated_time_remaining
        return status

    async def workflow_for(self, session_id: str, user_id: str, provider_url: str = "") -> AssistanceWorkflow:
        """Return the workflow for a (session, user), restoring its checkpoint on first use"""
        async with self._workflow_lock:
            key = (session_id, user_id)
            workflow = self._workflows.get(key)
            if workflow is None:
                workflow = AssistanceWorkflow(
                    session_id=session_id,
                    user_id=user_id,
                    store=self.store,
                    notifier=self.notifier,
                    config=self.config.workflow,
                    backoff=self.backoff,
                    provider_url=provider_url,
                )
                await workflow.restore_from_checkpoint()
                self._workflows[key] = workflow
            return workflow

    async def close(self):
        await self.scheduler.close()
        for plan_id in list(self._plans):
            await self.executor.cancel(plan_id, "Coordinator closed")
        for workflow in self._workflows.values():
            await workflow.close()
        for supervisor in self._supervisors.values():
            supervisor.cancel()
        await asyncio.gather(*self._supervisors.values(), return_exceptions=True)
        if self.clock_sync:
            await self.clock_sync.aclose()

    # ========================================
    # Scheduler callbacks
    # ========================================

    async def _prepare(self, plan: RegistrationPlan) -> float:
        """Clock sync and connection warm-up during the lead time. Returns drift in ms."""
        drift = 0.0
        if self.clock_sync and plan.probe_url:
            sync = await self.clock_sync.estimate(plan.probe_url)
            if sync.synced:
                self._syncs[plan.id] = sync
                drift = sync.drift_ms

        try:
            await self.executor.automation.preconnect(plan)
        except Exception as e:
            logger.warning(f"Warm-up for plan {plan.id} failed: {e}")
        return drift

    async def _supervise(self, plan: RegistrationPlan) -> Optional[AttemptRecord]:
        timer = self.scheduler.timer(plan.id)
        if timer is None or timer.task is None:
            return None

        task = timer.task
        await asyncio.wait({task})
        if self._supervisors.get(plan.id) is asyncio.current_task():
            self._syncs.pop(plan.id, None)
        if task.cancelled():
            return None

        error = task.exception()
        if isinstance(error, DetectionTimeout):
            self._outcomes[plan.id] = "detection_timeout"
            await self._notify(plan.user_id, format_failure_message(plan, str(error)), Priority.HIGH)
            return None
        if error is not None:
            logger.error(f"Plan {plan.id} stopped on an unexpected error: {error!r}")
            self._outcomes[plan.id] = "failed"
            await self._notify(plan.user_id, format_failure_message(plan, "Internal error"), Priority.HIGH)
            return None
        return task.result()

    async def _fire(self, plan: RegistrationPlan) -> Optional[AttemptRecord]:
        """Attempt loop run at T0"""
        attempt_number = self.executor.last_attempt_number(plan.id) + 1
        sync = self._syncs.pop(plan.id, None)
        nonce: Optional[str] = None
        retries = 0
        assists = 0

        while True:
            try:
                record = await self.executor.execute(plan, attempt_number, nonce=nonce, sync=sync)
            except DuplicateSubmissionError as e:
                logger.warning(f"Plan {plan.id} already confirmed as {e.confirmation_id}")
                self._outcomes[plan.id] = "success"
                return self.executor.current_attempt(plan.id)
            sync = None

            if record.status == AttemptStatus.SUCCESS:
                self._outcomes[plan.id] = "success"
                logger.info(f"🎉 Plan {plan.id} registered: {record.confirmation_id}")
                await self._notify(plan.user_id, format_success_message(plan, record), Priority.HIGH)
                return record

            if record.status == AttemptStatus.CANCELLED:
                self._outcomes[plan.id] = "cancelled"
                return record

            if record.status == AttemptStatus.BLOCKED and record.barrier in HUMAN_BARRIERS:
                assists += 1
                if assists > plan.max_attempts:
                    return await self._give_up(plan, record, "Too many protected steps")

                if not await self._request_assistance(plan, record):
                    return await self._give_up(plan, record, f"{record.barrier.value} step was not completed")
            else:
                retries += 1
                decision = self.backoff.decide(
                    attempt_number=retries,
                    barrier=record.barrier,
                    max_attempts=plan.max_attempts,
                    base_delay_ms=plan.retry_delay_ms,
                    auto_resumable=(
                        record.barrier == BarrierType.QUEUE
                        or plan.fallback_strategy == FallbackStrategy.KEEP_TRYING
                    ),
                    transient=record.transient,
                )
                if not decision.retry:
                    return await self._give_up(plan, record, record.error_message or decision.reason)

                logger.info(f"Plan {plan.id}: retrying in {decision.delay_ms}ms ({decision.reason})")
                await self.backoff.wait(decision)

            if plan.error_recovery == ErrorRecoveryMode.CONTINUE_FROM_STEP and record.status == AttemptStatus.BLOCKED:
                nonce = record.nonce
            else:
                nonce = None
            attempt_number += 1

    async def _request_assistance(self, plan: RegistrationPlan, record: AttemptRecord) -> bool:
        """Queue a request for the parent and wait for it to complete or fail"""
        workflow = await self.workflow_for(plan.session_id, plan.user_id, provider_url=plan.submit_url or "")
        request = AssistanceRequest(
            type=assistance_type_for(record.barrier),
            stage=f"{record.barrier.value} on attempt #{record.attempt_number}",
            priority=Priority.HIGH,
            requires_parent_intervention=True,
            context={
                "plan_id": plan.id,
                "attempt_number": record.attempt_number,
                "barrier": record.barrier.value,
                "url": plan.submit_url,
            },
        )

        events = workflow.subscribe()
        try:
            request = await workflow.enqueue(request)
            logger.info(f"Plan {plan.id}: waiting for parent on {request.type.value} request {request.id}")
            while True:
                event = await events.get()
                if event.request_id != request.id:
                    continue
                if event.type == WorkflowEventType.REQUEST_COMPLETED:
                    return True
                if event.type == WorkflowEventType.REQUEST_FAILED:
                    return False
        finally:
            workflow.unsubscribe(events)

    async def _give_up(self, plan: RegistrationPlan, record: AttemptRecord, reason: str) -> AttemptRecord:
        self._outcomes[plan.id] = "failed"
        logger.error(f"Plan {plan.id} failed after attempt #{record.attempt_number}: {reason}")
        await self._notify(plan.user_id, format_failure_message(plan, reason), Priority.HIGH)
        return record

    async def _notify(self, user_id: str, message: str, priority: Priority):
        if self.notifier is None:
            return
        try:
            await self.notifier.notify(user_id, message, priority)
        except Exception as e:
            logger.error(f"Notification to {user_id} failed: {e}")

    async def _save_plan(self, plan: RegistrationPlan):
        try:
            await self.store.save_plan(plan)
        except Exception as e:
            logger.error(f"Failed to save plan {plan.id}: {e}")
