"""
Assistance workflow orchestrator

Turns the barriers hit during registration into a FIFO pipeline of
human-assistance requests for one (session, user) pair. At most one request is
active at a time; when the active slot empties, the next queued request is
started automatically unless processing is paused or a terminal failure is
waiting for the parent.
"""
import asyncio
import logging
from collections import deque
from typing import Any, Deque, Dict, List, Optional

from ..common.config import WorkflowConfig
from ..common.interfaces import DataStore, Notifier
from ..common.models import (
    AssistanceRequest,
    AuditEvent,
    Checkpoint,
    Priority,
    RequestStatus,
    WorkflowEvent,
    WorkflowEventType,
    WorkflowState,
    utcnow,
)
from ..common.notifications import format_assistance_message
from ..common.scheduler import BackoffPolicy
from .barriers import barrier_for_assistance

logger = logging.getLogger(__name__)


class AssistanceWorkflow:
    """
    Owner of one WorkflowState.

    All public operations are serialized by a lock and never raise; failures
    of the store or notifier are logged and reported through last_error.
    """

    def __init__(
        self,
        session_id: str,
        user_id: str,
        store: DataStore,
        notifier: Optional[Notifier] = None,
        config: Optional[WorkflowConfig] = None,
        backoff: Optional[BackoffPolicy] = None,
        provider_url: str = "",
        plan_context: Optional[Dict[str, Any]] = None,
    ):
        self.store = store
        self.notifier = notifier
        self.config = config or WorkflowConfig()
        self.backoff = backoff or BackoffPolicy()
        self.plan_context = plan_context or {}
        self.state = WorkflowState(session_id=session_id, user_id=user_id, provider_url=provider_url)
        self.events: Deque[WorkflowEvent] = deque(maxlen=self.config.event_history)

        self._lock = asyncio.Lock()
        self._subscribers: List[asyncio.Queue] = []
        self._retry_tasks: Dict[str, asyncio.Task] = {}
        self._last_error: Optional[str] = None
        self._completed_announced = False

    # ========================================
    # Read-only views
    # ========================================

    @property
    def session_id(self) -> str:
        return self.state.session_id

    @property
    def user_id(self) -> str:
        return self.state.user_id

    @property
    def current_request(self) -> Optional[AssistanceRequest]:
        return self.state.current_request

    @property
    def queue_length(self) -> int:
        return len(self.state.queue)

    @property
    def completed_count(self) -> int:
        return sum(1 for r in self.state.queue if r.status == RequestStatus.COMPLETED)

    @property
    def failed_count(self) -> int:
        return sum(1 for r in self.state.queue if r.status == RequestStatus.FAILED)

    @property
    def can_resume(self) -> bool:
        return not self.state.is_processing and self.state.can_auto_resume

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    def active_count(self) -> int:
        return sum(1 for r in self.state.queue if r.status == RequestStatus.ACTIVE)

    def snapshot(self) -> WorkflowState:
        """Deep copy of the state for external readers"""
        return self.state.model_copy(deep=True)

    # ========================================
    # Events
    # ========================================

    def subscribe(self) -> asyncio.Queue:
        """Return a queue that receives every event emitted from now on"""
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue):
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def _emit(self, event_type: WorkflowEventType, request_id: Optional[str] = None, **data):
        event = WorkflowEvent(
            type=event_type,
            session_id=self.session_id,
            user_id=self.user_id,
            request_id=request_id,
            data=data,
        )
        self.events.append(event)
        for queue in self._subscribers:
            queue.put_nowait(event)

    # ========================================
    # Queue operations
    # ========================================

    async def enqueue(self, request: AssistanceRequest) -> AssistanceRequest:
        """Append a request in queued status. Starting it is left to auto-advance."""
        async with self._lock:
            request = request.model_copy(update={"status": RequestStatus.QUEUED})
            self.state.queue.append(request)
            self._completed_announced = False
            logger.info(f"Queued {request.type.value} request {request.id} ({request.stage})")
            self._emit(WorkflowEventType.REQUEST_QUEUED, request.id, type=request.type.value)
            await self._maybe_advance()
            return request

    async def start_next(self) -> bool:
        """Activate the first queued request. Returns True if one was started."""
        async with self._lock:
            started = await self._start_next()
            await self._maybe_advance()
            return started

    async def complete_current(self, response: Any = None) -> bool:
        """Mark the active request completed with the parent's response"""
        async with self._lock:
            request = self.state.current_request
            if request is None or request.status != RequestStatus.ACTIVE:
                logger.warning("complete_current called with no active request")
                return False

            self._cancel_retry(request.id)
            now = utcnow()
            minutes = max(int((now - request.created_at).total_seconds() // 60), 0)
            completed = request.model_copy(update={
                "status": RequestStatus.COMPLETED,
                "completed_at": now,
                "actual_duration": minutes,
                "parent_response": response,
            })
            self.state.queue[self.state.current_index] = completed
            self.state.current_index = -1

            logger.info(f"Completed request {completed.id} in {minutes} min")
            self._emit(WorkflowEventType.REQUEST_COMPLETED, completed.id, actual_duration=minutes)
            await self._audit(
                "ASSISTANCE_REQUEST_COMPLETED",
                completed,
                f"Assistance request completed: {completed.type.value} ({completed.stage})",
                actual_duration=minutes,
                estimated_duration=completed.estimated_duration,
                response_summary=sorted(response) if isinstance(response, dict) else "completed",
            )
            await self._checkpoint(f"completed_{completed.id}")
            self._check_finished()
            await self._maybe_advance()
            return True

    async def fail_current(self, error: str) -> bool:
        """
        Report the active request as failed.

        Auto-resumable requests with retries left go back to queued after a
        backoff delay. Anything else fails terminally and stops auto-advance
        until retry_failed_request is called.
        """
        async with self._lock:
            request = self.state.current_request
            if request is None or request.status not in (RequestStatus.ACTIVE, RequestStatus.PAUSED):
                logger.warning("fail_current called with no active request")
                return False
            if request.id in self._retry_tasks:
                logger.warning(f"Request {request.id} already has a retry scheduled")
                return False

            decision = self.backoff.decide(
                attempt_number=request.retry_count + 1,
                barrier=barrier_for_assistance(request.type),
                max_attempts=self.config.max_retries + 1,
                base_delay_ms=self.config.base_delay_ms,
                auto_resumable=request.auto_resumable,
            )

            if decision.retry:
                retried = request.model_copy(update={"retry_count": request.retry_count + 1})
                self.state.queue[self.state.current_index] = retried
                logger.info(
                    f"Retrying request {request.id} in {decision.delay_ms}ms "
                    f"(retry {retried.retry_count}/{self.config.max_retries})"
                )
                self._retry_tasks[request.id] = asyncio.create_task(
                    self._requeue_after(request.id, decision.delay_ms),
                    name=f"camprush-retry-{request.id}",
                )
                self._emit(
                    WorkflowEventType.REQUEST_RETRY_SCHEDULED, request.id,
                    delay_ms=decision.delay_ms, retry_count=retried.retry_count, error=error,
                )
                await self._checkpoint(f"retry_scheduled_{request.id}")
                return True

            failed = request.model_copy(update={
                "status": RequestStatus.FAILED,
                "completed_at": utcnow(),
                "parent_response": {"error": error},
            })
            self.state.queue[self.state.current_index] = failed
            self.state.current_index = -1
            self.state.can_auto_resume = False
            self._last_error = error

            logger.error(f"Request {failed.id} failed: {error} ({decision.reason})")
            self._emit(WorkflowEventType.REQUEST_FAILED, failed.id, error=error, reason=decision.reason)
            await self._audit(
                "ASSISTANCE_REQUEST_FAILED",
                failed,
                f"Assistance request failed: {failed.type.value} ({error})",
                error_message=error,
                retry_count=failed.retry_count,
            )
            await self._notify(
                f"❌ Assistance step failed: {failed.stage}\n\n{error}",
                Priority.HIGH,
            )
            await self._checkpoint(f"failed_{failed.id}")
            await self._maybe_advance()
            return True

    async def pause(self) -> bool:
        """Stop processing. Only the active request is affected."""
        async with self._lock:
            self.state.is_processing = False
            request = self.state.current_request
            if request is not None and request.status == RequestStatus.ACTIVE:
                self.state.queue[self.state.current_index] = request.model_copy(
                    update={"status": RequestStatus.PAUSED}
                )
            logger.info("Workflow paused")
            self._emit(WorkflowEventType.WORKFLOW_PAUSED, request.id if request else None)
            await self._checkpoint("paused")
            return True

    async def resume(self) -> bool:
        """Re-enable processing and reactivate a paused request"""
        async with self._lock:
            self.state.is_processing = True
            self.state.can_auto_resume = True
            self._last_error = None
            request = self.state.current_request
            if request is not None and request.status == RequestStatus.PAUSED:
                self.state.queue[self.state.current_index] = request.model_copy(
                    update={"status": RequestStatus.ACTIVE}
                )
            logger.info("Workflow resumed")
            self._emit(WorkflowEventType.WORKFLOW_RESUMED, request.id if request else None)
            await self._checkpoint("resumed")
            await self._maybe_advance()
            return True

    async def retry_failed_request(self, request_id: str) -> bool:
        """Put a terminally failed request back in the queue with a fresh retry count"""
        async with self._lock:
            index = self.state.index_of(request_id)
            if index == -1 or self.state.queue[index].status != RequestStatus.FAILED:
                logger.warning(f"No failed request {request_id} to retry")
                return False

            self.state.queue[index] = self.state.queue[index].model_copy(update={
                "status": RequestStatus.QUEUED,
                "retry_count": 0,
                "parent_response": None,
                "started_at": None,
                "completed_at": None,
            })
            self.state.can_auto_resume = True
            self._last_error = None
            self._completed_announced = False

            logger.info(f"Retrying failed request {request_id}")
            self._emit(WorkflowEventType.REQUEST_QUEUED, request_id, retried=True)
            await self._maybe_advance()
            return True

    async def clear_completed_requests(self) -> int:
        """Drop completed requests from the queue. Returns how many were removed."""
        async with self._lock:
            current = self.state.current_request
            before = len(self.state.queue)
            self.state.queue = [r for r in self.state.queue if r.status != RequestStatus.COMPLETED]
            self.state.current_index = self.state.index_of(current.id) if current else -1
            removed = before - len(self.state.queue)
            logger.debug(f"Cleared {removed} completed requests")
            return removed

    async def maybe_advance(self) -> bool:
        async with self._lock:
            return await self._maybe_advance()

    # ========================================
    # Checkpoints
    # ========================================

    async def save_checkpoint(self, step_name: str = "workflow_checkpoint") -> Optional[str]:
        """Persist the full state. Returns the checkpoint id, or None on failure."""
        async with self._lock:
            return await self._checkpoint(step_name)

    async def restore_from_checkpoint(self) -> bool:
        """
        Load the latest checkpoint for this (session, user).

        Returns False and leaves the state untouched when there is no usable
        checkpoint; the caller keeps the fresh state.
        """
        async with self._lock:
            try:
                checkpoint = await self.store.load_latest_checkpoint(self.session_id, self.user_id)
            except Exception as e:
                logger.error(f"Failed to load checkpoint: {e}")
                return False

            if checkpoint is None:
                logger.info(f"No checkpoint for session {self.session_id}, starting fresh")
                return False

            try:
                restored = WorkflowState.model_validate({
                    **checkpoint.workflow_state,
                    "session_id": self.session_id,
                    "user_id": self.user_id,
                })
            except Exception as e:
                logger.error(f"Checkpoint {checkpoint.id} is corrupt, starting fresh: {e}")
                return False

            for task in self._retry_tasks.values():
                task.cancel()
            self._retry_tasks.clear()

            restored.last_checkpoint_id = checkpoint.id
            self.state = restored
            self.plan_context = {**checkpoint.plan_context, **self.plan_context}
            logger.info(
                f"Restored checkpoint {checkpoint.id}: {len(restored.queue)} requests, "
                f"{restored.overall_progress:.0f}% complete"
            )
            self._emit(WorkflowEventType.CHECKPOINT_RESTORED, checkpoint_id=checkpoint.id)
            return True

    async def close(self):
        """Cancel pending retries and drop subscribers"""
        tasks = list(self._retry_tasks.values())
        self._retry_tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._subscribers.clear()

    # ========================================
    # Internals (called with the lock held)
    # ========================================

    async def _start_next(self) -> bool:
        if self.active_count() > 0 or self.state.current_request is not None:
            return False

        index = next(
            (i for i, r in enumerate(self.state.queue) if r.status == RequestStatus.QUEUED),
            -1,
        )
        if index == -1:
            return False

        request = self.state.queue[index].model_copy(update={
            "status": RequestStatus.ACTIVE,
            "started_at": utcnow(),
        })
        self.state.queue[index] = request
        self.state.current_index = index

        logger.info(f"Started {request.type.value} request {request.id}")
        self._emit(WorkflowEventType.REQUEST_STARTED, request.id, type=request.type.value)

        if request.requires_parent_intervention:
            await self._notify(format_assistance_message(request), request.priority)

        await self._checkpoint(f"started_{request.id}")
        return True

    async def _maybe_advance(self) -> bool:
        if not (self.config.auto_start_next and self.state.is_processing and self.state.can_auto_resume):
            return False
        if self.state.current_request is not None:
            return False
        return await self._start_next()

    def _check_finished(self):
        if any(r.is_unprocessed for r in self.state.queue):
            return
        if self._completed_announced:
            return
        self._completed_announced = True
        logger.info(f"🎉 Assistance workflow for session {self.session_id} completed")
        self._emit(
            WorkflowEventType.WORKFLOW_COMPLETED,
            completed=self.completed_count,
            failed=self.failed_count,
        )

    async def _requeue_after(self, request_id: str, delay_ms: int):
        try:
            await asyncio.sleep(delay_ms / 1000)
            async with self._lock:
                self._retry_tasks.pop(request_id, None)
                index = self.state.index_of(request_id)
                if index == -1:
                    return
                request = self.state.queue[index]
                if request.status not in (RequestStatus.ACTIVE, RequestStatus.PAUSED):
                    return

                self.state.queue[index] = request.model_copy(update={
                    "status": RequestStatus.QUEUED,
                    "started_at": None,
                })
                if self.state.current_index == index:
                    self.state.current_index = -1

                logger.info(f"Request {request_id} requeued for retry")
                self._emit(WorkflowEventType.REQUEST_QUEUED, request_id, retry_count=request.retry_count)
                await self._maybe_advance()
        except asyncio.CancelledError:
            self._retry_tasks.pop(request_id, None)
            raise

    def _cancel_retry(self, request_id: str):
        task = self._retry_tasks.pop(request_id, None)
        if task is not None:
            task.cancel()

    async def _checkpoint(self, step_name: str) -> Optional[str]:
        checkpoint = Checkpoint(
            session_id=self.session_id,
            user_id=self.user_id,
            step_name=step_name,
            workflow_state=self.state.model_dump(mode="json"),
            plan_context=self.plan_context,
        )
        try:
            checkpoint_id = await self.store.save_checkpoint(checkpoint)
        except Exception as e:
            logger.error(f"Failed to save checkpoint {step_name}: {e}")
            self._last_error = f"Checkpoint failed: {e}"
            return None

        self.state.last_checkpoint_id = checkpoint_id
        self._emit(WorkflowEventType.CHECKPOINT_SAVED, checkpoint_id=checkpoint_id, step=step_name)
        return checkpoint_id

    async def _audit(self, event_type: str, request: AssistanceRequest, summary: str, **data):
        event = AuditEvent(
            event_type=event_type,
            user_id=self.user_id,
            session_id=self.session_id,
            summary=summary,
            data={
                "request_id": request.id,
                "request_type": request.type.value,
                "stage": request.stage,
                **data,
            },
        )
        try:
            await self.store.append_audit(event)
        except Exception as e:
            logger.error(f"Failed to write audit event {event_type}: {e}")
            self._last_error = f"Audit failed: {e}"

    async def _notify(self, message: str, priority: Priority):
        if self.notifier is None:
            return
        try:
            result = await self.notifier.notify(self.user_id, message, priority)
            if not result.delivered:
                logger.warning(f"Notification to {self.user_id} was not delivered")
        except Exception as e:
            logger.error(f"Notification to {self.user_id} failed: {e}")
