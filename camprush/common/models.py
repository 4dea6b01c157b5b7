"""
Data models for the CampRush registration engine
"""
import uuid
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any
from enum import Enum

import pytz
from pydantic import BaseModel, ConfigDict, Field, model_validator

from .errors import InvalidTransitionError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class OpenStrategy(str, Enum):
    MANUAL = "manual"
    PUBLISHED = "published"
    AUTO = "auto"


class AccountMode(str, Enum):
    ASSIST = "assist"
    AUTOPILOT = "autopilot"


class FallbackStrategy(str, Enum):
    ALERT_PARENT = "alert_parent"
    KEEP_TRYING = "keep_trying"


class ErrorRecoveryMode(str, Enum):
    RESTART = "restart"
    CONTINUE_FROM_STEP = "continue_from_step"


class PreflightStatus(str, Enum):
    UNKNOWN = "unknown"
    PASSED = "passed"
    FAILED = "failed"


class AttemptStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    FAILED = "failed"
    BLOCKED = "blocked"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_ATTEMPT_STATUSES


TERMINAL_ATTEMPT_STATUSES = frozenset({
    AttemptStatus.SUCCESS,
    AttemptStatus.FAILED,
    AttemptStatus.BLOCKED,
    AttemptStatus.CANCELLED,
})


class BarrierType(str, Enum):
    NONE = "none"
    CAPTCHA = "captcha"
    LOGIN_REQUIRED = "login_required"
    PAYMENT_REQUIRED = "payment_required"
    QUEUE = "queue"
    UNKNOWN_ERROR = "unknown_error"


class AssistanceType(str, Enum):
    ACCOUNT_CREATION = "account_creation"
    CAPTCHA = "captcha"
    PAYMENT = "payment"
    FORM_COMPLETION = "form_completion"


class RequestStatus(str, Enum):
    QUEUED = "queued"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class SchedulerState(str, Enum):
    IDLE = "idle"
    ARMED = "armed"
    PREPARING = "preparing"
    FIRING = "firing"


class RegistrationPlan(BaseModel):
    """One registration plan per (user, session)"""
    id: str = Field(default_factory=new_id)
    user_id: str
    session_id: str
    open_strategy: OpenStrategy = OpenStrategy.MANUAL
    open_at: Optional[datetime] = None
    detect_url: Optional[str] = None
    registration_url: Optional[str] = None
    timezone: str = "UTC"
    account_mode: AccountMode = AccountMode.ASSIST
    retry_attempts: int = Field(default=3, ge=0)
    retry_delay_ms: int = Field(default=1000, ge=0)
    fallback_strategy: FallbackStrategy = FallbackStrategy.ALERT_PARENT
    error_recovery: ErrorRecoveryMode = ErrorRecoveryMode.RESTART
    preflight_status: PreflightStatus = PreflightStatus.UNKNOWN
    created_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _check_strategy(self) -> "RegistrationPlan":
        if self.open_strategy == OpenStrategy.MANUAL and self.open_at is None:
            raise ValueError("open_at is required for the manual open strategy")
        if self.open_strategy != OpenStrategy.MANUAL and not self.detect_url:
            raise ValueError(f"detect_url is required for the {self.open_strategy.value} open strategy")
        if self.open_at is not None and self.open_at.tzinfo is None:
            self.open_at = pytz.timezone(self.timezone).localize(self.open_at)
        return self

    @property
    def is_exact(self) -> bool:
        """Manual plans fire at an exact second; the others poll for an open signal"""
        return self.open_strategy == OpenStrategy.MANUAL

    @property
    def max_attempts(self) -> int:
        return self.retry_attempts + 1

    @property
    def submit_url(self) -> Optional[str]:
        return self.registration_url or self.detect_url

    @property
    def probe_url(self) -> Optional[str]:
        """URL used for clock sync and pre-connect probes"""
        return self.detect_url or self.registration_url


class AttemptRecord(BaseModel):
    """
    Record of one execution try of a plan.

    Records are frozen: every state change produces a new record which is
    appended to the store next to its predecessors.
    """
    model_config = ConfigDict(frozen=True)

    plan_id: str
    attempt_number: int = Field(ge=1)
    status: AttemptStatus = AttemptStatus.PENDING
    nonce: str = Field(default_factory=lambda: uuid.uuid4().hex)
    started_at: Optional[datetime] = None
    preconnected_at: Optional[datetime] = None
    submitted_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    latency_ms: Optional[float] = None
    clock_drift_ms: Optional[float] = None
    clock_synced: bool = False
    queue_detected: bool = False
    queue_position: Optional[int] = None
    barrier: Optional[BarrierType] = None
    confirmation_id: Optional[str] = None
    error_message: Optional[str] = None
    transient: bool = False
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def transition(self, status: AttemptStatus, **changes) -> "AttemptRecord":
        """Return a copy of this record in a new status"""
        if self.is_terminal:
            raise InvalidTransitionError(
                f"Attempt #{self.attempt_number} of plan {self.plan_id} is already {self.status.value}"
            )
        if status.is_terminal and "completed_at" not in changes:
            changes["completed_at"] = utcnow()
        return self.model_copy(update={"status": status, **changes})

    def mark_success(self, confirmation_id: Optional[str], **changes) -> "AttemptRecord":
        return self.transition(
            AttemptStatus.SUCCESS,
            barrier=BarrierType.NONE,
            confirmation_id=confirmation_id,
            **changes,
        )

    def mark_blocked(self, barrier: BarrierType, **changes) -> "AttemptRecord":
        return self.transition(AttemptStatus.BLOCKED, barrier=barrier, **changes)

    def mark_failed(self, error: str, **changes) -> "AttemptRecord":
        changes.setdefault("barrier", BarrierType.UNKNOWN_ERROR)
        return self.transition(AttemptStatus.FAILED, error_message=error, **changes)

    def mark_cancelled(self, reason: str = "Plan cancelled") -> "AttemptRecord":
        return self.transition(AttemptStatus.CANCELLED, error_message=reason)


class AssistanceRequest(BaseModel):
    """A step that needs a parent or guardian to act"""
    id: str = Field(default_factory=new_id)
    type: AssistanceType
    stage: str
    status: RequestStatus = RequestStatus.QUEUED
    priority: Priority = Priority.MEDIUM
    context: Dict[str, Any] = Field(default_factory=dict)
    estimated_duration: int = 5  # minutes
    actual_duration: Optional[int] = None  # minutes
    parent_response: Optional[Any] = None
    requires_parent_intervention: bool = True
    auto_resumable: bool = False
    likelihood: Optional[float] = None  # advisory, from upstream barrier analysis
    retry_count: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_unprocessed(self) -> bool:
        return self.status in (RequestStatus.QUEUED, RequestStatus.ACTIVE, RequestStatus.PAUSED)


class WorkflowState(BaseModel):
    """Assistance workflow for one (session, user) pair"""
    session_id: str
    user_id: str
    provider_url: str = ""
    queue: List[AssistanceRequest] = Field(default_factory=list)
    current_index: int = -1
    is_processing: bool = True
    can_auto_resume: bool = True
    last_checkpoint_id: Optional[str] = None

    @property
    def current_request(self) -> Optional[AssistanceRequest]:
        if 0 <= self.current_index < len(self.queue):
            return self.queue[self.current_index]
        return None

    @property
    def overall_progress(self) -> float:
        """Percentage of queued requests that completed"""
        if not self.queue:
            return 0.0
        completed = sum(1 for r in self.queue if r.status == RequestStatus.COMPLETED)
        return completed / len(self.queue) * 100

    @property
    def estimated_time_remaining(self) -> int:
        """Minutes of estimated human work left"""
        return sum(r.estimated_duration for r in self.queue if r.is_unprocessed)

    def index_of(self, request_id: str) -> int:
        for index, request in enumerate(self.queue):
            if request.id == request_id:
                return index
        return -1


class WorkflowEventType(str, Enum):
    REQUEST_QUEUED = "request_queued"
    REQUEST_STARTED = "request_started"
    REQUEST_COMPLETED = "request_completed"
    REQUEST_FAILED = "request_failed"
    REQUEST_RETRY_SCHEDULED = "request_retry_scheduled"
    WORKFLOW_COMPLETED = "workflow_completed"
    WORKFLOW_PAUSED = "workflow_paused"
    WORKFLOW_RESUMED = "workflow_resumed"
    CHECKPOINT_SAVED = "checkpoint_saved"
    CHECKPOINT_RESTORED = "checkpoint_restored"


class WorkflowEvent(BaseModel):
    """Domain event emitted by the assistance workflow"""
    type: WorkflowEventType
    session_id: str
    user_id: str
    request_id: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    at: datetime = Field(default_factory=utcnow)


class Checkpoint(BaseModel):
    """Immutable snapshot of workflow state used for resume"""
    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str = Field(default_factory=new_id)
    session_id: str
    user_id: str
    step_name: str = "workflow_checkpoint"
    created_at: datetime = Field(default_factory=utcnow)
    workflow_state: Dict[str, Any] = Field(default_factory=dict)
    plan_context: Dict[str, Any] = Field(default_factory=dict)
    version: int = 1


class AuditEvent(BaseModel):
    """Append-only compliance record"""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    event_type: str
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    summary: str = ""
    data: Dict[str, Any] = Field(default_factory=dict)
    at: datetime = Field(default_factory=utcnow)


class ClockSyncResult(BaseModel):
    """Outcome of a clock sync probe"""
    synced: bool
    drift_ms: float = 0.0
    latency_ms: float = 0.0
    server_time: Optional[datetime] = None
    error: Optional[str] = None


class PublishedOpenTime(BaseModel):
    """Open time read from a provider page"""
    open_at: datetime
    confidence: float
    text: str = ""


class DetectionResult(BaseModel):
    """One poll of a detection page"""
    is_open: bool
    status_code: Optional[int] = None
    published: Optional[PublishedOpenTime] = None


class ExecutionSignal(BaseModel):
    """Structured signal from an automation step, input to the barrier classifier"""
    url: str = ""
    markers: List[str] = Field(default_factory=list)
    http_status: Optional[int] = None
    page_text: str = ""


class AutomationResult(BaseModel):
    """Result returned by an automation executor for one submission"""
    http_status: Optional[int] = None
    detected_markers: List[str] = Field(default_factory=list)
    success_indicator: bool = False
    confirmation_id: Optional[str] = None
    url: str = ""
    page_text: str = ""
    queue_position: Optional[int] = None

    def to_signal(self) -> ExecutionSignal:
        return ExecutionSignal(
            url=self.url,
            markers=self.detected_markers,
            http_status=self.http_status,
            page_text=self.page_text,
        )


class RetryDecision(BaseModel):
    retry: bool
    delay_ms: int = 0
    reason: str = ""


class TelemetryEvent(BaseModel):
    """Timing report for one attempt"""
    plan_id: str
    attempt_number: int
    status: AttemptStatus
    barrier: Optional[BarrierType] = None
    latency_ms: Optional[float] = None
    clock_drift_ms: Optional[float] = None
    clock_synced: bool = False
    queue_detected: bool = False
    queue_position: Optional[int] = None
    duration_ms: Optional[float] = None
    at: datetime = Field(default_factory=utcnow)


class NotificationResult(BaseModel):
    delivered: bool
    channels: int = 0


class NotificationPayload(BaseModel):
    """Notification content"""
    title: str
    message: str
    user_id: Optional[str] = None
    url: Optional[str] = None
    urgency: Priority = Priority.MEDIUM


class PreflightReport(BaseModel):
    plan_id: str
    status: PreflightStatus
    checks: List[str] = Field(default_factory=list)


class PlanStatus(BaseModel):
    """Read-only view of a plan for dashboards"""
    plan_id: str
    scheduler_state: SchedulerState = SchedulerState.IDLE
    current_attempt: Optional[AttemptRecord] = None
    current_barrier: Optional[BarrierType] = None
    overall_progress: float = 0.0
    estimated_time_remaining: int = 0
    finished: bool = False
    outcome: Optional[str] = None
