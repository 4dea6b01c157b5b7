"""
Common utilities for the CampRush engine
"""
from .config import Config, load_config
from .errors import (
    CampRushError,
    ClockSyncError,
    InvalidTransitionError,
    AttemptInProgressError,
    DuplicateSubmissionError,
    DetectionTimeout,
    StoreError,
)
from .models import (
    RegistrationPlan,
    AttemptRecord,
    AttemptStatus,
    BarrierType,
    AssistanceRequest,
    AssistanceType,
    RequestStatus,
    WorkflowState,
    WorkflowEvent,
    WorkflowEventType,
    Checkpoint,
    NotificationPayload,
)
from .notifications import NotificationManager
from .scheduler import PrecisionScheduler, RateLimiter, BackoffPolicy

__all__ = [
    "Config",
    "load_config",
    "CampRushError",
    "ClockSyncError",
    "InvalidTransitionError",
    "AttemptInProgressError",
    "DuplicateSubmissionError",
    "DetectionTimeout",
    "StoreError",
    "RegistrationPlan",
    "AttemptRecord",
    "AttemptStatus",
    "BarrierType",
    "AssistanceRequest",
    "AssistanceType",
    "RequestStatus",
    "WorkflowState",
    "WorkflowEvent",
    "WorkflowEventType",
    "Checkpoint",
    "NotificationPayload",
    "NotificationManager",
    "PrecisionScheduler",
    "RateLimiter",
    "BackoffPolicy",
]
