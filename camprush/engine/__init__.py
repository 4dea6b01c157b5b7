"""
Registration engine
"""
from .attempt_scheduler import AttemptScheduler
from .barriers import classify, classify_result
from .clock_sync import ClockSyncEstimator
from .coordinator import RegistrationCoordinator
from .detection import OpenDetector
from .executor import SubmissionExecutor, LoggingTelemetrySink
from .orchestrator import AssistanceWorkflow
from .preflight import run_preflight
from .store import InMemoryStore, JsonFileStore, create_store

__all__ = [
    "AttemptScheduler",
    "classify",
    "classify_result",
    "ClockSyncEstimator",
    "RegistrationCoordinator",
    "OpenDetector",
    "SubmissionExecutor",
    "LoggingTelemetrySink",
    "AssistanceWorkflow",
    "run_preflight",
    "InMemoryStore",
    "JsonFileStore",
    "create_store",
]
