"""
Interfaces to the collaborators the engine drives but does not own.

Storage, notification delivery, browser automation and telemetry are all
reached through these narrow contracts.
"""
from abc import ABC, abstractmethod
from typing import List, Optional

from .models import (
    AttemptRecord,
    AuditEvent,
    AutomationResult,
    Checkpoint,
    NotificationResult,
    Priority,
    RegistrationPlan,
    TelemetryEvent,
)


class DataStore(ABC):
    """Persistence for plans, attempts, checkpoints and the audit log"""

    @abstractmethod
    async def load_plan(self, plan_id: str) -> Optional[RegistrationPlan]:
        pass

    @abstractmethod
    async def save_plan(self, plan: RegistrationPlan) -> None:
        pass

    @abstractmethod
    async def append_attempt(self, record: AttemptRecord) -> None:
        """Append an attempt record. Earlier records are never modified."""
        pass

    @abstractmethod
    async def list_attempts(self, plan_id: str) -> List[AttemptRecord]:
        pass

    @abstractmethod
    async def load_latest_checkpoint(self, session_id: str, user_id: str) -> Optional[Checkpoint]:
        pass

    @abstractmethod
    async def save_checkpoint(self, checkpoint: Checkpoint) -> str:
        """Persist a checkpoint and return its id"""
        pass

    @abstractmethod
    async def append_audit(self, event: AuditEvent) -> None:
        """Append a compliance audit event"""
        pass

    @abstractmethod
    async def list_audit(self, user_id: Optional[str] = None) -> List[AuditEvent]:
        pass


class AutomationExecutor(ABC):
    """Drives the provider's registration form"""

    @abstractmethod
    async def submit(self, plan: RegistrationPlan, nonce: str) -> AutomationResult:
        """Submit the registration, passing the nonce as idempotency token"""
        pass

    async def preconnect(self, plan: RegistrationPlan) -> bool:
        """Warm up connections before submitting. Returns False if unsupported."""
        return False


class Notifier(ABC):
    """Delivers messages to a parent or guardian"""

    @abstractmethod
    async def notify(self, user_id: str, message: str, priority: Priority) -> NotificationResult:
        pass


class TelemetrySink(ABC):
    """Receives per-attempt timing reports"""

    @abstractmethod
    async def emit(self, event: TelemetryEvent) -> None:
        pass
