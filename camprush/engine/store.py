"""
Data store implementations

InMemoryStore keeps everything in process memory (tests, dry runs).
JsonFileStore persists to a state directory so a crashed run can resume.
"""
import json
import logging
import re
from collections import defaultdict
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from pydantic import ValidationError

from ..common.config import StorageConfig
from ..common.errors import StoreError
from ..common.interfaces import DataStore
from ..common.models import AttemptRecord, AuditEvent, Checkpoint, RegistrationPlan

logger = logging.getLogger(__name__)


class InMemoryStore(DataStore):
    """Store state in local memory. Data is lost when the process exits."""

    def __init__(self, checkpoint_retention: int = 5):
        self.checkpoint_retention = checkpoint_retention
        self._plans: Dict[str, RegistrationPlan] = {}
        self._attempts: Dict[str, List[AttemptRecord]] = defaultdict(list)
        self._checkpoints: Dict[Tuple[str, str], List[Checkpoint]] = defaultdict(list)
        self._audit: List[AuditEvent] = []

    async def load_plan(self, plan_id: str) -> Optional[RegistrationPlan]:
        return self._plans.get(plan_id)

    async def save_plan(self, plan: RegistrationPlan) -> None:
        self._plans[plan.id] = plan

    async def append_attempt(self, record: AttemptRecord) -> None:
        self._attempts[record.plan_id].append(record)

    async def list_attempts(self, plan_id: str) -> List[AttemptRecord]:
        return list(self._attempts.get(plan_id, []))

    async def load_latest_checkpoint(self, session_id: str, user_id: str) -> Optional[Checkpoint]:
        checkpoints = self._checkpoints.get((session_id, user_id))
        return checkpoints[-1] if checkpoints else None

    async def save_checkpoint(self, checkpoint: Checkpoint) -> str:
        history = self._checkpoints[(checkpoint.session_id, checkpoint.user_id)]
        history.append(checkpoint)
        del history[:-self.checkpoint_retention]
        return checkpoint.id

    async def append_audit(self, event: AuditEvent) -> None:
        self._audit.append(event)

    async def list_audit(self, user_id: Optional[str] = None) -> List[AuditEvent]:
        return [e for e in self._audit if user_id is None or e.user_id == user_id]


def _safe_name(value: str) -> str:
    return re.sub(r"[^A-Za-z0-9_.-]", "_", value)


class JsonFileStore(DataStore):
    """
    File-backed store.

    Layout under the state directory:
        plans/<plan_id>.json
        attempts/<plan_id>.jsonl        one record per line, append only
        checkpoints/<session>__<user>.json   last N checkpoints, newest last
        audit.jsonl                     compliance audit log, append only
    """

    def __init__(self, directory: str | Path, checkpoint_retention: int = 5):
        self.directory = Path(directory)
        self.checkpoint_retention = checkpoint_retention
        for sub in ("plans", "attempts", "checkpoints"):
            (self.directory / sub).mkdir(parents=True, exist_ok=True)

    def _plan_path(self, plan_id: str) -> Path:
        return self.directory / "plans" / f"{_safe_name(plan_id)}.json"

    def _attempts_path(self, plan_id: str) -> Path:
        return self.directory / "attempts" / f"{_safe_name(plan_id)}.jsonl"

    def _audit_path(self) -> Path:
        return self.directory / "audit.jsonl"

    def _checkpoint_path(self, session_id: str, user_id: str) -> Path:
        return self.directory / "checkpoints" / f"{_safe_name(session_id)}__{_safe_name(user_id)}.json"

    async def load_plan(self, plan_id: str) -> Optional[RegistrationPlan]:
        path = self._plan_path(plan_id)
        if not path.exists():
            return None
        try:
            with open(path) as f:
                return RegistrationPlan.model_validate(json.load(f))
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            raise StoreError(f"Failed to load plan {plan_id}: {e}") from e

    async def save_plan(self, plan: RegistrationPlan) -> None:
        try:
            with open(self._plan_path(plan.id), 'w') as f:
                f.write(plan.model_dump_json(indent=2))
        except OSError as e:
            raise StoreError(f"Failed to save plan {plan.id}: {e}") from e
        logger.debug(f"Plan {plan.id} saved")

    async def append_attempt(self, record: AttemptRecord) -> None:
        try:
            with open(self._attempts_path(record.plan_id), 'a') as f:
                f.write(record.model_dump_json() + "\n")
        except OSError as e:
            raise StoreError(f"Failed to append attempt for plan {record.plan_id}: {e}") from e

    async def list_attempts(self, plan_id: str) -> List[AttemptRecord]:
        return self._read_jsonl(self._attempts_path(plan_id), AttemptRecord)

    def _read_jsonl(self, path: Path, model) -> list:
        if not path.exists():
            return []

        records = []
        with open(path) as f:
            for line_no, line in enumerate(f, 1):
                if not line.strip():
                    continue
                try:
                    records.append(model.model_validate_json(line))
                except ValidationError as e:
                    logger.warning(f"Skipping bad line {line_no} in {path}: {e}")
        return records

    def _read_checkpoints(self, path: Path) -> list:
        if not path.exists():
            return []
        try:
            with open(path) as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Checkpoint file {path} is unreadable: {e}")
            return []
        return data if isinstance(data, list) else []

    async def load_latest_checkpoint(self, session_id: str, user_id: str) -> Optional[Checkpoint]:
        path = self._checkpoint_path(session_id, user_id)
        for raw in reversed(self._read_checkpoints(path)):
            try:
                return Checkpoint.model_validate(raw)
            except ValidationError as e:
                logger.warning(f"Skipping invalid checkpoint in {path}: {e}")
        return None

    async def save_checkpoint(self, checkpoint: Checkpoint) -> str:
        path = self._checkpoint_path(checkpoint.session_id, checkpoint.user_id)
        history = self._read_checkpoints(path)
        history.append(checkpoint.model_dump(mode="json"))
        history = history[-self.checkpoint_retention:]

        try:
            tmp = path.with_suffix(".tmp")
            with open(tmp, 'w') as f:
                json.dump(history, f, indent=2, default=str)
            tmp.replace(path)
        except OSError as e:
            raise StoreError(f"Failed to save checkpoint {checkpoint.id}: {e}") from e

        logger.debug(f"Checkpoint {checkpoint.id} saved to {path}")
        return checkpoint.id

    async def append_audit(self, event: AuditEvent) -> None:
        try:
            with open(self._audit_path(), 'a') as f:
                f.write(event.model_dump_json() + "\n")
        except OSError as e:
            raise StoreError(f"Failed to append audit event {event.event_type}: {e}") from e

    async def list_audit(self, user_id: Optional[str] = None) -> List[AuditEvent]:
        events = self._read_jsonl(self._audit_path(), AuditEvent)
        return [e for e in events if user_id is None or e.user_id == user_id]


def create_store(config: StorageConfig) -> DataStore:
    """Build the store named by the storage config"""
    if config.backend == "memory":
        return InMemoryStore(checkpoint_retention=config.checkpoint_retention)
    if config.backend == "json":
        return JsonFileStore(config.directory, checkpoint_retention=config.checkpoint_retention)
    raise ValueError(f"Unknown storage backend: {config.backend}")
