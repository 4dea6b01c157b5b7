"""
Configuration management for the CampRush registration engine
"""
import os
import yaml
from pathlib import Path
from datetime import datetime
from typing import Optional, List
from pydantic import BaseModel, Field
from dateutil import parser as date_parser
import pytz

from .models import (
    RegistrationPlan,
    OpenStrategy,
    AccountMode,
    FallbackStrategy,
    ErrorRecoveryMode,
)


class PlanConfig(BaseModel):
    id: Optional[str] = None
    user_id: str
    session_id: str
    open_strategy: OpenStrategy = OpenStrategy.MANUAL
    open_at: Optional[str] = None
    timezone: str = "America/Los_Angeles"
    detect_url: Optional[str] = None
    registration_url: Optional[str] = None
    account_mode: AccountMode = AccountMode.ASSIST
    retry_attempts: int = 3
    retry_delay_ms: int = 1000
    fallback_strategy: FallbackStrategy = FallbackStrategy.ALERT_PARENT
    error_recovery: ErrorRecoveryMode = ErrorRecoveryMode.RESTART

    @property
    def open_datetime(self) -> Optional[datetime]:
        if not self.open_at:
            return None
        tz = pytz.timezone(self.timezone)
        dt = date_parser.parse(self.open_at)
        if dt.tzinfo is None:
            dt = tz.localize(dt)
        return dt

    @property
    def plan_id(self) -> str:
        """Configured id, or one derived from session and user so reruns share history"""
        return self.id or f"{self.session_id}--{self.user_id}"

    def to_plan(self) -> RegistrationPlan:
        data = self.model_dump(exclude={"open_at", "id"})
        return RegistrationPlan(id=self.plan_id, open_at=self.open_datetime, **data)


class ScheduleConfig(BaseModel):
    timezone: str = "America/Los_Angeles"
    exact_lead_time_s: float = 60
    polling_lead_time_s: float = 120
    poll_interval_ms: int = 750
    polling_window_s: float = 300
    max_polls: int = 2000
    max_polls_per_second: float = 4.0
    early_start_ms: int = 0


class ClockSyncConfig(BaseModel):
    enabled: bool = True
    timeout: float = 3.0
    time_header: str = "Date"
    warn_drift_ms: float = 500


class RetryConfig(BaseModel):
    max_delay_ms: int = 60000


class WorkflowConfig(BaseModel):
    max_retries: int = 3
    base_delay_ms: int = 1000
    auto_start_next: bool = True
    event_history: int = 500


class ExecutorConfig(BaseModel):
    submit_timeout_s: float = 30.0


class EmailConfig(BaseModel):
    enabled: bool = False
    address: Optional[str] = None
    sendgrid_api_key: Optional[str] = None


class SMSConfig(BaseModel):
    enabled: bool = False
    phone: Optional[str] = None
    twilio_account_sid: Optional[str] = None
    twilio_auth_token: Optional[str] = None
    twilio_from_number: Optional[str] = None


class WebhookConfig(BaseModel):
    enabled: bool = False
    url: Optional[str] = None


class NotificationsConfig(BaseModel):
    console: bool = True
    email: EmailConfig = Field(default_factory=EmailConfig)
    sms: SMSConfig = Field(default_factory=SMSConfig)
    webhook: WebhookConfig = Field(default_factory=WebhookConfig)


class BrowserConfig(BaseModel):
    headless: bool = True
    slow_mo: int = 0
    user_agent: str = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"
    navigation_timeout_ms: int = 15000
    submit_selectors: List[str] = Field(default_factory=lambda: [
        'button[type="submit"]',
        'button:has-text("Register")',
        'button:has-text("Sign Up")',
        'button:has-text("Enroll")',
    ])
    success_selectors: List[str] = Field(default_factory=lambda: [
        'text="Registration Complete"',
        'text="Thank you for registering"',
        '[data-registration-status="confirmed"]',
    ])
    # Confirmation ids carry at least one digit, so "Registration complete" is not one
    confirmation_pattern: str = r"(?:confirmation|order|registration)\s*(?:#|number|no\.?|id)?\s*[:#]?\s*((?=[A-Z0-9-]*\d)[A-Z0-9-]{5,})"


class StorageConfig(BaseModel):
    backend: str = "json"
    directory: str = "state"
    checkpoint_retention: int = 5


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file: Optional[str] = "camprush.log"


class Config(BaseModel):
    """Main configuration class"""
    plan: PlanConfig
    schedule: ScheduleConfig = Field(default_factory=ScheduleConfig)
    clock_sync: ClockSyncConfig = Field(default_factory=ClockSyncConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    workflow: WorkflowConfig = Field(default_factory=WorkflowConfig)
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)
    notifications: NotificationsConfig = Field(default_factory=NotificationsConfig)
    browser: BrowserConfig = Field(default_factory=BrowserConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def from_yaml(cls, path: str | Path) -> "Config":
        """Load configuration from YAML file"""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        with open(path) as f:
            data = yaml.safe_load(f)

        return cls(**data)

    @classmethod
    def from_env(cls) -> "Config":
        """Load configuration from environment variables"""
        return cls(
            plan=PlanConfig(
                user_id=os.environ["CAMPRUSH_USER_ID"],
                session_id=os.environ["CAMPRUSH_SESSION_ID"],
                open_strategy=os.environ.get("CAMPRUSH_OPEN_STRATEGY", "manual"),
                open_at=os.environ.get("CAMPRUSH_OPEN_AT"),
                timezone=os.environ.get("CAMPRUSH_TIMEZONE", "America/Los_Angeles"),
                detect_url=os.environ.get("CAMPRUSH_DETECT_URL"),
                registration_url=os.environ.get("CAMPRUSH_REGISTRATION_URL"),
            )
        )

    def to_yaml(self, path: str | Path):
        """Save configuration to YAML file"""
        path = Path(path)
        with open(path, 'w') as f:
            yaml.dump(self.model_dump(mode="json"), f, default_flow_style=False)


def load_config(path: Optional[str] = None) -> Config:
    """Load configuration from file or environment"""
    if path:
        return Config.from_yaml(path)

    # Try default locations
    default_paths = [
        Path("config/config.yaml"),
        Path("config.yaml"),
        Path.home() / ".camprush" / "config.yaml",
    ]

    for p in default_paths:
        if p.exists():
            return Config.from_yaml(p)

    # Fall back to environment variables
    try:
        return Config.from_env()
    except KeyError as e:
        raise RuntimeError(
            f"No config file found and missing environment variable: {e}. "
            f"Create config/config.yaml or set CAMPRUSH_* environment variables."
        )
