import os
import re

from pydantic import BaseModel, Field, field_validator
from typing import Optional
from enum import Enum
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

TIME_OF_DAY_RE = re.compile(r'^([01]\d|2[0-3]):[0-5]\d:[0-5]\d$')


class RunMode(str, Enum):
    SCHEDULED = "scheduled"
    MANUAL = "manual"


class RunState(str, Enum):
    IDLE = "idle"
    WAITING = "waiting"
    DISPATCHING = "dispatching"
    STOPPED = "stopped"


class RetryPolicy(str, Enum):
    SINGLE_ATTEMPT = "single_attempt"
    CONTINUOUS_RETRY = "continuous_retry"


class RollRule(str, Enum):
    NEXT_OCCURRENCE = "next_occurrence"  # today if still ahead, else tomorrow
    NEXT_DAY = "next_day"                # always the following calendar day


class OutcomeKind(str, Enum):
    SUCCESS = "success"
    RETRYABLE = "retryable"
    TERMINAL = "terminal"


class FailureReason(str, Enum):
    TRANSPORT = "transport"
    HTTP_STATUS = "http_status"
    PARSE_ERROR = "parse_error"
    NOT_ELIGIBLE = "not_eligible"
    API_ERROR = "api_error"
    AUTH_INVALID = "auth_invalid"
    NOT_GRANTED = "not_granted"
    UNKNOWN = "unknown"


class FinalStatus(str, Enum):
    SUCCESS = "success"
    TERMINAL_FAILURE = "terminal_failure"
    CANCELLED = "cancelled"
    EXHAUSTED = "exhausted"


class AppRule(str, Enum):
    """Application-level checks whose relative order is configurable."""
    NOT_ELIGIBLE = "not_eligible"
    API_ERROR = "api_error"
    AUTH_INVALID = "auth_invalid"


DEFAULT_ORDER = (AppRule.NOT_ELIGIBLE, AppRule.API_ERROR, AppRule.AUTH_INVALID)
AUTH_FIRST_ORDER = (AppRule.NOT_ELIGIBLE, AppRule.AUTH_INVALID, AppRule.API_ERROR)


def _check_zone(v: str) -> str:
    try:
        ZoneInfo(v)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValueError(f"Unknown time zone: '{v}'")
    return v


def _check_order(v: list[AppRule]) -> list[AppRule]:
    if sorted(v) != sorted(AppRule):
        raise ValueError("classification_order must list every rule exactly once")
    return v


class UnlockSettings(BaseModel):
    """Process-wide configuration. Every field can be overridden with a
    ``BLUNLOCK_<FIELD>`` environment variable (lists are comma separated)."""

    api_url: str = "https://sgp-api.buy.mi.com/bbs/api/global/apply/bl-auth"
    api_host: str = "sgp-api.buy.mi.com"
    user_agent: str = "okhttp/4.12.0"
    ntp_servers: list[str] = Field(
        default_factory=lambda: ["time.google.com", "time.cloudflare.com", "pool.ntp.org", "ntp.aliyun.com"],
        min_length=1,
    )
    ntp_timeout: float = Field(default=5.0, gt=0)
    ping_count: int = Field(default=3, ge=0, le=20)
    ping_timeout: float = Field(default=2.0, gt=0)
    default_latency_ms: int = Field(default=180, ge=0)
    poll_interval: float = Field(default=0.1, gt=0, le=5.0)
    retry_delay: float = Field(default=0.25, ge=0)
    request_timeout: float = Field(default=10.0, gt=0)
    target_time: str = Field(default="00:00:00", pattern=TIME_OF_DAY_RE.pattern)
    target_zone: str = "Asia/Shanghai"
    roll: RollRule = RollRule.NEXT_OCCURRENCE
    scheduled_policy: RetryPolicy = RetryPolicy.SINGLE_ATTEMPT
    manual_policy: RetryPolicy = RetryPolicy.CONTINUOUS_RETRY
    max_attempts: Optional[int] = Field(default=None, ge=1)
    classification_order: list[AppRule] = Field(default_factory=lambda: list(DEFAULT_ORDER))

    @field_validator('target_zone')
    @classmethod
    def validate_zone(cls, v: str) -> str:
        return _check_zone(v)

    @field_validator('classification_order')
    @classmethod
    def validate_order(cls, v: list[AppRule]) -> list[AppRule]:
        return _check_order(v)

    def policy_for(self, mode: RunMode) -> RetryPolicy:
        return self.scheduled_policy if mode == RunMode.SCHEDULED else self.manual_policy

    @classmethod
    def from_env(cls, environ=None, prefix: str = "BLUNLOCK_") -> "UnlockSettings":
        environ = os.environ if environ is None else environ
        overrides = {}
        for name, info in cls.model_fields.items():
            raw = environ.get(prefix + name.upper())
            if raw is None or raw == "":
                continue
            if name in ("ntp_servers", "classification_order"):
                overrides[name] = [p.strip() for p in raw.split(",") if p.strip()]
            else:
                overrides[name] = raw
        return cls.model_validate(overrides)


class ConfigRequest(BaseModel):
    credential: Optional[str] = Field(default=None, description="Raw cookie header (kept if omitted)")
    target_time: str = Field(default="00:00:00", pattern=TIME_OF_DAY_RE.pattern)
    target_zone: str = "Asia/Shanghai"
    roll: RollRule = RollRule.NEXT_OCCURRENCE
    scheduled_policy: RetryPolicy = RetryPolicy.SINGLE_ATTEMPT
    manual_policy: RetryPolicy = RetryPolicy.CONTINUOUS_RETRY
    retry_delay: float = Field(default=0.25, ge=0.0, le=10.0)
    max_attempts: Optional[int] = Field(default=None, ge=1, le=10000)

    @field_validator('target_zone')
    @classmethod
    def validate_zone(cls, v: str) -> str:
        return _check_zone(v)


class ConfigResponse(BaseModel):
    target_time: str
    target_zone: str
    roll: RollRule
    scheduled_policy: RetryPolicy
    manual_policy: RetryPolicy
    retry_delay: float
    max_attempts: Optional[int] = None
    credential_set: bool


class CalibrationResult(BaseModel):
    time_source: str
    authoritative_ms: int
    latency_ms: int
    latency_samples: int
    latency_fallback: bool
    arrival_ms: int
    send_ms: int
    arrival: str
    send: str
    wait_seconds: float


class OutcomeResult(BaseModel):
    status: FinalStatus
    attempts: int
    reason: Optional[FailureReason] = None
    message: str = ""


class ModeStatus(BaseModel):
    mode: RunMode
    state: RunState = RunState.IDLE
    running: bool = False
    attempts: int = 0
    send_ms: Optional[int] = None
    last_outcome: Optional[OutcomeResult] = None


class StatusResponse(BaseModel):
    modes: list[ModeStatus] = []


class WSEvent(BaseModel):
    type: str  # log, state, countdown, schedule, outcome
    data: dict = {}
    timestamp: float = 0.0
