import os
import random
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class JobState(str, Enum):
    processing = "PROCESSING"
    polling = "POLLING"
    complete = "COMPLETE"
    failed = "FAILED"


class LastOperationState(str, Enum):
    initial = "initial"
    in_progress = "in progress"
    succeeded = "succeeded"
    failed = "failed"


class DeploymentReason(str, Enum):
    deploying = "DEPLOYING"
    canceling = "CANCELING"
    deployed = "DEPLOYED"
    canceled = "CANCELED"
    superseded = "SUPERSEDED"
    degenerate = "DEGENERATE"


class Operation(BaseModel):
    """A read-only snapshot of a remote asynchronous operation."""

    model_config = ConfigDict(frozen=True)

    identifier: str
    state: str
    description: Optional[str] = None
    raw_response: Dict[str, Any] = Field(default_factory=dict)


class PollPolicy(BaseModel):
    """Controls spacing, bounds and terminal-state classification of one polling call.

    ``delay_function`` takes precedence over the interval/backoff settings when set.
    It receives the number of attempts made so far and returns the delay in seconds.
    """

    model_config = ConfigDict(frozen=True)

    interval: float = 2.0
    backoff_factor: float = 1.0
    max_delay: Optional[float] = None
    jitter: bool = False
    delay_function: Optional[Callable[[int], float]] = None
    max_attempts: Optional[int] = None
    timeout: Optional[float] = None
    success_states: FrozenSet[str] = frozenset()
    failure_states: FrozenSet[str] = frozenset()
    fetch_error_delay: Optional[float] = None

    @field_validator("interval")
    @classmethod
    def _positive_interval(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("interval must be greater than 0")
        return value

    @field_validator("backoff_factor")
    @classmethod
    def _non_shrinking_backoff(cls, value: float) -> float:
        if value < 1.0:
            raise ValueError("backoff_factor must be at least 1.0")
        return value

    @field_validator("max_attempts")
    @classmethod
    def _positive_attempts(cls, value: Optional[int]) -> Optional[int]:
        if value is not None and value < 1:
            raise ValueError("max_attempts must be at least 1")
        return value

    @field_validator("timeout", "max_delay", "fetch_error_delay")
    @classmethod
    def _positive_seconds(cls, value: Optional[float]) -> Optional[float]:
        if value is not None and value <= 0:
            raise ValueError("durations must be greater than 0")
        return value

    @model_validator(mode="after")
    def _check_bounds_and_states(self) -> "PollPolicy":
        if self.max_attempts is None and self.timeout is None:
            raise ValueError("at least one of max_attempts or timeout must be set")
        if not self.success_states:
            raise ValueError("success_states must not be empty")
        overlap = self.success_states & self.failure_states
        if overlap:
            raise ValueError(f"states cannot be both success and failure: {sorted(overlap)}")
        return self

    @property
    def terminal_states(self) -> FrozenSet[str]:
        return self.success_states | self.failure_states

    def is_terminal(self, state: str) -> bool:
        return state in self.terminal_states

    def is_success(self, state: str) -> bool:
        return state in self.success_states

    def delay_for(self, attempt: int) -> float:
        """Returns the wait before the attempt following ``attempt`` completed ones."""
        if self.delay_function is not None:
            return self.delay_function(attempt)

        delay = self.interval * (self.backoff_factor ** max(attempt - 1, 0))
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)

        # Add random jitter between 0-20% of the delay
        if self.jitter:
            delay *= 1 + 0.2 * random.random()
        return delay

    @classmethod
    def for_jobs(cls, **overrides: Any) -> "PollPolicy":
        settings: Dict[str, Any] = dict(
            interval=2.0,
            timeout=300.0,
            success_states=frozenset({JobState.complete.value}),
            failure_states=frozenset({JobState.failed.value}),
        )
        settings.update(overrides)
        return cls(**settings)

    @classmethod
    def for_last_operation(cls, **overrides: Any) -> "PollPolicy":
        settings: Dict[str, Any] = dict(
            interval=10.0,
            max_attempts=30,
            success_states=frozenset({LastOperationState.succeeded.value}),
            failure_states=frozenset({LastOperationState.failed.value}),
        )
        settings.update(overrides)
        return cls(**settings)

    @classmethod
    def for_bindings(cls, **overrides: Any) -> "PollPolicy":
        settings: Dict[str, Any] = dict(interval=5.0, max_attempts=20)
        settings.update(overrides)
        return cls.for_last_operation(**settings)

    @classmethod
    def for_deployments(cls, **overrides: Any) -> "PollPolicy":
        settings: Dict[str, Any] = dict(
            interval=2.0,
            timeout=600.0,
            success_states=frozenset({DeploymentReason.deployed.value}),
            failure_states=frozenset(
                {
                    DeploymentReason.canceled.value,
                    DeploymentReason.superseded.value,
                    DeploymentReason.degenerate.value,
                }
            ),
        )
        settings.update(overrides)
        return cls(**settings)


class APIError(BaseModel):
    code: int = 0
    title: str = ""
    detail: str = ""

    def __str__(self) -> str:
        return f"{self.title}: {self.detail} (code: {self.code})"


class JobWarning(BaseModel):
    detail: str = ""


class Job(BaseModel):
    guid: str
    operation: str = ""
    state: str
    errors: List[APIError] = Field(default_factory=list)
    warnings: List[JobWarning] = Field(default_factory=list)

    def error_summary(self) -> Optional[str]:
        if not self.errors:
            return None
        if len(self.errors) == 1:
            return self.errors[0].detail
        lines = [f"  {index}. {error.detail}" for index, error in enumerate(self.errors, start=1)]
        return "multiple errors:\n" + "\n".join(lines)

    def to_operation(self) -> Operation:
        return Operation(
            identifier=self.guid,
            state=self.state,
            description=self.error_summary(),
            raw_response=self.model_dump(),
        )


class LastOperation(BaseModel):
    type: str = ""
    state: str
    description: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


def _last_operation_snapshot(
    guid: str, last_operation: Optional[LastOperation], raw: Dict[str, Any]
) -> Operation:
    # Resources without a last operation (e.g. user-provided instances) have nothing pending
    if last_operation is None:
        return Operation(
            identifier=guid, state=LastOperationState.succeeded.value, raw_response=raw
        )
    return Operation(
        identifier=guid,
        state=last_operation.state,
        description=last_operation.description or None,
        raw_response=raw,
    )


class ServiceInstance(BaseModel):
    guid: str
    name: str = ""
    type: str = ""
    last_operation: Optional[LastOperation] = None

    def to_operation(self) -> Operation:
        return _last_operation_snapshot(self.guid, self.last_operation, self.model_dump())


class ServiceCredentialBinding(BaseModel):
    guid: str
    name: Optional[str] = None
    type: str = ""
    last_operation: Optional[LastOperation] = None

    def to_operation(self) -> Operation:
        return _last_operation_snapshot(self.guid, self.last_operation, self.model_dump())


class DeploymentStatus(BaseModel):
    value: str = ""
    reason: str = ""
    details: Dict[str, Any] = Field(default_factory=dict)


class Deployment(BaseModel):
    guid: str
    state: Optional[str] = None
    strategy: Optional[str] = None
    status: DeploymentStatus = Field(default_factory=DeploymentStatus)

    def to_operation(self) -> Operation:
        return Operation(
            identifier=self.guid,
            state=self.status.reason,
            description=self.status.value or None,
            raw_response=self.model_dump(),
        )


class CapiConfig(BaseModel):
    api_url: str
    access_token: Optional[str] = None
    request_timeout: float = 30.0
    verify_ssl: bool = True
    user_agent: str = "capi-client-python"

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "CapiConfig":
        """Builds a config from CF_API, CF_ACCESS_TOKEN, CF_REQUEST_TIMEOUT and CF_SKIP_SSL_VALIDATION"""
        environ = os.environ if environ is None else environ
        if not environ.get("CF_API"):
            raise ValueError("CF_API environment variable is not set")

        settings: Dict[str, Any] = {
            "api_url": environ["CF_API"],
            "access_token": environ.get("CF_ACCESS_TOKEN") or None,
        }
        if environ.get("CF_REQUEST_TIMEOUT"):
            settings["request_timeout"] = float(environ["CF_REQUEST_TIMEOUT"])
        skip_ssl = environ.get("CF_SKIP_SSL_VALIDATION", "").strip().lower()
        settings["verify_ssl"] = skip_ssl not in ("1", "true", "yes")
        return cls(**settings)
