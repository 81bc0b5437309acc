"""
Error taxonomy for the novel video agent.

Every failure surfaced by a stage is one of these, so callers can tell
"nothing ready yet" (precondition) from "attempted and failed" (provider
errors, timeouts) and decide whether a retry makes sense.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


class NovelAgentError(Exception):
    """Base class for all agent errors."""


class InvalidInputError(NovelAgentError, ValueError):
    """Malformed input to a stage. Never retried automatically."""


class MalformedOutputError(InvalidInputError):
    """Provider output failed schema validation."""

    transient = False


class NotFoundError(NovelAgentError, LookupError):
    """Entity or blob key does not exist."""


class InvalidTransitionError(NovelAgentError):
    """Status change not allowed by the entity state machine."""

    def __init__(self, table: str, record_id: str, current: Optional[str], target: str):
        self.table = table
        self.record_id = record_id
        self.current = current
        self.target = target
        super().__init__(
            f"Cannot move {table} {record_id} from {current!r} to {target!r}"
        )


@dataclass(frozen=True)
class MissingDependency:
    """One unmet prerequisite reported by the dependency checker."""

    entity: str
    detail: str
    unit: Optional[str] = None

    def __str__(self) -> str:
        if self.unit:
            return f"{self.entity}[{self.unit}]: {self.detail}"
        return f"{self.entity}: {self.detail}"


class PreconditionError(NovelAgentError):
    """A stage was requested before its prerequisites were ready."""

    def __init__(self, stage: str, missing: List[MissingDependency]):
        self.stage = stage
        self.missing = list(missing)
        details = "; ".join(str(m) for m in self.missing)
        super().__init__(f"Stage '{stage}' is not ready: {details}")


class ProviderError(NovelAgentError):
    """Failure reported by an external generative provider."""

    transient = False

    def __init__(self, provider: str, message: str, status_code: Optional[int] = None):
        self.provider = provider
        self.status_code = status_code
        super().__init__(f"{provider}: {message}")


class TransientProviderError(ProviderError):
    """Rate limit, timeout or server-side error. Safe to retry."""

    transient = True


class PermanentProviderError(ProviderError):
    """Rejected content or malformed response. Retrying will not help."""


class JobTimeoutError(NovelAgentError):
    """An asynchronous provider job did not finish before its deadline."""

    transient = True

    def __init__(self, job_id: str, timeout_seconds: float):
        self.job_id = job_id
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Job {job_id} timed out after {timeout_seconds:.0f}s")


class OperationCancelled(NovelAgentError):
    """The caller's cancellation signal fired.

    unstarted holds the work units a fan-out dropped without running.
    """

    def __init__(self, message: str, unstarted: Optional[List[Any]] = None):
        self.unstarted = list(unstarted or [])
        super().__init__(message)


def is_transient(exc: BaseException) -> bool:
    """Classify an exception for caller-driven retry.

    Examples:
        >>> is_transient(TransientProviderError("tts", "429"))
        True
    """
    return bool(getattr(exc, "transient", False))


@dataclass
class UnitFailure:
    """A single unit that failed inside a batch stage.

    Shot-level stages fill both numbers; scene-level video clips leave
    shot_number as None.
    """

    scene_number: int
    shot_number: Optional[int]
    message: str
    transient: bool = False

    @property
    def unit(self) -> str:
        if self.shot_number is None:
            return f"scene {self.scene_number}"
        return f"scene {self.scene_number} shot {self.shot_number}"


@dataclass
class BatchResult:
    """Outcome of a multi-unit stage: persisted records plus per-unit failures."""

    stage: str
    records: List[Dict[str, Any]] = field(default_factory=list)
    failures: List[UnitFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    def failed_units(self) -> List[tuple]:
        return [(f.scene_number, f.shot_number) for f in self.failures]

    def summary(self) -> str:
        return f"{self.stage}: {len(self.records)} succeeded, {len(self.failures)} failed"
