"""
Job data model: lanes, lifecycle states, retry policy, and the job record.

Jobs are owned by the job store. Producers only create them, workers only
move their state forward:

    pending -> active -> completed
    active  -> pending   (retry scheduled or stall recovered, attempts remain)
    active  -> failed    (attempts exhausted or permanent error)

Timestamps are UNIX epoch seconds (float) so they survive a round trip
through the broker unchanged.
"""

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Mapping, Optional, Union
from uuid import uuid4

from core.exceptions import InvalidLaneError, ValidationError

if TYPE_CHECKING:
    from infrastructure.repositories.job_store import JobStore


class Lane(str, Enum):
    """Named job lanes. Each lane has one handler and one payload schema."""

    SEND_EMAIL = "send-email"
    NOTIFY_ADMIN = "notify-admin"
    ANALYTICS = "analytics"
    SEND_REPORT = "send-report"
    NOTIFY_STUDENT = "notify-student"

    @classmethod
    def parse(cls, value: Union["Lane", str]) -> "Lane":
        """Resolve a lane from a member or its wire name."""
        if isinstance(value, Lane):
            return value
        try:
            return cls(value)
        except ValueError:
            raise InvalidLaneError(
                f"Unknown lane: {value!r}",
                details={"valid_lanes": [lane.value for lane in cls]},
            ) from None


class JobStatus(str, Enum):
    """Job lifecycle states."""

    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        """Completed and failed jobs never change again."""
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class BackoffType(str, Enum):
    """Retry delay growth."""

    FIXED = "fixed"
    EXPONENTIAL = "exponential"


@dataclass(frozen=True)
class BackoffPolicy:
    """
    Delay before a failed job becomes claimable again.

    fixed:       delay_ms
    exponential: delay_ms * 2 ** (attempt - 1)
    """

    type: BackoffType = BackoffType.EXPONENTIAL
    delay_ms: int = 1000

    def delay_for(self, attempt: int) -> int:
        """Delay in milliseconds after the given (1-based) failed attempt."""
        attempt = max(1, attempt)
        if self.type == BackoffType.FIXED:
            return self.delay_ms
        return self.delay_ms * 2 ** (attempt - 1)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type.value, "delay": self.delay_ms}

    @classmethod
    def parse(
        cls,
        spec: Union["BackoffPolicy", int, Mapping[str, Any], None],
        default: Optional["BackoffPolicy"] = None,
    ) -> "BackoffPolicy":
        """
        Build a policy from an enqueue option.

        Accepts a policy instance, a bare non-negative integer (fixed delay in
        ms), or a mapping ``{"type": "fixed"|"exponential", "delay": ms}``.
        """
        if spec is None:
            return default or cls()
        if isinstance(spec, BackoffPolicy):
            return spec
        if isinstance(spec, bool):
            raise ValidationError("backoff must be an integer or a backoff spec")
        if isinstance(spec, int):
            if spec < 0:
                raise ValidationError("backoff must be non-negative", details={"backoff": spec})
            return cls(type=BackoffType.FIXED, delay_ms=spec)
        if isinstance(spec, Mapping):
            try:
                backoff_type = BackoffType(spec.get("type", BackoffType.EXPONENTIAL.value))
            except ValueError:
                raise ValidationError(
                    "Unknown backoff type", details={"type": spec.get("type")}
                ) from None
            delay = spec.get("delay", (default or cls()).delay_ms)
            if isinstance(delay, bool) or not isinstance(delay, int) or delay < 0:
                raise ValidationError(
                    "backoff delay must be a non-negative integer", details={"delay": delay}
                )
            return cls(type=backoff_type, delay_ms=delay)
        raise ValidationError("backoff must be an integer or a backoff spec")


@dataclass(frozen=True)
class JobOptions:
    """Per-job enqueue options."""

    attempts: int = 3
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)
    delay_ms: int = 0

    @classmethod
    def parse(
        cls,
        options: Union["JobOptions", Mapping[str, Any], None],
        defaults: "JobOptions",
    ) -> "JobOptions":
        """
        Merge caller options over defaults, validating each field.

        Recognised keys: ``attempts``, ``backoff`` (alias ``backoffMs``),
        ``delay`` (alias ``delay_ms``).
        """
        if options is None:
            return defaults
        if isinstance(options, JobOptions):
            return options
        if not isinstance(options, Mapping):
            raise ValidationError("options must be a mapping")

        attempts = options.get("attempts", defaults.attempts)
        if isinstance(attempts, bool) or not isinstance(attempts, int) or attempts < 1:
            raise ValidationError(
                "attempts must be a positive integer", details={"attempts": attempts}
            )

        backoff_spec = options.get("backoff", options.get("backoffMs"))
        backoff = BackoffPolicy.parse(backoff_spec, defaults.backoff)

        delay = options.get("delay", options.get("delay_ms", defaults.delay_ms))
        if isinstance(delay, bool) or not isinstance(delay, int) or delay < 0:
            raise ValidationError("delay must be a non-negative integer", details={"delay": delay})

        return cls(attempts=attempts, backoff=backoff, delay_ms=delay)


def _iso(timestamp: Optional[float]) -> Optional[str]:
    if timestamp is None:
        return None
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


@dataclass
class Job:
    """
    Background job record.

    Attributes:
        lane: Lane the job belongs to
        payload: Lane-specific payload (wire field names)
        job_id: Opaque identifier
        status: Lifecycle state
        attempts_made: Claims so far (incremented when a worker claims the job)
        max_attempts: Attempts allowed before permanent failure
        backoff: Retry delay policy
        created_at: Enqueue time
        run_at: Earliest time the job may be claimed
        started_at: Start of the current/last attempt
        completed_at: When the job reached a terminal state
        locked_by: Worker holding the claim
        lease_expires_at: Claim expiry; past it the job is stalled
        error: Last error message
        result: Handler result (completed jobs) or skip marker
        progress: Handler-persisted state carried across attempts
        stalled_count: Times the job was recovered from a stalled claim
    """

    lane: Lane
    payload: Dict[str, Any] = field(default_factory=dict)
    job_id: str = field(default_factory=lambda: str(uuid4()))
    status: JobStatus = JobStatus.PENDING
    attempts_made: int = 0
    max_attempts: int = 3
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)
    created_at: float = field(default_factory=time.time)
    run_at: Optional[float] = None
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    locked_by: Optional[str] = None
    lease_expires_at: Optional[float] = None
    error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    progress: Dict[str, Any] = field(default_factory=dict)
    stalled_count: int = 0

    def __post_init__(self):
        if self.run_at is None:
            self.run_at = self.created_at

    @property
    def attempts_remaining(self) -> int:
        return max(0, self.max_attempts - self.attempts_made)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for storage (epoch timestamps)."""
        return {
            "job_id": self.job_id,
            "lane": self.lane.value,
            "payload": self.payload,
            "status": self.status.value,
            "attempts_made": self.attempts_made,
            "max_attempts": self.max_attempts,
            "backoff": self.backoff.to_dict(),
            "created_at": self.created_at,
            "run_at": self.run_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "locked_by": self.locked_by,
            "lease_expires_at": self.lease_expires_at,
            "error": self.error,
            "result": self.result,
            "progress": self.progress,
            "stalled_count": self.stalled_count,
        }

    def to_public_dict(self) -> Dict[str, Any]:
        """Serialize for API responses (ISO-8601 timestamps)."""
        return {
            "job_id": self.job_id,
            "lane": self.lane.value,
            "status": self.status.value,
            "payload": self.payload,
            "attempts_made": self.attempts_made,
            "max_attempts": self.max_attempts,
            "backoff": self.backoff.to_dict(),
            "created_at": _iso(self.created_at),
            "run_at": _iso(self.run_at),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "error": self.error,
            "result": self.result,
            "progress": self.progress,
            "stalled_count": self.stalled_count,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Job":
        backoff = data.get("backoff") or {}
        return cls(
            job_id=data["job_id"],
            lane=Lane(data["lane"]),
            payload=dict(data.get("payload") or {}),
            status=JobStatus(data["status"]),
            attempts_made=data.get("attempts_made", 0),
            max_attempts=data.get("max_attempts", 3),
            backoff=BackoffPolicy(
                type=BackoffType(backoff.get("type", BackoffType.EXPONENTIAL.value)),
                delay_ms=backoff.get("delay", 1000),
            ),
            created_at=data["created_at"],
            run_at=data.get("run_at"),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
            locked_by=data.get("locked_by"),
            lease_expires_at=data.get("lease_expires_at"),
            error=data.get("error"),
            result=data.get("result"),
            progress=dict(data.get("progress") or {}),
            stalled_count=data.get("stalled_count", 0),
        )


@dataclass(frozen=True)
class JobHandle:
    """Reference returned by enqueue, usable to query job status."""

    job_id: str
    lane: Lane
    store: "JobStore" = field(repr=False, compare=False)

    async def refresh(self) -> Optional[Job]:
        """Fetch the current job record."""
        return await self.store.get(self.job_id)

    async def status(self) -> Optional[JobStatus]:
        """Current lifecycle state, or None if the store no longer knows the job."""
        job = await self.refresh()
        return job.status if job else None
