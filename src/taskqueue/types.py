from __future__ import annotations

import copy
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol
from uuid import uuid4


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def new_job_id() -> str:
    return f"job-{uuid4().hex}"


class JobState(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATES = frozenset({JobState.COMPLETED, JobState.FAILED})


@dataclass(frozen=True)
class BackoffPolicy:
    """Delay before a failed attempt is retried."""

    type: str = "exponential"  # exponential | fixed
    delay_ms: int = 0
    max_delay_ms: int = 300_000

    def delay_for(self, attempts_made: int) -> int:
        if self.type == "fixed":
            return min(self.delay_ms, self.max_delay_ms)
        exponent = max(attempts_made - 1, 0)
        return min(self.delay_ms * (2 ** exponent), self.max_delay_ms)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "delay_ms": self.delay_ms, "max_delay_ms": self.max_delay_ms}

    @classmethod
    def coerce(cls, value: Any) -> Optional["BackoffPolicy"]:
        """Accept a policy, ``(type, delay_ms)``, a mapping, a bare delay or None."""
        if value is None or isinstance(value, BackoffPolicy):
            return value
        if isinstance(value, (int, float)):
            return cls(type="fixed", delay_ms=int(value))
        if isinstance(value, (tuple, list)):
            return cls(type=str(value[0]), delay_ms=int(value[1]))
        if isinstance(value, Mapping):
            delay = value.get("delay_ms", value.get("delay", 0))
            return cls(
                type=str(value.get("type", "exponential")),
                delay_ms=int(delay),
                max_delay_ms=int(value.get("max_delay_ms", 300_000)),
            )
        raise ValueError(f"unsupported backoff value: {value!r}")


@dataclass(frozen=True)
class JobOptions:
    attempts: int = 1
    backoff: Optional[BackoffPolicy] = None
    timeout_ms: Optional[int] = None
    priority: int = 0
    delay_ms: int = 0
    remove_on_complete: Optional[int] = None
    remove_on_fail: Optional[int] = None

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> "JobOptions":
        return cls().merged(data)

    def merged(self, overrides: Optional[Mapping[str, Any]]) -> "JobOptions":
        """Field-by-field override; ``None`` values keep the current value."""
        if not overrides:
            return self
        known = {f.name for f in fields(self)}
        unknown = set(overrides) - known
        if unknown:
            raise ValueError(f"unknown job options: {sorted(unknown)}")
        changes = {k: v for k, v in overrides.items() if v is not None}
        if "backoff" in changes:
            changes["backoff"] = BackoffPolicy.coerce(changes["backoff"])
        opts = replace(self, **changes)
        if opts.attempts < 1:
            raise ValueError("attempts must be >= 1")
        return opts


@dataclass
class Job:
    """One durable unit of work owned by a single queue."""

    queue: str
    name: str
    payload: Dict[str, Any]
    id: str = field(default_factory=new_job_id)
    state: JobState = JobState.WAITING
    progress: int = 0
    priority: int = 0
    attempts_made: int = 0
    max_attempts: int = 1
    stalled_count: int = 0
    backoff: Optional[BackoffPolicy] = None
    timeout_ms: Optional[int] = None
    remove_on_complete: Optional[int] = None
    remove_on_fail: Optional[int] = None
    result: Optional[Any] = None
    failure_reason: Optional[str] = None
    lock_token: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    available_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    heartbeat_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @classmethod
    def create(cls, queue: str, name: str, payload: Dict[str, Any], options: JobOptions) -> "Job":
        now = utcnow()
        return cls(
            queue=queue,
            name=name,
            payload=payload,
            priority=options.priority,
            max_attempts=options.attempts,
            backoff=options.backoff,
            timeout_ms=options.timeout_ms,
            remove_on_complete=options.remove_on_complete,
            remove_on_fail=options.remove_on_fail,
            created_at=now,
            available_at=now + timedelta(milliseconds=options.delay_ms),
        )

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def is_delayed(self, now: Optional[datetime] = None) -> bool:
        return self.state == JobState.WAITING and self.available_at > (now or utcnow())

    def snapshot(self) -> "Job":
        return copy.deepcopy(self)

    def status(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "exists": True,
            "jobId": self.id,
            "queue": self.queue,
            "type": self.name,
            "state": self.state.value,
            "progress": self.progress,
            "attemptsMade": self.attempts_made,
            "timestamp": self.created_at.isoformat(),
        }
        if self.state == JobState.COMPLETED:
            out["result"] = self.result
        if self.state == JobState.FAILED:
            out["failedReason"] = self.failure_reason
        return out


class JobBroker(Protocol):
    """Storage and claim semantics for jobs.

    Reports on a claimed job (progress, complete, fail, retry) must carry the
    claim's ``lock_token``; a stale token raises ``LockLostError``.
    """

    def ping(self) -> None:
        ...

    def add(self, job: Job) -> str:
        ...

    def get(self, queue: str, job_id: str) -> Optional[Job]:
        ...

    def claim(self, queue: str, names: Iterable[str]) -> Optional[Job]:
        ...

    def heartbeat(self, queue: str, job_id: str, token: str) -> None:
        ...

    def update_progress(self, queue: str, job_id: str, token: str, progress: int) -> int:
        ...

    def complete(self, queue: str, job_id: str, token: str, result: Any) -> Job:
        ...

    def fail(self, queue: str, job_id: str, token: str, reason: str) -> Job:
        ...

    def retry_later(self, queue: str, job_id: str, token: str, reason: str, delay_ms: int) -> Job:
        ...

    def release(self, queue: str, job_id: str, token: str) -> Job:
        """Hand a claimed job back to ``waiting`` without spending an attempt."""
        ...

    def requeue_stalled(self, queue: str, visibility_window: float, max_stalled: int = 1) -> List[Job]:
        """Requeue jobs with stale heartbeats; past ``max_stalled`` stalls they fail instead."""
        ...

    def counts(self, queue: str) -> Dict[str, int]:
        ...

    def trim(self, queue: str, state: JobState, keep: int) -> int:
        ...

    def clean(self, queue: str, grace_ms: int, state: JobState) -> int:
        ...

    def wait(self, queue: str, job_id: str, timeout: Optional[float] = None) -> Optional[Job]:
        ...

    def close(self) -> None:
        ...


def clamp_progress(value: Any) -> int:
    return max(0, min(100, int(value)))


def stalled_reason(max_stalled: int) -> str:
    return f"job stalled more than {max_stalled} time(s)"
