"""
Job Queue: Abstract interface shared by the Redis and in-memory backends.

Job lifecycle:

    add ──▶ waiting ──▶ active ──▶ completed (retained up to keep_completed)
      │        ▲           │
      │        │ promote   │ handler raised
      ▼        │           ▼
    delayed ───┘◀── attempts_made < max_attempts ── backoff
                           │
                           └── exhausted ──▶ failed (retained up to keep_failed)

Job schema (JSON in Redis, dataclass in memory):
  {
      "id", "queue", "payload", "attempts_made", "max_attempts",
      "backoff": {"type": fixed|linear|exponential, "delay": seconds},
      "state", "priority" (lower runs first), "timeout", "repeat",
      "created_at", "run_at", "processed_at", "finished_at" (epoch seconds),
      "failed_reason", "return_value", "seq"
  }
"""
from __future__ import annotations

import json
import time
import structlog
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Optional

from core.errors import UnknownQueueError

logger = structlog.get_logger()


class JobState(str, Enum):
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


# ──────────────────────────────────────────────────────────────
#  Policies
# ──────────────────────────────────────────────────────────────

@dataclass
class BackoffPolicy:
    type: str = "exponential"           # fixed | linear | exponential
    delay: float = 60.0                 # base seconds

    def __post_init__(self):
        if self.type not in ("fixed", "linear", "exponential"):
            raise ValueError(f"unknown backoff type: {self.type}")

    def delay_for(self, attempts_made: int) -> float:
        """Delay before the next attempt, given how many attempts already ran."""
        n = max(1, attempts_made)
        if self.type == "fixed":
            return self.delay
        if self.type == "linear":
            return self.delay * n
        return self.delay * (2 ** (n - 1))


@dataclass
class RetentionPolicy:
    keep_completed: Optional[int] = 100     # None = keep everything
    keep_failed: Optional[int] = 500


@dataclass
class QueueDefinition:
    name: str
    concurrency: int = 5
    max_attempts: int = 3
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)
    retention: RetentionPolicy = field(default_factory=RetentionPolicy)
    timeout: Optional[float] = None         # per-job handler timeout, seconds
    default_delay: float = 0.0


@dataclass
class JobOptions:
    delay: Optional[float] = None           # seconds; None = queue default
    priority: int = 0
    max_attempts: Optional[int] = None
    backoff: Optional[BackoffPolicy] = None
    timeout: Optional[float] = None
    job_id: Optional[str] = None


# ──────────────────────────────────────────────────────────────
#  Job Model
# ──────────────────────────────────────────────────────────────

@dataclass
class Job:
    """A unit of work on a queue."""
    queue: str
    payload: dict[str, Any] = field(default_factory=dict)
    id: str = ""
    attempts_made: int = 0
    max_attempts: int = 3
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)
    state: JobState = JobState.WAITING
    priority: int = 0
    timeout: Optional[float] = None
    repeat: Optional[str] = None            # name of the recurring job that spawned it
    created_at: float = 0.0
    run_at: float = 0.0
    processed_at: Optional[float] = None
    finished_at: Optional[float] = None
    failed_reason: str = ""
    return_value: Any = None
    seq: int = 0

    def __post_init__(self):
        if not self.created_at:
            self.created_at = time.time()
        if not self.run_at:
            self.run_at = self.created_at

    @property
    def exhausted(self) -> bool:
        return self.attempts_made >= self.max_attempts

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["state"] = self.state.value
        return d

    def to_json(self) -> str:
        d = self.to_dict()
        try:
            return json.dumps(d)
        except (TypeError, ValueError):
            d["return_value"] = repr(self.return_value)
            return json.dumps(d)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Job:
        data = dict(data)
        if isinstance(data.get("backoff"), dict):
            data["backoff"] = BackoffPolicy(**data["backoff"])
        if "state" in data:
            data["state"] = JobState(data["state"])
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})

    @classmethod
    def from_json(cls, raw: str) -> Job:
        return cls.from_dict(json.loads(raw))


@dataclass
class QueueStats:
    queue: str
    waiting: int = 0
    delayed: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    concurrency: int = 0
    fallback: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class RecurringJob:
    name: str
    queue: str
    cron: str
    timezone: str = "UTC"
    payload: dict[str, Any] = field(default_factory=dict)
    next_run: Optional[float] = None        # epoch seconds; None when degraded
    degraded: bool = False                  # fallback mode: ran once, never repeats

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


Handler = Callable[[Job], Awaitable[Any]]


def _epoch(when: datetime) -> float:
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return when.timestamp()


# ──────────────────────────────────────────────────────────────
#  Abstract Interface
# ──────────────────────────────────────────────────────────────

class JobQueue(ABC):
    """
    Named queues with concurrency caps, retry/backoff, retention, delayed
    and recurring jobs. Backends differ only in durability and in whether
    cron recurrence really repeats.
    """

    fallback: bool = False

    def __init__(self, definitions: Iterable[QueueDefinition], clock: Callable[[], float] = time.time):
        self._definitions: dict[str, QueueDefinition] = {d.name: d for d in definitions}
        self._clock = clock

    # ── Definitions ───────────────────────────────────────────

    @property
    def queue_names(self) -> list[str]:
        return list(self._definitions)

    def definition(self, name: str) -> QueueDefinition:
        try:
            return self._definitions[name]
        except KeyError:
            raise UnknownQueueError(name) from None

    def _build_job(self, definition: QueueDefinition, payload: dict[str, Any],
                   options: Optional[JobOptions]) -> Job:
        options = options or JobOptions()
        now = self._clock()
        delay = definition.default_delay if options.delay is None else options.delay
        delay = max(0.0, float(delay))
        max_attempts = options.max_attempts if options.max_attempts is not None else definition.max_attempts
        return Job(
            queue=definition.name,
            payload=dict(payload or {}),
            id=options.job_id or "",
            max_attempts=max(1, int(max_attempts)),
            backoff=options.backoff or definition.backoff,
            state=JobState.DELAYED if delay > 0 else JobState.WAITING,
            priority=options.priority,
            timeout=options.timeout if options.timeout is not None else definition.timeout,
            created_at=now,
            run_at=now + delay,
        )

    def _record_failure(self, job: Job, error: str) -> Optional[float]:
        """
        Apply a failed attempt to ``job``. Returns the retry delay when the
        job goes back to delayed, None when it is now terminally failed.
        """
        now = self._clock()
        job.attempts_made += 1
        job.failed_reason = error
        if job.attempts_made < job.max_attempts:
            delay = job.backoff.delay_for(job.attempts_made)
            job.state = JobState.DELAYED
            job.run_at = now + delay
            logger.warning("job_retry_scheduled",
                           queue=job.queue, job_id=job.id,
                           attempt=job.attempts_made, max_attempts=job.max_attempts,
                           delay=delay, error=error)
            return delay
        job.state = JobState.FAILED
        job.finished_at = now
        logger.error("job_failed",
                     queue=job.queue, job_id=job.id,
                     attempts=job.attempts_made, error=error)
        return None

    def _record_success(self, job: Job, result: Any) -> None:
        job.attempts_made += 1
        job.state = JobState.COMPLETED
        job.return_value = result
        job.finished_at = self._clock()
        logger.info("job_completed",
                    queue=job.queue, job_id=job.id,
                    attempt=job.attempts_made,
                    duration=round(job.finished_at - (job.processed_at or job.finished_at), 3))

    # ── Lifecycle ─────────────────────────────────────────────

    @abstractmethod
    async def connect(self) -> None:
        ...

    @abstractmethod
    async def close(self) -> None:
        """Stop timers, drain in-flight handlers, release connections."""
        ...

    # ── Producers ─────────────────────────────────────────────

    @abstractmethod
    async def add(self, queue: str, payload: dict[str, Any], options: JobOptions = None) -> Job:
        ...

    async def schedule(self, queue: str, payload: dict[str, Any], when: datetime,
                       options: JobOptions = None) -> Job:
        """Run once at an absolute time (immediately if ``when`` has passed)."""
        options = options or JobOptions()
        options.delay = max(0.0, _epoch(when) - self._clock())
        return await self.add(queue, payload, options)

    @abstractmethod
    async def add_recurring(self, queue: str, name: str, cron: str,
                            payload: dict[str, Any] = None, timezone: str = "UTC") -> RecurringJob:
        ...

    @abstractmethod
    async def remove_recurring(self, queue: str, name: str) -> bool:
        ...

    @abstractmethod
    async def get_recurring(self, queue: str) -> list[RecurringJob]:
        ...

    # ── Consumers ─────────────────────────────────────────────

    @abstractmethod
    async def process(self, queue: str, handler: Handler) -> None:
        """Register the handler for a queue and start pulling jobs."""
        ...

    # ── Inspection / housekeeping ─────────────────────────────

    @abstractmethod
    async def get_job(self, queue: str, job_id: str) -> Optional[Job]:
        ...

    @abstractmethod
    async def get_stats(self, queue: str) -> QueueStats:
        ...

    async def get_all_stats(self) -> dict[str, QueueStats]:
        return {name: await self.get_stats(name) for name in self._definitions}

    @abstractmethod
    async def clean(self, queue: str, older_than: float = 24 * 3600) -> int:
        """Remove completed/failed jobs that finished more than ``older_than`` seconds ago."""
        ...

    async def clean_all(self, older_than: float = 24 * 3600) -> dict[str, int]:
        results = {}
        for name in self._definitions:
            results[name] = await self.clean(name, older_than)
        logger.info("queues_cleaned", removed=results, older_than=older_than)
        return results
