"""
InMemoryJobQueue: fallback backend built on asyncio primitives.

Single-process only. Jobs are lost on restart and cron recurrence degrades
to one immediate run with a warning; everything else (concurrency caps,
retry/backoff, retention, delayed jobs, stats) behaves like the Redis
backend.

All delays (initial delays and retry backoff) share one timer loop over a
min-heap keyed by fire time; adding an earlier timer wakes the loop.
"""
from __future__ import annotations

import asyncio
import heapq
import itertools
import structlog
from collections import deque
from typing import Any, Iterable, Optional

from core.errors import EngineError
from job_queue.base import (
    Handler, Job, JobOptions, JobQueue, JobState, QueueDefinition, QueueStats, RecurringJob,
)
from utils.cron import parse_cron

logger = structlog.get_logger()


class InMemoryJobQueue(JobQueue):

    fallback = True

    def __init__(self, definitions: Iterable[QueueDefinition], **kwargs):
        super().__init__(definitions, **kwargs)
        names = list(self._definitions)
        self._jobs: dict[str, dict[str, Job]] = {n: {} for n in names}
        self._waiting: dict[str, list[tuple[int, int, str]]] = {n: [] for n in names}
        self._active: dict[str, set[str]] = {n: set() for n in names}
        self._completed: dict[str, deque[str]] = {n: deque() for n in names}
        self._failed: dict[str, deque[str]] = {n: deque() for n in names}
        self._recurring: dict[str, dict[str, RecurringJob]] = {n: {} for n in names}
        self._handlers: dict[str, Handler] = {}
        self._timers: list[tuple[float, int, str, str]] = []     # (fire_at, seq, queue, job_id)
        self._seq = itertools.count(1)
        self._inflight: set[asyncio.Task] = set()
        self._wakeup: Optional[asyncio.Event] = None
        self._timer_task: Optional[asyncio.Task] = None
        self._closed = False

    # ── Lifecycle ─────────────────────────────────────────────

    async def connect(self) -> None:
        self._ensure_timer_loop()
        logger.info("inmemory_queue_connected", queues=self.queue_names)

    def _ensure_timer_loop(self) -> None:
        if self._closed:
            raise EngineError("job queue is closed")
        if self._wakeup is None:
            self._wakeup = asyncio.Event()
        if self._timer_task is None or self._timer_task.done():
            self._timer_task = asyncio.create_task(self._timer_loop())

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._timer_task:
            self._timer_task.cancel()
            try:
                await self._timer_task
            except asyncio.CancelledError:
                pass
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)
        self._handlers.clear()
        logger.info("inmemory_queue_closed",
                    dropped_waiting=sum(len(w) for w in self._waiting.values()),
                    dropped_delayed=len(self._timers))

    # ── Producers ─────────────────────────────────────────────

    async def add(self, queue: str, payload: dict[str, Any], options: JobOptions = None) -> Job:
        definition = self.definition(queue)
        self._ensure_timer_loop()
        job = self._build_job(definition, payload, options)
        job.seq = next(self._seq)
        if not job.id:
            job.id = str(job.seq)
        if job.id in self._jobs[queue]:
            logger.info("job_duplicate_ignored", queue=queue, job_id=job.id)
            return self._jobs[queue][job.id]

        self._jobs[queue][job.id] = job
        if job.state == JobState.DELAYED:
            self._add_timer(job)
        else:
            self._enqueue_waiting(job)
            self._dispatch(queue)
        logger.info("job_added", queue=queue, job_id=job.id, state=job.state.value,
                    delay=round(job.run_at - job.created_at, 3))
        return job

    async def add_recurring(self, queue: str, name: str, cron: str,
                            payload: dict[str, Any] = None, timezone: str = "UTC") -> RecurringJob:
        self.definition(queue)
        parse_cron(cron, timezone)
        recurring = RecurringJob(name=name, queue=queue, cron=cron, timezone=timezone,
                                 payload=dict(payload or {}), degraded=True)
        self._recurring[queue][name] = recurring
        logger.warning("recurring_job_degraded",
                       queue=queue, name=name, cron=cron,
                       detail="fallback backend runs recurring jobs once, immediately")
        job = await self.add(queue, recurring.payload)
        job.repeat = name
        return recurring

    async def remove_recurring(self, queue: str, name: str) -> bool:
        self.definition(queue)
        return self._recurring[queue].pop(name, None) is not None

    async def get_recurring(self, queue: str) -> list[RecurringJob]:
        self.definition(queue)
        return list(self._recurring[queue].values())

    # ── Consumers ─────────────────────────────────────────────

    async def process(self, queue: str, handler: Handler) -> None:
        self.definition(queue)
        self._ensure_timer_loop()
        if queue in self._handlers:
            logger.warning("job_processor_replaced", queue=queue)
        self._handlers[queue] = handler
        logger.info("job_processor_registered", queue=queue,
                    concurrency=self._definitions[queue].concurrency)
        self._dispatch(queue)

    def _enqueue_waiting(self, job: Job) -> None:
        job.state = JobState.WAITING
        heapq.heappush(self._waiting[job.queue], (job.priority, job.seq, job.id))

    def _add_timer(self, job: Job) -> None:
        heapq.heappush(self._timers, (job.run_at, next(self._seq), job.queue, job.id))
        if self._wakeup is not None and self._timers[0][3] == job.id:
            self._wakeup.set()

    def _dispatch(self, queue: str) -> None:
        """Start waiting jobs until the queue's concurrency cap is reached."""
        handler = self._handlers.get(queue)
        if handler is None or self._closed:
            return
        limit = self._definitions[queue].concurrency
        waiting = self._waiting[queue]
        while waiting and len(self._active[queue]) < limit:
            _, _, job_id = heapq.heappop(waiting)
            job = self._jobs[queue].get(job_id)
            if job is None or job.state != JobState.WAITING:
                continue
            job.state = JobState.ACTIVE
            job.processed_at = self._clock()
            self._active[queue].add(job.id)
            task = asyncio.create_task(self._run(job, handler))
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)

    async def _run(self, job: Job, handler: Handler) -> None:
        try:
            try:
                if job.timeout:
                    result = await asyncio.wait_for(handler(job), timeout=job.timeout)
                else:
                    result = await handler(job)
            except asyncio.TimeoutError:
                self._after_failure(job, f"Job timed out after {job.timeout}s")
            except Exception as e:
                self._after_failure(job, str(e) or e.__class__.__name__)
            else:
                self._record_success(job, result)
                self._retain(job, self._completed[job.queue],
                             self._definitions[job.queue].retention.keep_completed)
        finally:
            self._active[job.queue].discard(job.id)
            self._dispatch(job.queue)

    def _after_failure(self, job: Job, error: str) -> None:
        if self._record_failure(job, error) is not None:
            self._add_timer(job)
        else:
            self._retain(job, self._failed[job.queue],
                         self._definitions[job.queue].retention.keep_failed)

    def _retain(self, job: Job, bucket: deque[str], keep: Optional[int]) -> None:
        bucket.append(job.id)
        if keep is None:
            return
        while len(bucket) > keep:
            evicted = bucket.popleft()
            self._jobs[job.queue].pop(evicted, None)

    async def _timer_loop(self) -> None:
        while True:
            now = self._clock()
            while self._timers and self._timers[0][0] <= now:
                _, _, queue, job_id = heapq.heappop(self._timers)
                job = self._jobs[queue].get(job_id)
                if job is None or job.state != JobState.DELAYED:
                    continue
                self._enqueue_waiting(job)
                self._dispatch(queue)
            self._wakeup.clear()
            timeout = (self._timers[0][0] - now) if self._timers else None
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                pass

    # ── Inspection / housekeeping ─────────────────────────────

    async def get_job(self, queue: str, job_id: str) -> Optional[Job]:
        self.definition(queue)
        return self._jobs[queue].get(job_id)

    async def get_stats(self, queue: str) -> QueueStats:
        definition = self.definition(queue)
        jobs = self._jobs[queue].values()
        return QueueStats(
            queue=queue,
            waiting=sum(1 for j in jobs if j.state == JobState.WAITING),
            delayed=sum(1 for j in jobs if j.state == JobState.DELAYED),
            active=len(self._active[queue]),
            completed=len(self._completed[queue]),
            failed=len(self._failed[queue]),
            concurrency=definition.concurrency,
            fallback=True,
        )

    async def clean(self, queue: str, older_than: float = 24 * 3600) -> int:
        self.definition(queue)
        cutoff = self._clock() - older_than
        removed = 0
        for bucket in (self._completed[queue], self._failed[queue]):
            keep = deque()
            for job_id in bucket:
                job = self._jobs[queue].get(job_id)
                if job is not None and (job.finished_at or 0) < cutoff:
                    del self._jobs[queue][job_id]
                    removed += 1
                elif job is not None:
                    keep.append(job_id)
            bucket.clear()
            bucket.extend(keep)
        if removed:
            logger.info("queue_cleaned", queue=queue, removed=removed)
        return removed
