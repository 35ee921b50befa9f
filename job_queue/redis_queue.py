"""
RedisJobQueue: durable backend on redis.asyncio.

Key layout per queue (``{prefix}:{queue}:...``):
  id               INCR counter → job sequence / default id
  job:{id}         job JSON
  wait             sorted set, score = priority * 1e12 + seq (FIFO within priority)
  delayed          sorted set, score = run_at epoch seconds
  active           set of job ids currently held by a worker
  completed        list, newest first, trimmed to keep_completed
  failed           list, newest first, trimmed to keep_failed
  repeat           hash name → RecurringJob JSON
  repeat:{name}:{t} short-lived NX guard so one instance enqueues each cron tick

Jobs survive restarts: ``connect`` moves anything left in ``active`` back to
``wait`` (the previous process died mid-job). That recovery assumes one
consuming process per prefix: a second instance connecting while the first
is mid-job would requeue that job and run it twice.

One promotion loop moves due delayed jobs to ``wait`` and spawns recurring
jobs; one worker loop per processed queue claims jobs up to the concurrency
cap.
"""
from __future__ import annotations

import asyncio
import json
import structlog
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from core.errors import EngineError
from job_queue.base import (
    Handler, Job, JobOptions, JobQueue, JobState, QueueDefinition, QueueStats, RecurringJob,
)
from utils.cron import next_fire_time, parse_cron

logger = structlog.get_logger()

_PRIORITY_SCALE = 1e12
_SETTLE_ATTEMPTS = 5
_UTC = timezone.utc

# ZPOPMIN wait + SADD active in one step so a crash never loses the id
_CLAIM_SCRIPT = """
local item = redis.call('ZPOPMIN', KEYS[1])
if item[1] then
    redis.call('SADD', KEYS[2], item[1])
    return item[1]
end
return false
"""


class RedisJobQueue(JobQueue):

    fallback = False

    def __init__(
        self,
        definitions: Iterable[QueueDefinition],
        redis_url: str = "redis://localhost:6379",
        prefix: str = "collectflo",
        poll_interval: float = 1.0,
        **kwargs,
    ):
        super().__init__(definitions, **kwargs)
        self._redis_url = redis_url
        self._prefix = prefix
        self._poll_interval = poll_interval
        self._redis: Optional[aioredis.Redis] = None
        self._claim = None
        self._handlers: dict[str, Handler] = {}
        self._workers: dict[str, asyncio.Task] = {}
        self._signals: dict[str, asyncio.Event] = {}
        self._inflight: set[asyncio.Task] = set()
        self._promoter: Optional[asyncio.Task] = None
        self._closing = False

    def key(self, queue: str, *parts: str) -> str:
        return ":".join([self._prefix, queue, *parts])

    # ── Lifecycle ─────────────────────────────────────────────

    async def connect(self) -> None:
        self._redis = aioredis.from_url(
            self._redis_url,
            decode_responses=True,
            max_connections=20,
        )
        await self._redis.ping()
        self._claim = self._redis.register_script(_CLAIM_SCRIPT)
        await self._recover_stalled()
        self._promoter = asyncio.create_task(self._promote_loop())
        logger.info("redis_queue_connected", url=self._redis_url.split("@")[-1],
                    prefix=self._prefix, queues=self.queue_names)

    async def _recover_stalled(self) -> None:
        for queue in self.queue_names:
            stalled = await self._redis.smembers(self.key(queue, "active"))
            for job_id in stalled:
                job = await self._load(queue, job_id)
                pipe = self._redis.pipeline()
                pipe.srem(self.key(queue, "active"), job_id)
                if job is not None:
                    job.state = JobState.WAITING
                    pipe.set(self.key(queue, "job", job.id), job.to_json())
                    pipe.zadd(self.key(queue, "wait"), {job.id: self._wait_score(job)})
                await pipe.execute()
            if stalled:
                logger.warning("stalled_jobs_requeued", queue=queue, count=len(stalled))

    async def close(self) -> None:
        if self._closing:
            return
        self._closing = True
        tasks = [t for t in (self._promoter, *self._workers.values()) if t is not None]
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
        logger.info("redis_queue_closed")

    def _require_connection(self) -> aioredis.Redis:
        if self._redis is None or self._closing:
            raise EngineError("job queue is not connected")
        return self._redis

    # ── Serialization helpers ─────────────────────────────────

    @staticmethod
    def _wait_score(job: Job) -> float:
        return job.priority * _PRIORITY_SCALE + job.seq

    async def _load(self, queue: str, job_id: str) -> Optional[Job]:
        raw = await self._redis.get(self.key(queue, "job", job_id))
        return Job.from_json(raw) if raw else None

    def _signal(self, queue: str) -> None:
        event = self._signals.get(queue)
        if event is not None:
            event.set()

    # ── Producers ─────────────────────────────────────────────

    async def add(self, queue: str, payload: dict[str, Any], options: JobOptions = None) -> Job:
        definition = self.definition(queue)
        r = self._require_connection()
        job = self._build_job(definition, payload, options)
        job.seq = int(await r.incr(self.key(queue, "id")))
        if not job.id:
            job.id = str(job.seq)

        job_key = self.key(queue, "job", job.id)
        created = await r.set(job_key, job.to_json(), nx=True)
        if not created:
            logger.info("job_duplicate_ignored", queue=queue, job_id=job.id)
            return await self._load(queue, job.id)

        if job.state == JobState.DELAYED:
            await r.zadd(self.key(queue, "delayed"), {job.id: job.run_at})
        else:
            await r.zadd(self.key(queue, "wait"), {job.id: self._wait_score(job)})
            self._signal(queue)
        logger.info("job_added", queue=queue, job_id=job.id, state=job.state.value,
                    delay=round(job.run_at - job.created_at, 3))
        return job

    async def add_recurring(self, queue: str, name: str, cron: str,
                            payload: dict[str, Any] = None, timezone: str = "UTC") -> RecurringJob:
        self.definition(queue)
        r = self._require_connection()
        trigger = parse_cron(cron, timezone)
        nxt = next_fire_time(trigger, datetime.fromtimestamp(self._clock(), tz=_UTC))
        recurring = RecurringJob(name=name, queue=queue, cron=cron, timezone=timezone,
                                 payload=dict(payload or {}),
                                 next_run=nxt.timestamp() if nxt else None)
        await r.hset(self.key(queue, "repeat"), name, json.dumps(recurring.to_dict()))
        logger.info("recurring_job_added", queue=queue, name=name, cron=cron,
                    next_run=nxt.isoformat() if nxt else None)
        return recurring

    async def remove_recurring(self, queue: str, name: str) -> bool:
        self.definition(queue)
        removed = await self._require_connection().hdel(self.key(queue, "repeat"), name)
        if removed:
            logger.info("recurring_job_removed", queue=queue, name=name)
        return bool(removed)

    async def get_recurring(self, queue: str) -> list[RecurringJob]:
        self.definition(queue)
        raw = await self._require_connection().hgetall(self.key(queue, "repeat"))
        return [RecurringJob(**json.loads(v)) for v in raw.values()]

    # ── Promotion ─────────────────────────────────────────────

    async def promote_due(self) -> int:
        """Move due delayed jobs to wait and spawn due recurring jobs."""
        r = self._require_connection()
        now = self._clock()
        promoted = 0
        for queue in self.queue_names:
            ready = await r.zrangebyscore(self.key(queue, "delayed"), "-inf", now)
            for job_id in ready:
                # zrem succeeds for exactly one promoter
                if not await r.zrem(self.key(queue, "delayed"), job_id):
                    continue
                job = await self._load(queue, job_id)
                if job is None:
                    continue
                job.state = JobState.WAITING
                pipe = r.pipeline()
                pipe.set(self.key(queue, "job", job.id), job.to_json())
                pipe.zadd(self.key(queue, "wait"), {job.id: self._wait_score(job)})
                await pipe.execute()
                promoted += 1
            if ready:
                self._signal(queue)
            await self._spawn_recurring(queue, now)
        if promoted:
            logger.debug("delayed_jobs_promoted", count=promoted)
        return promoted

    async def _spawn_recurring(self, queue: str, now: float) -> None:
        r = self._redis
        for name, raw in (await r.hgetall(self.key(queue, "repeat"))).items():
            recurring = RecurringJob(**json.loads(raw))
            if recurring.next_run is None or recurring.next_run > now:
                continue
            guard = self.key(queue, "repeat", name, str(int(recurring.next_run)))
            if await r.set(guard, "1", nx=True, ex=3600):
                job = await self.add(queue, recurring.payload)
                job.repeat = name
                await r.set(self.key(queue, "job", job.id), job.to_json())
            trigger = parse_cron(recurring.cron, recurring.timezone)
            nxt = next_fire_time(
                trigger,
                after=datetime.fromtimestamp(now, tz=_UTC),
                previous=datetime.fromtimestamp(now, tz=_UTC),
            )
            recurring.next_run = nxt.timestamp() if nxt else None
            await r.hset(self.key(queue, "repeat"), name, json.dumps(recurring.to_dict()))

    async def _promote_loop(self) -> None:
        while True:
            try:
                await self.promote_due()
            except asyncio.CancelledError:
                raise
            except (RedisError, EngineError) as e:
                logger.error("delayed_promote_error", error=str(e))
            await asyncio.sleep(self._poll_interval)

    # ── Consumers ─────────────────────────────────────────────

    async def process(self, queue: str, handler: Handler) -> None:
        definition = self.definition(queue)
        self._require_connection()
        if queue in self._handlers:
            logger.warning("job_processor_replaced", queue=queue)
        self._handlers[queue] = handler
        if queue not in self._workers:
            self._signals[queue] = asyncio.Event()
            self._workers[queue] = asyncio.create_task(self._worker_loop(queue))
        logger.info("job_processor_registered", queue=queue, concurrency=definition.concurrency)

    async def _worker_loop(self, queue: str) -> None:
        slots = asyncio.Semaphore(self._definitions[queue].concurrency)
        signal = self._signals[queue]
        while True:
            await slots.acquire()
            try:
                job_id = await self._claim(keys=[self.key(queue, "wait"), self.key(queue, "active")])
            except RedisError as e:
                slots.release()
                logger.error("job_claim_error", queue=queue, error=str(e))
                await asyncio.sleep(self._poll_interval)
                continue
            if not job_id:
                slots.release()
                signal.clear()
                try:
                    await asyncio.wait_for(signal.wait(), timeout=self._poll_interval)
                except asyncio.TimeoutError:
                    pass
                continue
            task = asyncio.create_task(self._run(queue, job_id))
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)
            task.add_done_callback(lambda _t: slots.release())

    async def _run(self, queue: str, job_id: str) -> None:
        r = self._redis
        try:
            job = await self._load(queue, job_id)
            if job is None:
                await r.srem(self.key(queue, "active"), job_id)
                return
            job.state = JobState.ACTIVE
            job.processed_at = self._clock()
            await r.set(self.key(queue, "job", job.id), job.to_json())
        except RedisError as e:
            # still in active; requeued by the next connect
            logger.error("job_start_error", queue=queue, job_id=job_id, error=str(e))
            return

        handler = self._handlers[queue]
        try:
            if job.timeout:
                result = await asyncio.wait_for(handler(job), timeout=job.timeout)
            else:
                result = await handler(job)
        except asyncio.TimeoutError:
            await self._finish_failed(job, f"Job timed out after {job.timeout}s")
        except Exception as e:
            await self._finish_failed(job, str(e) or e.__class__.__name__)
        else:
            self._record_success(job, result)
            await self._settle(job, self._finish, job, "completed",
                               self._definitions[queue].retention.keep_completed)
        self._signal(queue)

    async def _finish_failed(self, job: Job, error: str) -> None:
        if self._record_failure(job, error) is not None:
            await self._settle(job, self._retry_later, job)
            return
        await self._settle(job, self._finish, job, "failed",
                           self._definitions[job.queue].retention.keep_failed)

    async def _settle(self, job: Job, step, *args) -> bool:
        """
        Persist the outcome of a finished run, retrying while Redis errors.
        Returns False when every attempt failed; the job then stays in
        ``active`` until the next connect requeues it.
        """
        for attempt in range(1, _SETTLE_ATTEMPTS + 1):
            try:
                await step(*args)
                return True
            except RedisError as e:
                logger.error("job_bookkeeping_error", queue=job.queue, job_id=job.id,
                             attempt=attempt, error=str(e))
                if attempt < _SETTLE_ATTEMPTS:
                    await asyncio.sleep(self._poll_interval * attempt)
        logger.error("job_left_active", queue=job.queue, job_id=job.id)
        return False

    async def _retry_later(self, job: Job) -> None:
        pipe = self._redis.pipeline()
        pipe.srem(self.key(job.queue, "active"), job.id)
        pipe.set(self.key(job.queue, "job", job.id), job.to_json())
        pipe.zadd(self.key(job.queue, "delayed"), {job.id: job.run_at})
        await pipe.execute()

    async def _finish(self, job: Job, bucket: str, keep: Optional[int]) -> None:
        r = self._redis
        list_key = self.key(job.queue, bucket)
        pipe = r.pipeline()
        pipe.srem(self.key(job.queue, "active"), job.id)
        pipe.set(self.key(job.queue, "job", job.id), job.to_json())
        pipe.lpush(list_key, job.id)
        await pipe.execute()
        if keep is None:
            return
        # the move above already landed; a failed trim is caught up by the next finish
        try:
            evicted = await r.lrange(list_key, keep, -1)
            if evicted:
                pipe = r.pipeline()
                pipe.ltrim(list_key, 0, keep - 1)
                for old_id in evicted:
                    pipe.delete(self.key(job.queue, "job", old_id))
                await pipe.execute()
        except RedisError as e:
            logger.error("job_retention_trim_error", queue=job.queue, bucket=bucket, error=str(e))

    # ── Inspection / housekeeping ─────────────────────────────

    async def get_job(self, queue: str, job_id: str) -> Optional[Job]:
        self.definition(queue)
        self._require_connection()
        return await self._load(queue, job_id)

    async def get_stats(self, queue: str) -> QueueStats:
        definition = self.definition(queue)
        pipe = self._require_connection().pipeline()
        pipe.zcard(self.key(queue, "wait"))
        pipe.zcard(self.key(queue, "delayed"))
        pipe.scard(self.key(queue, "active"))
        pipe.llen(self.key(queue, "completed"))
        pipe.llen(self.key(queue, "failed"))
        waiting, delayed, active, completed, failed = await pipe.execute()
        return QueueStats(
            queue=queue,
            waiting=int(waiting), delayed=int(delayed), active=int(active),
            completed=int(completed), failed=int(failed),
            concurrency=definition.concurrency,
            fallback=False,
        )

    async def clean(self, queue: str, older_than: float = 24 * 3600) -> int:
        self.definition(queue)
        r = self._require_connection()
        cutoff = self._clock() - older_than
        removed = 0
        for bucket in ("completed", "failed"):
            list_key = self.key(queue, bucket)
            for job_id in await r.lrange(list_key, 0, -1):
                job = await self._load(queue, job_id)
                if job is None or (job.finished_at or 0) < cutoff:
                    pipe = r.pipeline()
                    pipe.lrem(list_key, 0, job_id)
                    pipe.delete(self.key(queue, "job", job_id))
                    await pipe.execute()
                    removed += 1
        if removed:
            logger.info("queue_cleaned", queue=queue, removed=removed)
        return removed
