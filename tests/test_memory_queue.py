"""
Tests for the in-memory job queue backend and the shared queue policies.
"""
import asyncio
import pytest
import pytest_asyncio
from datetime import datetime, timedelta, timezone

from core.errors import EngineError, UnknownQueueError, ValidationError
from job_queue import (
    BackoffPolicy, InMemoryJobQueue, Job, JobOptions, JobState, QueueDefinition,
    build_queue_definitions,
)
from config.settings import QueueConfig


FAST = BackoffPolicy(type="fixed", delay=0.01)


def work_queue(**overrides) -> QueueDefinition:
    params = {"name": "work", "concurrency": 1, "max_attempts": 3, "backoff": FAST}
    params.update(overrides)
    return QueueDefinition(**params)


async def wait_until(check, timeout: float = 3.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not await check():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


async def completed_count(queue, name="work"):
    return (await queue.get_stats(name)).completed


@pytest_asyncio.fixture
async def make_queue():
    created = []

    async def factory(*definitions, **kwargs):
        queue = InMemoryJobQueue(definitions or [work_queue()], **kwargs)
        await queue.connect()
        created.append(queue)
        return queue

    yield factory
    for queue in created:
        await queue.close()


# ──────────────────────────────────────────────────────────────
#  Policies
# ──────────────────────────────────────────────────────────────

class TestBackoffPolicy:

    def test_fixed(self):
        policy = BackoffPolicy(type="fixed", delay=5)
        assert [policy.delay_for(n) for n in (1, 2, 3)] == [5, 5, 5]

    def test_linear(self):
        policy = BackoffPolicy(type="linear", delay=5)
        assert [policy.delay_for(n) for n in (1, 2, 3)] == [5, 10, 15]

    def test_exponential(self):
        policy = BackoffPolicy(type="exponential", delay=60)
        assert [policy.delay_for(n) for n in (1, 2, 3, 4)] == [60, 120, 240, 480]

    def test_unknown_type_rejected(self):
        with pytest.raises(ValueError):
            BackoffPolicy(type="random")


class TestQueueDefinitions:

    def test_defaults(self):
        defs = {d.name: d for d in build_queue_definitions(QueueConfig())}
        assert set(defs) == {"followups", "sync", "payments", "general"}
        assert defs["followups"].concurrency == 5
        assert defs["sync"].concurrency == 2
        assert defs["sync"].default_delay == 120.0
        assert defs["sync"].timeout == 600.0
        assert defs["followups"].retention.keep_failed == 500
        assert defs["general"].retention.keep_completed == 50

    def test_overrides(self):
        config = QueueConfig(max_retries=5, retry_delay=10, concurrency={"sync": 4})
        defs = {d.name: d for d in build_queue_definitions(config)}
        assert defs["sync"].concurrency == 4
        assert defs["payments"].max_attempts == 5
        assert defs["payments"].backoff.delay_for(2) == 20


class TestJobSerialization:

    def test_json_round_trip_keeps_state_and_backoff(self):
        job = Job(queue="work", payload={"invoice": "INV-1"}, id="7",
                  backoff=BackoffPolicy(type="linear", delay=3), state=JobState.DELAYED)
        restored = Job.from_json(job.to_json())
        assert restored.state == JobState.DELAYED
        assert restored.backoff.delay_for(2) == 6
        assert restored.payload == {"invoice": "INV-1"}

    def test_unserializable_return_value_is_stringified(self):
        job = Job(queue="work", return_value=object())
        assert "object" in Job.from_json(job.to_json()).return_value


# ──────────────────────────────────────────────────────────────
#  In-memory backend
# ──────────────────────────────────────────────────────────────

class TestInMemoryJobQueue:

    @pytest.mark.asyncio
    async def test_retry_then_success(self, make_queue):
        queue = await make_queue()
        attempts = []

        async def handler(job):
            attempts.append(job.attempts_made)
            if len(attempts) < 2:
                raise RuntimeError("flaky")
            return {"ok": True}

        await queue.process("work", handler)
        job = await queue.add("work", {})
        await wait_until(lambda: completed_count(queue))

        stored = await queue.get_job("work", job.id)
        assert attempts == [0, 1]
        assert stored.state == JobState.COMPLETED
        assert stored.return_value == {"ok": True}
        assert stored.attempts_made == 2

    @pytest.mark.asyncio
    async def test_priority_then_fifo(self, make_queue):
        queue = await make_queue()
        order = []

        async def handler(job):
            order.append(job.payload["name"])

        await queue.add("work", {"name": "low"}, JobOptions(priority=5))
        await queue.add("work", {"name": "first"}, JobOptions(priority=1))
        await queue.add("work", {"name": "second"}, JobOptions(priority=1))
        await queue.process("work", handler)

        async def all_done():
            return await completed_count(queue) == 3

        await wait_until(all_done)
        assert order == ["first", "second", "low"]

    @pytest.mark.asyncio
    async def test_delayed_job(self, make_queue):
        queue = await make_queue()
        ran = asyncio.Event()

        async def handler(job):
            ran.set()

        await queue.process("work", handler)
        job = await queue.add("work", {}, JobOptions(delay=0.1))

        stats = await queue.get_stats("work")
        assert stats.delayed == 1
        assert not ran.is_set()
        await asyncio.wait_for(ran.wait(), timeout=2)
        assert job.run_at - job.created_at == pytest.approx(0.1)

    @pytest.mark.asyncio
    async def test_schedule_in_past_runs_now(self, make_queue):
        queue = await make_queue()
        job = await queue.schedule("work", {}, datetime.now(timezone.utc) - timedelta(minutes=5))
        assert job.state == JobState.WAITING

    @pytest.mark.asyncio
    async def test_job_timeout_counts_as_failure(self, make_queue):
        queue = await make_queue(work_queue(max_attempts=1, timeout=0.05))

        async def handler(job):
            await asyncio.sleep(1)

        await queue.process("work", handler)
        job = await queue.add("work", {})

        async def failed():
            return (await queue.get_stats("work")).failed == 1

        await wait_until(failed)
        assert (await queue.get_job("work", job.id)).failed_reason == "Job timed out after 0.05s"

    @pytest.mark.asyncio
    async def test_duplicate_job_id_ignored(self, make_queue):
        queue = await make_queue()
        first = await queue.add("work", {"v": 1}, JobOptions(job_id="sync-acme"))
        second = await queue.add("work", {"v": 2}, JobOptions(job_id="sync-acme"))
        assert second is first
        assert (await queue.get_stats("work")).waiting == 1

    @pytest.mark.asyncio
    async def test_recurring_degrades_to_single_run(self, make_queue):
        queue = await make_queue()
        runs = []

        async def handler(job):
            runs.append(job.repeat)

        await queue.process("work", handler)
        recurring = await queue.add_recurring("work", "nightly", "0 1 * * *", {"kind": "sync"})

        await wait_until(lambda: completed_count(queue))
        assert recurring.degraded is True
        assert runs == ["nightly"]
        assert [r.name for r in await queue.get_recurring("work")] == ["nightly"]
        assert await queue.remove_recurring("work", "nightly") is True
        assert await queue.get_recurring("work") == []

    @pytest.mark.asyncio
    async def test_recurring_rejects_bad_cron(self, make_queue):
        queue = await make_queue()
        with pytest.raises(ValidationError):
            await queue.add_recurring("work", "broken", "every day")

    @pytest.mark.asyncio
    async def test_unknown_queue(self, make_queue):
        queue = await make_queue()
        with pytest.raises(UnknownQueueError, match="Invalid queue name: nope"):
            await queue.add("nope", {})
        with pytest.raises(UnknownQueueError):
            await queue.get_stats("nope")

    @pytest.mark.asyncio
    async def test_stats_report_fallback(self, make_queue):
        queue = await make_queue(work_queue(concurrency=4), QueueDefinition(name="other"))
        await queue.add("work", {})
        stats = await queue.get_all_stats()
        assert set(stats) == {"work", "other"}
        assert stats["work"].waiting == 1
        assert stats["work"].concurrency == 4
        assert stats["work"].fallback is True
        assert queue.fallback is True

    @pytest.mark.asyncio
    async def test_clean_removes_aged_jobs(self, make_queue):
        now = [1000.0]
        queue = await make_queue(clock=lambda: now[0])

        async def handler(job):
            return None

        await queue.process("work", handler)
        await queue.add("work", {})
        await wait_until(lambda: completed_count(queue))

        assert await queue.clean("work", older_than=3600) == 0
        now[0] += 7200
        assert await queue.clean_all(older_than=3600) == {"work": 1}
        assert await completed_count(queue) == 0

    @pytest.mark.asyncio
    async def test_close_waits_for_inflight_and_rejects_new_jobs(self):
        queue = InMemoryJobQueue([work_queue()])
        await queue.connect()
        finished = []

        async def handler(job):
            await asyncio.sleep(0.05)
            finished.append(job.id)

        await queue.process("work", handler)
        job = await queue.add("work", {})
        await asyncio.sleep(0.01)

        await queue.close()
        assert finished == [job.id]
        with pytest.raises(EngineError):
            await queue.add("work", {})
        # second close is a no-op
        await queue.close()
