"""
Job Queue: named queues with concurrency caps, retry/backoff, retention,
delayed and recurring jobs.

- Redis backend (durable, real cron recurrence) when the broker is reachable
- In-memory backend (single process, recurring jobs run once) otherwise
"""
from job_queue.base import (
    BackoffPolicy, Job, JobOptions, JobQueue, JobState, QueueDefinition,
    QueueStats, RecurringJob, RetentionPolicy,
)
from job_queue.definitions import Queues, build_queue_definitions
from job_queue.factory import create_job_queue, get_job_queue, probe_broker, reset_job_queue
from job_queue.memory import InMemoryJobQueue
from job_queue.redis_queue import RedisJobQueue

__all__ = [
    "BackoffPolicy", "Job", "JobOptions", "JobQueue", "JobState", "QueueDefinition",
    "QueueStats", "RecurringJob", "RetentionPolicy",
    "Queues", "build_queue_definitions",
    "create_job_queue", "get_job_queue", "probe_broker", "reset_job_queue",
    "InMemoryJobQueue", "RedisJobQueue",
]
