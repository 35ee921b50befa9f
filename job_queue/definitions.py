"""
Built-in queue definitions.

  followups  follow-up work, 5 concurrent, exponential retry
  sync       invoice sync fan-out, 2 concurrent, 2 min start delay, 10 min timeout
  payments   payment status checks
  general    everything else

Retry count, base backoff, job timeout and concurrency come from the
``queue:`` section of settings.yaml; ``queue.concurrency`` overrides a
single queue's cap.
"""
from __future__ import annotations

from config.settings import QueueConfig
from job_queue.base import BackoffPolicy, QueueDefinition, RetentionPolicy


class Queues:
    FOLLOWUPS = "followups"
    SYNC = "sync"
    PAYMENTS = "payments"
    GENERAL = "general"


def build_queue_definitions(config: QueueConfig = None) -> list[QueueDefinition]:
    config = config or QueueConfig()
    backoff = BackoffPolicy(type="exponential", delay=float(config.retry_delay))

    def concurrency(name: str, default: int) -> int:
        return max(1, int(config.concurrency.get(name, default)))

    return [
        QueueDefinition(
            name=Queues.FOLLOWUPS,
            concurrency=concurrency(Queues.FOLLOWUPS, config.default_concurrency),
            max_attempts=config.max_retries,
            backoff=backoff,
            retention=RetentionPolicy(keep_completed=100, keep_failed=500),
            timeout=config.job_timeout,
        ),
        QueueDefinition(
            name=Queues.SYNC,
            concurrency=concurrency(Queues.SYNC, 2),
            max_attempts=config.max_retries,
            backoff=backoff,
            retention=RetentionPolicy(keep_completed=50, keep_failed=200),
            timeout=config.job_timeout * 2,
            default_delay=120.0,
        ),
        QueueDefinition(
            name=Queues.PAYMENTS,
            concurrency=concurrency(Queues.PAYMENTS, config.default_concurrency),
            max_attempts=config.max_retries,
            backoff=backoff,
            retention=RetentionPolicy(keep_completed=100, keep_failed=200),
            timeout=config.job_timeout,
        ),
        QueueDefinition(
            name=Queues.GENERAL,
            concurrency=concurrency(Queues.GENERAL, config.default_concurrency),
            max_attempts=config.max_retries,
            backoff=backoff,
            retention=RetentionPolicy(keep_completed=50, keep_failed=100),
            timeout=config.job_timeout,
        ),
    ]
