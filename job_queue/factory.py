"""
Queue backend selection.

At startup the broker is probed with a short TCP connect. Reachable → Redis
backend. Unreachable → in-memory fallback (logged once) unless the
``queue.broker_required`` setting is on, in which case startup fails.
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Iterable, Optional
from urllib.parse import urlparse

from redis.exceptions import RedisError

from config.settings import QueueConfig
from core.errors import BrokerUnavailable
from job_queue.base import JobQueue, QueueDefinition
from job_queue.definitions import build_queue_definitions
from job_queue.memory import InMemoryJobQueue
from job_queue.redis_queue import RedisJobQueue

logger = structlog.get_logger()


async def probe_broker(url: str, timeout: float = 2.0) -> bool:
    """True when a TCP connection to the broker's host:port succeeds within ``timeout``."""
    parsed = urlparse(url)
    host = parsed.hostname or "localhost"
    port = parsed.port or 6379
    try:
        _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=timeout)
    except (OSError, asyncio.TimeoutError) as e:
        logger.debug("broker_probe_failed", host=host, port=port, error=str(e) or e.__class__.__name__)
        return False
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    return True


async def create_job_queue(
    config: QueueConfig = None,
    definitions: Iterable[QueueDefinition] = None,
) -> JobQueue:
    """Build and connect the queue backend for this process."""
    config = config or QueueConfig()
    definitions = list(definitions) if definitions is not None else build_queue_definitions(config)

    reason = "broker not reachable"
    if await probe_broker(config.redis_url, config.probe_timeout):
        queue = RedisJobQueue(
            definitions,
            redis_url=config.redis_url,
            prefix=config.prefix,
            poll_interval=config.poll_interval,
        )
        try:
            await queue.connect()
            return queue
        except (RedisError, OSError) as e:
            reason = str(e) or e.__class__.__name__
            await queue.close()

    if config.broker_required:
        raise BrokerUnavailable(config.redis_url.split("@")[-1], reason)

    logger.warning("queue_fallback_mode",
                   broker=config.redis_url.split("@")[-1], reason=reason,
                   detail="jobs are not durable and recurring jobs run once")
    queue = InMemoryJobQueue(definitions)
    await queue.connect()
    return queue


# ──────────────────────────────────────────────────────────────
#  Singleton
# ──────────────────────────────────────────────────────────────

_instance: Optional[JobQueue] = None


async def get_job_queue(config: QueueConfig = None) -> JobQueue:
    """Return the process-wide queue, creating it on first use."""
    global _instance
    if _instance is None:
        _instance = await create_job_queue(config)
    return _instance


async def reset_job_queue() -> None:
    global _instance
    if _instance is not None:
        await _instance.close()
    _instance = None
