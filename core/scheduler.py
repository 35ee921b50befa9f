"""
Scheduler: cron-driven registry of periodic async tasks.

Timers come from APScheduler's AsyncIOScheduler. Each fire hands the body to
a task owned by this class, so stopping the timers never cancels a body that
is already running; ``drain()`` waits for those.

    scheduler = Scheduler(timezone="UTC")
    scheduler.register("followup-processing", "*/15 9-18 * * 1-5", body)
    scheduler.start()
    ...
    scheduler.stop()
    await scheduler.drain()
"""
from __future__ import annotations

import asyncio
import time
import structlog
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from core.errors import EngineError, ValidationError
from models.schemas import utcnow
from utils.cron import next_fire_time, parse_cron

logger = structlog.get_logger()

TaskBody = Callable[[], Awaitable[Any]]


@dataclass
class ScheduledTask:
    name: str
    cron: str
    body: TaskBody
    trigger: CronTrigger
    runs: int = 0
    failures: int = 0
    running: bool = False
    last_started: Optional[datetime] = None
    last_duration: Optional[float] = None
    last_error: Optional[str] = None


class Scheduler:

    def __init__(self, timezone: str = "UTC"):
        self._timezone = timezone
        self._tasks: dict[str, ScheduledTask] = {}
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._inflight: set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._scheduler is not None

    @property
    def task_names(self) -> list[str]:
        return list(self._tasks)

    # ── Registration ──────────────────────────────────────────

    def register(self, name: str, cron: str, body: TaskBody) -> bool:
        """
        Add a task. An invalid cron expression is logged and the task is
        skipped; returns False in that case.
        """
        try:
            trigger = parse_cron(cron, self._timezone)
        except ValidationError as e:
            logger.error("scheduled_task_rejected", task=name, cron=cron, error=str(e))
            return False

        if name in self._tasks:
            logger.warning("scheduled_task_replaced", task=name)
        task = ScheduledTask(name=name, cron=cron, body=body, trigger=trigger)
        self._tasks[name] = task
        if self._scheduler is not None:
            self._add_timer(task)
        logger.info("scheduled_task_registered", task=name, cron=cron)
        return True

    def unregister(self, name: str) -> bool:
        task = self._tasks.pop(name, None)
        if task is None:
            return False
        if self._scheduler is not None:
            self._scheduler.remove_job(name)
        return True

    # ── Lifecycle ─────────────────────────────────────────────

    def start(self) -> None:
        """Arm one timer per registered task. Must run inside the event loop."""
        if self._scheduler is not None:
            return
        self._scheduler = AsyncIOScheduler(timezone=self._timezone)
        for task in self._tasks.values():
            self._add_timer(task)
        self._scheduler.start()
        logger.info("scheduler_started", tasks=self.task_names, timezone=self._timezone)

    def stop(self) -> None:
        """Cancel timers. In-flight bodies keep running; see ``drain``."""
        if self._scheduler is None:
            return
        self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("scheduler_stopped", in_flight=len(self._inflight))

    async def drain(self) -> None:
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    def _add_timer(self, task: ScheduledTask) -> None:
        self._scheduler.add_job(
            self._fire,
            task.trigger,
            args=[task.name],
            id=task.name,
            name=task.name,
            replace_existing=True,
            coalesce=True,
            misfire_grace_time=60,
        )

    async def _fire(self, name: str) -> None:
        task = self._tasks.get(name)
        if task is None:
            return
        if task.running:
            logger.warning("scheduled_task_overlap_skipped", task=name)
            return
        self._spawn(task)

    def _spawn(self, task: ScheduledTask) -> asyncio.Task:
        # flag before the task starts so a second fire in the same tick sees it
        task.running = True
        runner = asyncio.create_task(self._execute(task))
        self._inflight.add(runner)
        runner.add_done_callback(self._inflight.discard)
        return runner

    # ── Execution ─────────────────────────────────────────────

    async def _execute(self, task: ScheduledTask) -> bool:
        task.running = True
        task.runs += 1
        task.last_started = utcnow()
        started = time.monotonic()
        logger.info("scheduled_task_started", task=task.name, run=task.runs)
        try:
            await task.body()
        except Exception as e:
            task.failures += 1
            task.last_error = str(e) or e.__class__.__name__
            logger.error("scheduled_task_failed",
                         task=task.name, error=task.last_error,
                         duration=round(time.monotonic() - started, 3),
                         exc_info=True)
            return False
        else:
            task.last_error = None
            logger.info("scheduled_task_completed",
                        task=task.name, duration=round(time.monotonic() - started, 3))
            return True
        finally:
            task.running = False
            task.last_duration = round(time.monotonic() - started, 3)

    async def run_now(self, name: str) -> bool:
        """
        Run a task immediately and wait for it. Returns True on success and
        False when it failed or a run of the same task was still in flight.
        """
        task = self._tasks.get(name)
        if task is None:
            raise EngineError(f"Unknown scheduled task: {name}")
        if task.running:
            logger.warning("scheduled_task_overlap_skipped", task=name, manual=True)
            return False
        return await self._spawn(task)

    # ── Inspection ────────────────────────────────────────────

    def status(self) -> list[dict[str, Any]]:
        now = datetime.now(timezone.utc)
        snapshot = []
        for task in self._tasks.values():
            nxt = next_fire_time(task.trigger, now) if self._scheduler is not None else None
            snapshot.append({
                "name": task.name,
                "cron": task.cron,
                "running": task.running,
                "runs": task.runs,
                "failures": task.failures,
                "next_run": nxt.isoformat() if nxt else None,
                "last_started": task.last_started.isoformat() if task.last_started else None,
                "last_duration": task.last_duration,
                "last_error": task.last_error,
            })
        return snapshot
