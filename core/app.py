"""
Application: builds every component from settings and runs until signalled.

Startup order: store → billing → channels → rule engine → processor →
job queue (Redis or fallback) → queue processors → scheduler.
Shutdown runs in reverse: scheduler timers, in-flight task bodies, queue,
channels, billing, database.

    followup-engine                         # run with config/settings.yaml
    followup-engine --config prod.yaml
    followup-engine --once invoice-sync     # run one task and exit
"""
from __future__ import annotations

import argparse
import asyncio
import signal
import structlog
from typing import Optional

from dotenv import load_dotenv

from billing.connector import BillingConnector, create_billing_connector
from channels import create_channel_registry
from channels.base import ChannelRegistry
from config.settings import Settings, load_settings
from core.locks import KeyedLock
from core.maintenance import MaintenanceService
from core.processor import FollowUpProcessor
from core.scheduler import Scheduler
from core.sync import InvoiceSyncService
from core.tasks import TaskContext, bind_scheduled_tasks
from database.session import close_db, init_db
from database.store_base import BaseFollowUpStore
from database.store_factory import create_store
from job_queue.base import JobQueue
from job_queue.definitions import Queues
from job_queue.factory import create_job_queue
from rules.engine import FollowUpRuleEngine
from utils.logging import configure_logging

logger = structlog.get_logger()


class Application:

    def __init__(self, settings: Settings, store: BaseFollowUpStore = None,
                 billing: BillingConnector = None, queue: JobQueue = None):
        self.settings = settings
        self.store = store
        self.billing = billing
        self.queue = queue
        self.channels: Optional[ChannelRegistry] = None
        self.engine: Optional[FollowUpRuleEngine] = None
        self.processor: Optional[FollowUpProcessor] = None
        self.scheduler: Optional[Scheduler] = None
        self.tasks: Optional[TaskContext] = None
        self._owns_db = False
        self._started = False

    async def start(self) -> None:
        if self._started:
            return
        s = self.settings

        if self.store is None:
            self.store = create_store(s.database)
            if s.database.store_backend == "sql":
                await init_db()
                self._owns_db = True
        if self.billing is None:
            self.billing = create_billing_connector(s.billing)

        self.channels = create_channel_registry(s.channels)
        await self.channels.initialize_all(s.channels)

        locks = KeyedLock()
        self.engine = FollowUpRuleEngine(self.store, default_rules=s.rules,
                                         grace_days=s.processor.grace_days, locks=locks)
        # every channel a default rule can target must have an adapter
        self.channels.ensure_coverage(r.channel for r in self.engine.default_rules if r.active)

        self.processor = FollowUpProcessor(
            self.store, self.billing, self.channels,
            dispatch_timeout=s.processor.dispatch_timeout,
            concurrency=s.processor.concurrency,
            locks=locks,
            sender_name=s.app_name,
        )

        if self.queue is None:
            self.queue = await create_job_queue(s.queue)
        sync = InvoiceSyncService(self.billing, self.engine, self.queue)
        await sync.start()
        await self.queue.process(Queues.FOLLOWUPS, self.processor.handle_job)

        self.tasks = TaskContext(
            settings=s,
            store=self.store,
            queue=self.queue,
            channels=self.channels,
            processor=self.processor,
            maintenance=MaintenanceService(self.store, self.queue, s.maintenance),
            sync=sync,
        )
        self.scheduler = Scheduler(timezone=s.scheduler.timezone)
        bound = bind_scheduled_tasks(self.scheduler, self.tasks)
        self._started = True
        logger.info("application_initialized",
                    app=s.app_name,
                    store=type(self.store).__name__,
                    queue=type(self.queue).__name__,
                    queue_fallback=self.queue.fallback,
                    channels=[c.value for c in self.channels.get_available()],
                    tasks=bound)

    async def run(self, stop_event: asyncio.Event) -> None:
        await self.start()
        self.scheduler.start()
        logger.info("application_started", app=self.settings.app_name)
        await stop_event.wait()

    async def run_once(self, task_name: str) -> bool:
        await self.start()
        return await self.scheduler.run_now(task_name)

    async def stop(self) -> None:
        if not self._started:
            return
        self._started = False
        self.scheduler.stop()
        await self.scheduler.drain()
        await self.queue.close()
        await self.channels.shutdown_all()
        await self.billing.close()
        if self._owns_db:
            await close_db()
        logger.info("application_stopped", app=self.settings.app_name)


async def _serve(settings: Settings, once: Optional[str]) -> int:
    app = Application(settings)
    try:
        if once:
            return 0 if await app.run_once(once) else 1

        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)
        await app.run(stop_event)
        return 0
    finally:
        await app.stop()


def main(argv: list[str] = None) -> int:
    parser = argparse.ArgumentParser(description="Invoice follow-up engine")
    parser.add_argument("--config", help="Path to settings YAML (default: $FOLLOWUP_CONFIG)")
    parser.add_argument("--once", metavar="TASK", help="Run one scheduled task and exit")
    args = parser.parse_args(argv)

    load_dotenv()
    settings = load_settings(args.config)
    configure_logging(settings.logging.level, settings.logging.json)
    return asyncio.run(_serve(settings, args.once))


if __name__ == "__main__":
    raise SystemExit(main())
