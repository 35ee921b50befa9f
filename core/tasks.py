"""
Periodic task bodies and their cron bindings.

  followup-processing   due follow-ups, business hours
  urgent-processing     urgent tier only, hourly, smaller batch
  daily-maintenance     archive / purge / queue clean
  weekly-report         counts and success rate for the last 7 days
  health-check          store ping, queue stats, channel health
  invoice-sync          one sync job per company on the ``sync`` queue
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass
from typing import Any

from channels.base import ChannelRegistry
from config.settings import Settings
from core.maintenance import MaintenanceService
from core.processor import FollowUpProcessor
from core.scheduler import Scheduler
from core.sync import InvoiceSyncService
from database.store_base import BaseFollowUpStore
from job_queue.base import JobQueue
from models.schemas import FollowUpPriority

logger = structlog.get_logger()


@dataclass
class TaskContext:
    settings: Settings
    store: BaseFollowUpStore
    queue: JobQueue
    channels: ChannelRegistry
    processor: FollowUpProcessor
    maintenance: MaintenanceService
    sync: InvoiceSyncService


async def known_companies(ctx: TaskContext) -> list[str]:
    """Configured companies plus any with a stored rule set, configured order first."""
    seen = list(dict.fromkeys(ctx.settings.companies))
    for company_id in await ctx.store.list_company_ids():
        if company_id not in seen:
            seen.append(company_id)
    return seen


async def process_followups(ctx: TaskContext):
    return await ctx.processor.process_pending(limit=ctx.settings.processor.batch_limit)


async def process_urgent(ctx: TaskContext):
    return await ctx.processor.process_pending(
        limit=ctx.settings.processor.urgent_batch_limit,
        priority=FollowUpPriority.URGENT,
    )


async def health_check(ctx: TaskContext) -> dict[str, Any]:
    store_ok = await ctx.store.ping()
    stats = await ctx.queue.get_all_stats()
    channels = await ctx.channels.health_check_all()
    report = {
        "store": store_ok,
        "queue_fallback": ctx.queue.fallback,
        "queues": {name: s.to_dict() for name, s in stats.items()},
        "channels": channels,
    }
    if store_ok:
        logger.info("health_check", store=store_ok, queue_fallback=ctx.queue.fallback,
                    failed_jobs={name: s.failed for name, s in stats.items()})
    else:
        logger.warning("health_check_degraded", store=store_ok)
    return report


async def sync_invoices(ctx: TaskContext):
    companies = await known_companies(ctx)
    if not companies:
        logger.info("invoice_sync_no_companies")
        return []
    return await ctx.sync.enqueue(companies)


def bind_scheduled_tasks(scheduler: Scheduler, ctx: TaskContext) -> list[str]:
    """Register every periodic task; returns the names that were accepted."""
    crons = ctx.settings.scheduler
    bindings = [
        ("followup-processing", crons.followup_processing, lambda: process_followups(ctx)),
        ("urgent-processing", crons.urgent_processing, lambda: process_urgent(ctx)),
        ("daily-maintenance", crons.daily_maintenance, lambda: ctx.maintenance.run_daily()),
        ("weekly-report", crons.weekly_report, lambda: ctx.maintenance.weekly_report()),
        ("health-check", crons.health_check, lambda: health_check(ctx)),
        ("invoice-sync", crons.invoice_sync, lambda: sync_invoices(ctx)),
    ]
    return [name for name, cron, body in bindings if scheduler.register(name, cron, body)]
